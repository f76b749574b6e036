class AppError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class InvalidRepositoryURLError(AppError):
    def __init__(self, url: str, reason: str = "could not extract repository coordinates"):
        super().__init__(f"Invalid repository URL {url!r}: {reason}", status_code=400)
        self.url = url


class UnsupportedProviderError(AppError):
    def __init__(self, url: str):
        super().__init__(f"No Git provider recognised for {url!r}", status_code=400)
        self.url = url


class AuthenticationFailedError(AppError):
    def __init__(self, operation: str):
        super().__init__(
            f"Authentication failed for {operation}. Please check your credentials.",
            status_code=401,
        )
        self.operation = operation


class PermissionDeniedError(AppError):
    def __init__(self, operation: str):
        super().__init__(
            f"Access forbidden for {operation}. Please check your permissions.",
            status_code=403,
        )
        self.operation = operation


class NotFoundError(AppError):
    def __init__(self, entity: str, id: str):
        super().__init__(f"{entity} not found: {id}", status_code=404)
        self.entity = entity
        self.id = id


class ConflictError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class RemoteError(AppError):
    """Unexpected non-2xx response or transport failure talking to a Git host."""

    def __init__(self, operation: str, detail: str, http_status: int | None = None):
        super().__init__(f"{operation} failed: {detail}", status_code=502)
        self.operation = operation
        self.detail = detail
        self.http_status = http_status


class PartialCommitFailureError(AppError):
    """Some file edits reached the branch before a later one failed.

    ``applied`` lists the paths already committed; they are not rolled back.
    """

    def __init__(self, branch: str, applied: list[str], failed_path: str, cause: AppError):
        super().__init__(
            f"Commit to {branch!r} stopped at {failed_path!r} after applying "
            f"{len(applied)} change(s): {cause.message}",
            status_code=502,
        )
        self.branch = branch
        self.applied = applied
        self.failed_path = failed_path
        self.cause = cause


class DecryptionFailedError(AppError):
    def __init__(self, message: str = "Failed to decrypt credential payload"):
        super().__init__(message, status_code=500)


class InvalidFormatError(DecryptionFailedError):
    def __init__(self, message: str = "Invalid encrypted data format"):
        super().__init__(message)


class WorkflowStepError(AppError):
    """A propose-change step failed; ``state`` records what already happened remotely."""

    def __init__(self, step: str, state: dict, cause: AppError):
        super().__init__(f"{step} failed: {cause.message}", status_code=cause.status_code)
        self.step = step
        self.state = state
        self.cause = cause


class InvalidCredentialError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status_code=400)
