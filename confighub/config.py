from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_prefix": "CONFIG_HUB_", "extra": "ignore"}

    # Application-private directory: metadata index, master key, encrypted payloads.
    data_dir: Path = Path.home() / ".config-hub"

    keychain_service: str = "config-hub"
    # Keychain entries written by older releases live under this service name.
    legacy_keychain_service: str = "electron-devops-app"

    request_timeout: float = 30.0
    # Upper bound for isLastPage/nextPageStart loops against a remote.
    max_pages: int = 500

    bitbucket_cloud_api_url: str = "https://api.bitbucket.org/2.0"

    # Accept self-signed certificates from self-hosted Bitbucket Server.
    # Off unless explicitly enabled.
    allow_self_signed: bool = False

    webhook_timeout: float = 10.0

    @property
    def metadata_file(self) -> Path:
        return self.data_dir / "credentials-metadata.json"

    @property
    def master_key_file(self) -> Path:
        return self.data_dir / ".master-key"

    @property
    def sensitive_dir(self) -> Path:
        return self.data_dir / "sensitive"


settings = Settings()
