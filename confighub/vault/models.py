import enum
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class CredentialType(str, enum.Enum):
    GIT = "git"
    HELM = "helm"
    ARGOCD = "argocd"
    VAULT = "vault"


# Fields that only ever live inside the encrypted payload.
SECRET_FIELDS = frozenset({
    "token",
    "password",
    "private_key",
    "passphrase",
    "secret_id",
    "cert_file",
    "key_file",
    "ca_file",
})


class BaseCredential(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}

    # Assigned by CredentialVault.store; empty until then.
    id: str = ""
    name: str
    environment: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def identifier(self) -> str:
        """The URL that identifies what this credential authenticates against."""
        raise NotImplementedError

    def secrets(self) -> dict[str, str]:
        """Secret-bearing fields that are set, keyed by their JSON alias."""
        data = self.model_dump(include=set(SECRET_FIELDS), by_alias=True, exclude_none=True)
        return {k: v for k, v in data.items() if v is not None}

    def metadata(self) -> dict:
        """Non-secret fields in JSON form, safe for the plaintext index."""
        return self.model_dump(mode="json", by_alias=True, exclude=set(SECRET_FIELDS))

    def without_secrets(self) -> "BaseCredential":
        return self.model_copy(update={f: None for f in SECRET_FIELDS if f in type(self).model_fields})


class GitCredential(BaseCredential):
    type: Literal["git"] = "git"
    repo_url: str
    auth_type: Literal["token", "ssh", "userpass"] = "token"
    username: str | None = None
    token: str | None = None
    private_key: str | None = None
    public_key: str | None = None
    passphrase: str | None = None
    password: str | None = None

    @property
    def identifier(self) -> str:
        return self.repo_url


class HelmCredential(BaseCredential):
    type: Literal["helm"] = "helm"
    registry_url: str
    auth_type: Literal["userpass", "token", "cert"] = "userpass"
    username: str | None = None
    password: str | None = None
    token: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    ca_file: str | None = None
    insecure_skip_tls_verify: bool = False

    @property
    def identifier(self) -> str:
        return self.registry_url


class ArgoCDCredential(BaseCredential):
    type: Literal["argocd"] = "argocd"
    server_url: str
    token: str | None = None
    username: str | None = None
    namespace: str | None = None

    @property
    def identifier(self) -> str:
        return self.server_url


class VaultCredential(BaseCredential):
    type: Literal["vault"] = "vault"
    server_url: str
    auth_method: Literal["token", "userpass", "ldap", "kubernetes", "aws", "azure"] = "token"
    token: str | None = None
    username: str | None = None
    password: str | None = None
    namespace: str | None = None
    mount_path: str = "secret"
    role_id: str | None = None
    secret_id: str | None = None
    kubernetes_role: str | None = None
    aws_role: str | None = None
    azure_role: str | None = None

    @property
    def identifier(self) -> str:
        return self.server_url


Credential = Annotated[
    Union[GitCredential, HelmCredential, ArgoCDCredential, VaultCredential],
    Field(discriminator="type"),
]

credential_adapter: TypeAdapter[Credential] = TypeAdapter(Credential)


class SearchCriteria(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    type: CredentialType | None = None
    environment: str | None = None
    repo_url: str | None = None
    registry_url: str | None = None
    server_url: str | None = None
    tags: list[str] = Field(default_factory=list)
