from fastapi import APIRouter

from confighub.core.dependencies import Vault
from confighub.core.exceptions import NotFoundError
from confighub.vault.models import Credential, CredentialType, SearchCriteria

router = APIRouter(prefix="/credentials", tags=["credentials"])


@router.post("", response_model=Credential, status_code=201)
async def store_credential(body: Credential, vault: Vault):
    stored = await vault.store(body.model_copy(update={"id": ""}))
    # Never echo secrets back
    return stored.without_secrets()


@router.get("", response_model=list[Credential])
async def list_credentials(
    vault: Vault,
    type: CredentialType | None = None,
    environment: str | None = None,
):
    return await vault.list(type, environment)


@router.post("/find", response_model=list[Credential])
async def find_credentials(criteria: SearchCriteria, vault: Vault):
    return await vault.find(criteria)


@router.get("/{credential_id}", response_model=Credential)
async def get_credential(credential_id: str, vault: Vault, include_secrets: bool = False):
    credential = await vault.get(credential_id)
    if credential is None:
        raise NotFoundError("Credential", credential_id)
    return credential if include_secrets else credential.without_secrets()


@router.put("/{credential_id}", response_model=Credential)
async def update_credential(credential_id: str, body: Credential, vault: Vault):
    stored = await vault.update(body.model_copy(update={"id": credential_id}))
    return stored.without_secrets()


@router.delete("/{credential_id}")
async def delete_credential(credential_id: str, vault: Vault):
    return {"deleted": await vault.delete(credential_id)}


@router.get("/-/health")
async def credential_store_health(vault: Vault):
    return {"ok": await vault.test_access()}
