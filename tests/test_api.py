import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from confighub.config import Settings
from confighub.core.dependencies import get_provider_factory, get_vault
from confighub.main import app
from confighub.providers.bitbucket_cloud import PendingBranches
from confighub.providers.registry import create_provider

CLOUD_URL = "https://bitbucket.org/acme/config.git"
CLOUD_API = "/2.0/repositories/acme/config"


def _override_vault(vault):
    def _get_vault():
        return vault

    return _get_vault


def _override_factory(remote, settings):
    pending = PendingBranches()

    def _get_factory():
        return lambda credential: create_provider(
            credential, settings, transport=remote.transport, pending=pending
        )

    return _get_factory


@pytest_asyncio.fixture
async def client(vault, remote, tmp_path):
    app.dependency_overrides[get_vault] = _override_vault(vault)
    app.dependency_overrides[get_provider_factory] = _override_factory(remote, Settings(data_dir=tmp_path))
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


async def _create_git_credential(client, **overrides) -> dict:
    body = {
        "type": "git",
        "name": "config repo",
        "repoUrl": CLOUD_URL,
        "authType": "token",
        "token": "tok-123",
        "environment": "dev",
    }
    body.update(overrides)
    response = await client.post("/credentials", json=body)
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_store_and_read_credential(client):
    created = await _create_git_credential(client)

    assert created["id"]
    assert created["token"] is None
    assert created["repoUrl"] == CLOUD_URL

    plain = await client.get(f"/credentials/{created['id']}")
    assert plain.json()["token"] is None

    revealed = await client.get(f"/credentials/{created['id']}", params={"include_secrets": True})
    assert revealed.json()["token"] == "tok-123"


@pytest.mark.asyncio
async def test_invalid_credential_body_rejected(client):
    response = await client.post("/credentials", json={"type": "git", "name": "missing url"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_find_update_delete(client):
    created = await _create_git_credential(client)
    await client.post("/credentials", json={
        "type": "helm", "name": "charts", "registryUrl": "https://charts.example.com", "password": "pw",
    })

    listed = await client.get("/credentials", params={"type": "git"})
    assert [c["id"] for c in listed.json()] == [created["id"]]

    found = await client.post("/credentials/find", json={"repoUrl": "https://BITBUCKET.org/acme/config/"})
    assert [c["id"] for c in found.json()] == [created["id"]]

    updated = await client.put(f"/credentials/{created['id']}", json={
        "type": "git", "name": "renamed", "repoUrl": CLOUD_URL, "token": "rotated",
    })
    assert updated.status_code == 200
    assert updated.json()["name"] == "renamed"

    first = await client.delete(f"/credentials/{created['id']}")
    second = await client.delete(f"/credentials/{created['id']}")
    assert first.json() == {"deleted": True}
    assert second.json() == {"deleted": False}


@pytest.mark.asyncio
async def test_unknown_credential_is_404(client):
    response = await client.get("/credentials/0123456789abcdef")
    assert response.status_code == 404
    assert "0123456789abcdef" in response.json()["detail"]

    response = await client.put("/credentials/0123456789abcdef", json={
        "type": "git", "name": "x", "repoUrl": CLOUD_URL,
    })
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_git_branches_through_stored_credential(client, remote):
    remote.add("GET", CLOUD_API, httpx.Response(200, json={"mainbranch": {"name": "main"}}))
    remote.add("GET", f"{CLOUD_API}/refs/branches", httpx.Response(200, json={
        "values": [{"name": "main", "target": {"hash": "m1"}}]
    }))
    created = await _create_git_credential(client)

    response = await client.get(f"/git/{created['id']}/branches")

    assert response.status_code == 200
    assert response.json() == [{"name": "main", "sha": "m1", "isDefault": True}]
    assert remote.requests[0].headers["Authorization"] == "Bearer tok-123"


@pytest.mark.asyncio
async def test_git_endpoints_require_git_credential(client):
    response = await client.post("/credentials", json={
        "type": "argocd", "name": "argo", "serverUrl": "https://argo.example.com", "token": "t",
    })

    missing = await client.get("/git/0123456789abcdef/branches")
    wrong_kind = await client.get(f"/git/{response.json()['id']}/branches")

    assert missing.status_code == 404
    assert wrong_kind.status_code == 404


@pytest.mark.asyncio
async def test_remote_auth_failure_maps_to_401(client, remote):
    remote.add("GET", CLOUD_API, httpx.Response(401))
    created = await _create_git_credential(client)

    response = await client.get(f"/git/{created['id']}/branches")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_merge_conflict_returned_as_result(client, remote):
    remote.add("POST", f"{CLOUD_API}/pullrequests/5/merge", httpx.Response(409, json={
        "type": "error", "error": {"message": "Merge conflicts"},
    }))
    created = await _create_git_credential(client)

    response = await client.post(f"/git/{created['id']}/pull-requests/5/merge", json={})

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["conflicts"] == ["Merge conflicts"]


@pytest.mark.asyncio
async def test_propose_failure_reports_step_and_state(client, remote):
    remote.add("GET", f"{CLOUD_API}/refs/branches/main", httpx.Response(200, json={
        "name": "main", "target": {"hash": "m1"},
    }))
    remote.add("POST", f"{CLOUD_API}/src", httpx.Response(403))
    created = await _create_git_credential(client)

    response = await client.post(f"/git/{created['id']}/propose", json={
        "targetBranch": "main",
        "newBranch": "feature-bump",
        "changes": [{"path": "values.yaml", "content": "image: v2\n"}],
        "message": "Bump image",
        "author": {"name": "Jane Doe", "email": "jane@example.com"},
        "title": "Bump image",
    })

    assert response.status_code == 403
    body = response.json()
    assert body["step"] == "create_commit"
    assert body["state"]["branch"]["name"] == "feature-bump"
    assert body["state"]["pullRequest"] is None


@pytest.mark.asyncio
async def test_commit_to_new_branch_across_requests(client, remote):
    remote.add("GET", f"{CLOUD_API}/refs/branches/develop", httpx.Response(200, json={
        "name": "develop", "target": {"hash": "dev123"},
    }))
    remote.add("POST", f"{CLOUD_API}/src", httpx.Response(201))
    remote.add("GET", f"{CLOUD_API}/commits/feature-x", httpx.Response(200, json={"values": [{
        "hash": "n1", "message": "Add", "author": {"raw": "Jane Doe <jane@example.com>"},
        "parents": [{"hash": "dev123"}],
    }]}))
    created = await _create_git_credential(client)

    branch = await client.post(f"/git/{created['id']}/branches", json={"name": "feature-x", "fromBranch": "develop"})
    commit = await client.post(f"/git/{created['id']}/commits", json={
        "branch": "feature-x",
        "changes": [{"path": "values.yaml", "content": "image: v2\n"}],
        "message": "Add",
        "author": {"name": "Jane Doe", "email": "jane@example.com"},
    })

    assert branch.status_code == 201
    assert commit.status_code == 201
    assert commit.json()["parents"] == ["dev123"]
    body = remote.calls("POST", f"{CLOUD_API}/src")[0].read()
    assert b'name="parents"' in body and b"dev123" in body


@pytest.mark.asyncio
async def test_delete_branch(client, remote):
    remote.add("DELETE", f"{CLOUD_API}/refs/branches/feature/bump", httpx.Response(204))
    created = await _create_git_credential(client)

    response = await client.delete(f"/git/{created['id']}/branches/feature/bump")

    assert response.status_code == 204
    assert len(remote.requests) == 1
