"""Tests for the internal identity and guest-buffer endpoints."""
from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from relay.core.dependencies import get_guest_buffer, get_identity_directory, get_message_sink
from relay.main import app
from relay.routers import internal
from relay.schemas.entitlements import Identity, Plan
from relay.services.guest_buffer import GuestBuffer
from relay.services.identity import IdentityDirectory, IdentityRejected
from relay.services.messages import InMemoryMessageSink

GUEST_ID = "guest_123e4567-e89b-12d3-a456-426614174000"
AUTH = {"Authorization": "Bearer s3cret"}
MESSAGES = [
    {"role": "user", "content": "hi"},
    {"role": "assistant", "content": "hello!"},
]


@pytest.fixture
def collaborators(monkeypatch):
    monkeypatch.setattr(internal.settings, "internal_api_secret", "s3cret")
    buffer = GuestBuffer(ttl_seconds=600, sweep_seconds=60)
    sink = InMemoryMessageSink()
    directory = IdentityDirectory()
    app.dependency_overrides[get_guest_buffer] = lambda: buffer
    app.dependency_overrides[get_message_sink] = lambda: sink
    app.dependency_overrides[get_identity_directory] = lambda: directory
    yield buffer, sink, directory
    app.dependency_overrides.clear()


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


@pytest.mark.asyncio
async def test_requests_without_secret_are_rejected(collaborators) -> None:
    async with _client() as client:
        missing = await client.get(f"/api/guest-buffer/{GUEST_ID}")
        wrong = await client.get(
            f"/api/guest-buffer/{GUEST_ID}", headers={"Authorization": "Bearer nope"}
        )
        register = await client.post(
            "/api/identities", json={"token": "t", "userId": "u"}
        )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert register.status_code == 401


@pytest.mark.asyncio
async def test_empty_secret_rejects_everything(collaborators, monkeypatch) -> None:
    monkeypatch.setattr(internal.settings, "internal_api_secret", "")

    async with _client() as client:
        response = await client.get(
            f"/api/guest-buffer/{GUEST_ID}", headers={"Authorization": "Bearer anything"}
        )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_guest_buffer_read_returns_then_clears(collaborators) -> None:
    buffer, _, _ = collaborators
    buffer.buffer_conversation(GUEST_ID, MESSAGES, "hi")

    async with _client() as client:
        first = await client.get(f"/api/guest-buffer/{GUEST_ID}", headers=AUTH)
        second = await client.get(f"/api/guest-buffer/{GUEST_ID}", headers=AUTH)

    assert first.status_code == 200
    body = first.json()
    assert body["guestId"] == GUEST_ID
    assert body["messages"] == MESSAGES
    assert body["summary"] == "hi"
    assert second.status_code == 404


@pytest.mark.asyncio
async def test_guest_buffer_delete(collaborators) -> None:
    buffer, _, _ = collaborators
    buffer.buffer_conversation(GUEST_ID, MESSAGES, "hi")

    async with _client() as client:
        response = await client.delete(f"/api/guest-buffer/{GUEST_ID}", headers=AUTH)

    assert response.status_code == 204
    assert buffer.get(GUEST_ID) is None


@pytest.mark.asyncio
async def test_claim_migrates_once(collaborators) -> None:
    buffer, sink, _ = collaborators
    buffer.buffer_conversation(GUEST_ID, MESSAGES, "hi")

    async with _client() as client:
        first = await client.post(
            f"/api/guest-buffer/{GUEST_ID}/claim", json={"userId": "user-1"}, headers=AUTH
        )
        second = await client.post(
            f"/api/guest-buffer/{GUEST_ID}/claim", json={"userId": "user-1"}, headers=AUTH
        )

    body = first.json()
    assert first.status_code == 200
    assert body["migrated"] == 2
    assert body["summary"] == "hi"
    assert sink.conversations[body["conversationId"]] == MESSAGES
    assert second.json() == {"conversationId": None, "migrated": 0, "summary": None}


@pytest.mark.asyncio
async def test_register_identity(collaborators) -> None:
    _, _, directory = collaborators

    async with _client() as client:
        response = await client.post(
            "/api/identities",
            json={"token": "tok-1", "userId": "user-1", "plan": "pro"},
            headers=AUTH,
        )

    assert response.status_code == 200
    assert response.json() == {"userId": "user-1", "plan": "pro"}
    assert await directory.resolve(token="tok-1", guest_id=None) == Identity.user("user-1")
    assert await directory.plan_for(Identity.user("user-1")) is Plan.PRO


@pytest.mark.asyncio
async def test_revoke_identity(collaborators) -> None:
    _, _, directory = collaborators
    await directory.register("tok-1", "user-1", Plan.FREE)

    async with _client() as client:
        response = await client.delete("/api/identities/tok-1", headers=AUTH)

    assert response.status_code == 204
    with pytest.raises(IdentityRejected):
        await directory.resolve(token="tok-1", guest_id=None)
