import pytest

from gatehouse.service.session import SessionManager
from gatehouse.storage.cache import CacheService


@pytest.fixture
def sessions(kv, clock):
    return SessionManager(CacheService(kv), clock=clock)


async def test_create_get_destroy(sessions):
    sid = await sessions.create(42, {"username": "alice"})
    session = await sessions.get(sid)
    assert session["userId"] == "42"
    assert session["username"] == "alice"
    assert isinstance(session["created"], int)

    await sessions.destroy(sid)
    assert await sessions.get(sid) is None


async def test_get_without_id_returns_none(sessions):
    assert await sessions.get(None) is None
    assert await sessions.get("") is None
    assert await sessions.get("no-such-session") is None


async def test_get_slides_expiry(sessions, kv, clock):
    sid = await sessions.create(1)
    clock.advance(86_000)
    assert await sessions.get(sid) is not None
    assert await kv.ttl(f"session:{sid}") == 86_400
    clock.advance(86_000)
    assert await sessions.get(sid) is not None


async def test_session_expires_without_access(sessions, clock):
    sid = await sessions.create(1)
    clock.advance(86_401)
    assert await sessions.get(sid) is None


async def test_oauth_state_verifies_once(sessions):
    state = await sessions.generate_state()
    assert await sessions.verify_state(state) is True
    assert await sessions.verify_state(state) is False


async def test_oauth_state_expires(sessions, clock):
    state = await sessions.generate_state()
    clock.advance(601)
    assert await sessions.verify_state(state) is False


async def test_unknown_state_is_rejected(sessions):
    assert await sessions.verify_state("forged") is False
    assert await sessions.verify_state(None) is False
