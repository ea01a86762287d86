"""Tests for the session lifecycle service.

Covers:
- Token pair issuance and persistence
- Refresh under the index + durable row conjunction
- Logout, revoke-one and revoke-all paths
- Partial failure handling for both stores
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import DESKTOP_CHROME_UA, IPHONE_UA
from tokenward.service.errors import (
    AuthenticationError,
    ConflictError,
    InternalError,
    NotFoundError,
)
from tokenward.service.sessions import SessionService
from tokenward.service.tokens import ACCESS_TOKEN, REFRESH_TOKEN
from tokenward.storage.memory import MemoryStore
from tokenward.storage.memory_cache import MemoryCache
from tokenward.storage.models import User, utcnow


class FlakyIndex(MemoryCache):
    """In-process token index with switchable failures."""

    def __init__(self):
        super().__init__()
        self.fail_put = False
        self.fail_get = False
        self.fail_delete = False
        self.hang_get = False
        self.delete_attempts = 0

    async def put_refresh_token(self, token_id, user_id, ttl_seconds):
        if self.fail_put:
            raise ConnectionError("redis down")
        await super().put_refresh_token(token_id, user_id, ttl_seconds)

    async def get_refresh_token_user(self, token_id):
        if self.hang_get:
            await asyncio.sleep(5)
        if self.fail_get:
            raise ConnectionError("redis down")
        return await super().get_refresh_token_user(token_id)

    async def delete_refresh_token(self, token_id):
        self.delete_attempts += 1
        if self.fail_delete:
            raise ConnectionError("redis down")
        await super().delete_refresh_token(token_id)


class BrokenStore(MemoryStore):
    """Memory store whose writes can be made to fail like a lost connection."""

    def __init__(self):
        super().__init__()
        self.fail_create = False
        self.fail_invalidate = False

    def create_refresh_session(self, session):
        if self.fail_create:
            raise RuntimeError("connection reset by peer")
        return super().create_refresh_session(session)

    def invalidate_by_refresh_token(self, refresh_token):
        if self.fail_invalidate:
            raise RuntimeError("connection reset by peer")
        return super().invalidate_by_refresh_token(refresh_token)

    def invalidate_all_by_user(self, user_id):
        if self.fail_invalidate:
            raise RuntimeError("connection reset by peer")
        return super().invalidate_all_by_user(user_id)


def _backdate_expiry(store, refresh_token, age):
    row = store.get_session_by_refresh_token(refresh_token)
    store.sessions[row.id].expires_at = utcnow() - age


@pytest.fixture
def flaky_index():
    return FlakyIndex()


@pytest.fixture
def broken_store():
    return BrokenStore()


@pytest.fixture
def flaky_service(broken_store, flaky_index, codec, audit_sink):
    return SessionService(
        broken_store,
        flaky_index,
        broken_store,
        codec,
        audit=audit_sink,
        store_timeout_seconds=0.05,
    )


@pytest.fixture
def flaky_user(broken_store):
    return broken_store.create_user("carol@example.com", "Carol")


class TestCreateSession:
    """Tests for issuing a session."""

    async def test_returns_typed_tokens_with_distinct_ids(self, session_service, codec, user):
        tokens = await session_service.create_session(user, DESKTOP_CHROME_UA, "10.0.0.1")

        access = codec.validate(tokens.access_token)
        refresh = codec.validate(tokens.refresh_token)
        assert access.kind == ACCESS_TOKEN
        assert refresh.kind == REFRESH_TOKEN
        assert access.token_id != refresh.token_id
        assert access.email == user.email
        assert tokens.expires_in == 15 * 60
        assert tokens.token_type == "bearer"
        assert tokens.user is user

    async def test_writes_index_and_row(self, session_service, memory_store, token_index, codec, user):
        tokens = await session_service.create_session(user, DESKTOP_CHROME_UA, "10.0.0.1")
        refresh = codec.validate(tokens.refresh_token)

        assert await token_index.get_refresh_token_user(refresh.token_id) == user.id
        row = memory_store.get_session_by_refresh_token(tokens.refresh_token)
        assert row.user_id == user.id
        assert row.is_valid is True
        assert row.expires_at == refresh.expires_at
        assert row.user_agent == DESKTOP_CHROME_UA
        assert row.ip_address == "10.0.0.1"

    async def test_index_failure_persists_nothing(self, flaky_service, flaky_index, broken_store, flaky_user):
        flaky_index.fail_put = True

        with pytest.raises(InternalError):
            await flaky_service.create_session(flaky_user)

        assert broken_store.get_sessions_by_user(flaky_user.id) == []

    async def test_store_failure_removes_index_entry(self, flaky_service, flaky_index, broken_store, flaky_user):
        broken_store.fail_create = True

        with pytest.raises(InternalError) as excinfo:
            await flaky_service.create_session(flaky_user)

        assert "connection reset" not in excinfo.value.message
        assert len(flaky_index) == 0
        assert flaky_index.delete_attempts == 1

    async def test_constraint_violation_is_conflict(self, session_service, token_index):
        ghost = User(id="no-such-user", email="ghost@example.com")

        with pytest.raises(ConflictError):
            await session_service.create_session(ghost)

        assert len(token_index) == 0

    async def test_audits_creation(self, session_service, audit_sink, user):
        await session_service.create_session(user, IPHONE_UA, "10.0.0.2")

        event = audit_sink.events[-1]
        assert event.action == "session_create"
        assert event.success is True
        assert event.user_id == user.id
        assert event.resource_id is not None
        assert event.ip_address == "10.0.0.2"


class TestRefreshSession:
    """Tests for the refresh protocol."""

    async def test_refresh_returns_new_access_and_same_refresh(self, session_service, codec, user):
        tokens = await session_service.create_session(user)

        refreshed = await session_service.refresh_session(tokens.refresh_token)

        assert refreshed.refresh_token == tokens.refresh_token
        assert refreshed.access_token != tokens.access_token
        assert codec.validate(refreshed.access_token).kind == ACCESS_TOKEN
        assert refreshed.expires_in == tokens.expires_in

    async def test_missing_index_entry_fails_closed(self, session_service, memory_store, token_index, codec, user):
        tokens = await session_service.create_session(user)
        await token_index.delete_refresh_token(codec.validate(tokens.refresh_token).token_id)

        with pytest.raises(AuthenticationError) as excinfo:
            await session_service.refresh_session(tokens.refresh_token)

        assert "not found or expired" in excinfo.value.message
        assert memory_store.get_session_by_refresh_token(tokens.refresh_token).is_valid is True

    async def test_invalid_row_rejected(self, session_service, memory_store, user):
        tokens = await session_service.create_session(user)
        memory_store.invalidate_by_refresh_token(tokens.refresh_token)

        with pytest.raises(AuthenticationError):
            await session_service.refresh_session(tokens.refresh_token)

    async def test_missing_row_rejected(self, session_service, memory_store, user):
        tokens = await session_service.create_session(user)
        memory_store.sessions.clear()

        with pytest.raises(AuthenticationError):
            await session_service.refresh_session(tokens.refresh_token)

    async def test_expired_row_rejected(self, session_service, memory_store, user):
        tokens = await session_service.create_session(user)
        _backdate_expiry(memory_store, tokens.refresh_token, timedelta(seconds=1))

        with pytest.raises(AuthenticationError):
            await session_service.refresh_session(tokens.refresh_token)

    async def test_owner_mismatch_rejected(self, session_service, token_index, codec, memory_store, user):
        other = memory_store.create_user("mallory@example.com", "Mallory")
        tokens = await session_service.create_session(user)
        await token_index.put_refresh_token(
            codec.validate(tokens.refresh_token).token_id, other.id, 60
        )

        with pytest.raises(AuthenticationError):
            await session_service.refresh_session(tokens.refresh_token)

    async def test_deleted_user_rejected(self, session_service, memory_store, user):
        tokens = await session_service.create_session(user)
        memory_store.users.pop(user.id)

        with pytest.raises(AuthenticationError):
            await session_service.refresh_session(tokens.refresh_token)

    async def test_access_token_cannot_refresh(self, session_service, user):
        tokens = await session_service.create_session(user)

        with pytest.raises(AuthenticationError):
            await session_service.refresh_session(tokens.access_token)

    async def test_malformed_token_rejected(self, session_service):
        with pytest.raises(AuthenticationError):
            await session_service.refresh_session("not-a-token")

    async def test_index_error_is_internal(self, flaky_service, flaky_index, flaky_user):
        tokens = await flaky_service.create_session(flaky_user)
        flaky_index.fail_get = True

        with pytest.raises(InternalError):
            await flaky_service.refresh_session(tokens.refresh_token)

    async def test_index_timeout_is_internal(self, flaky_service, flaky_index, flaky_user):
        tokens = await flaky_service.create_session(flaky_user)
        flaky_index.hang_get = True

        with pytest.raises(InternalError):
            await flaky_service.refresh_session(tokens.refresh_token)


class TestInvalidation:
    """Tests for logout and revocation."""

    async def test_logout_then_refresh_fails(self, session_service, memory_store, token_index, codec, user):
        tokens = await session_service.create_session(user)

        await session_service.invalidate_session(tokens.refresh_token)

        with pytest.raises(AuthenticationError):
            await session_service.refresh_session(tokens.refresh_token)
        assert memory_store.get_session_by_refresh_token(tokens.refresh_token).is_valid is False
        token_id = codec.validate(tokens.refresh_token).token_id
        assert await token_index.get_refresh_token_user(token_id) is None

    async def test_logout_is_idempotent(self, session_service, user):
        tokens = await session_service.create_session(user)

        await session_service.invalidate_session(tokens.refresh_token)
        await session_service.invalidate_session(tokens.refresh_token)

    async def test_logout_survives_index_failure(self, flaky_service, flaky_index, broken_store, flaky_user):
        tokens = await flaky_service.create_session(flaky_user)
        flaky_index.fail_delete = True

        await flaky_service.invalidate_session(tokens.refresh_token)

        assert broken_store.get_session_by_refresh_token(tokens.refresh_token).is_valid is False
        # The index entry survived, but the invalid row still blocks refresh
        with pytest.raises(AuthenticationError):
            await flaky_service.refresh_session(tokens.refresh_token)

    async def test_logout_store_failure_is_internal(self, flaky_service, broken_store, flaky_user):
        tokens = await flaky_service.create_session(flaky_user)
        broken_store.fail_invalidate = True

        with pytest.raises(InternalError):
            await flaky_service.invalidate_session(tokens.refresh_token)

    async def test_invalidate_all_marks_every_listed_session(self, session_service, memory_store, token_index, user):
        for ua in (IPHONE_UA, DESKTOP_CHROME_UA, None):
            await session_service.create_session(user, ua)
        listed = await session_service.get_user_sessions(user.id)
        assert len(listed) == 3

        changed = await session_service.invalidate_all_sessions(user.id)

        assert changed == 3
        for view in listed:
            row = memory_store.get_session_by_id_and_user(view.id, user.id)
            assert row.is_valid is False
        assert len(token_index) == 0
        assert await session_service.get_user_sessions(user.id) == []

    async def test_invalidate_all_continues_past_index_failures(self, flaky_service, flaky_index, broken_store, flaky_user):
        await flaky_service.create_session(flaky_user)
        await flaky_service.create_session(flaky_user)
        flaky_index.fail_delete = True

        changed = await flaky_service.invalidate_all_sessions(flaky_user.id)

        assert changed == 2
        assert flaky_index.delete_attempts == 2
        assert all(not s.is_valid for s in broken_store.get_sessions_by_user(flaky_user.id))

    async def test_invalidate_all_bulk_failure_is_internal(self, flaky_service, broken_store, flaky_user):
        await flaky_service.create_session(flaky_user)
        broken_store.fail_invalidate = True

        with pytest.raises(InternalError):
            await flaky_service.invalidate_all_sessions(flaky_user.id)

    async def test_invalidate_specific_foreign_session_not_found(self, session_service, memory_store, token_index, codec, user):
        bob = memory_store.create_user("bob@example.com", "Bob")
        bob_tokens = await session_service.create_session(bob)
        bob_session_id = await session_service.get_current_session_id(bob_tokens.refresh_token)

        with pytest.raises(NotFoundError):
            await session_service.invalidate_specific_session(user.id, bob_session_id)

        assert memory_store.get_session_by_id_and_user(bob_session_id, bob.id).is_valid is True
        token_id = codec.validate(bob_tokens.refresh_token).token_id
        assert await token_index.get_refresh_token_user(token_id) == bob.id

    async def test_invalidate_specific_unknown_session(self, session_service, user):
        with pytest.raises(NotFoundError):
            await session_service.invalidate_specific_session(user.id, "missing")

    async def test_invalidate_specific_own_session(self, session_service, user):
        tokens = await session_service.create_session(user)
        session_id = await session_service.get_current_session_id(tokens.refresh_token)

        await session_service.invalidate_specific_session(user.id, session_id)

        with pytest.raises(AuthenticationError):
            await session_service.refresh_session(tokens.refresh_token)

    async def test_invalidation_is_audited(self, session_service, audit_sink, user):
        tokens = await session_service.create_session(user)

        await session_service.invalidate_session(tokens.refresh_token)

        assert audit_sink.actions()[-1] == "session_invalidate"


class TestListing:
    """Tests for listing a user's sessions."""

    async def test_two_device_scenario(self, session_service, user):
        phone = await session_service.create_session(user, IPHONE_UA, "10.0.0.1")
        laptop = await session_service.create_session(user, DESKTOP_CHROME_UA, "10.0.0.2")

        listed = await session_service.get_user_sessions(user.id)
        assert len(listed) == 2
        assert sorted(v.device_info.is_mobile for v in listed) == [False, True]

        await session_service.invalidate_session(phone.refresh_token)

        listed = await session_service.get_user_sessions(user.id)
        assert len(listed) == 1
        assert listed[0].device_info.browser == "Chrome"

        with pytest.raises(AuthenticationError):
            await session_service.refresh_session(phone.refresh_token)

        refreshed = await session_service.refresh_session(laptop.refresh_token)
        assert refreshed.refresh_token == laptop.refresh_token
        assert refreshed.access_token != laptop.access_token

    async def test_current_session_flagged(self, session_service, user):
        first = await session_service.create_session(user, IPHONE_UA)
        await session_service.create_session(user, DESKTOP_CHROME_UA)

        listed = await session_service.get_user_sessions(user.id, first.refresh_token)

        current = [v for v in listed if v.is_current]
        assert len(current) == 1
        assert current[0].device_info.device == "iPhone"

    async def test_foreign_current_token_not_flagged(self, session_service, memory_store, user):
        bob = memory_store.create_user("bob@example.com", "Bob")
        bob_tokens = await session_service.create_session(bob)
        await session_service.create_session(user)

        listed = await session_service.get_user_sessions(user.id, bob_tokens.refresh_token)

        assert [v.is_current for v in listed] == [False]

    async def test_view_serializes(self, session_service, user):
        await session_service.create_session(user, None, "10.0.0.3")

        (view,) = await session_service.get_user_sessions(user.id)
        data = view.to_dict()

        assert data["ip_address"] == "10.0.0.3"
        assert data["device_info"]["device"] == "Unknown"
        assert data["is_current"] is False

    async def test_current_session_lookup_unknown(self, session_service):
        with pytest.raises(NotFoundError):
            await session_service.get_current_session_id("unknown")


class TestAccessValidation:
    """Tests for stateless access token checks."""

    async def test_access_token_accepted(self, session_service, user):
        tokens = await session_service.create_session(user)

        claims = await session_service.validate_access_token(tokens.access_token)

        assert claims.user_id == user.id

    async def test_refresh_token_rejected(self, session_service, user):
        tokens = await session_service.create_session(user)

        with pytest.raises(AuthenticationError):
            await session_service.validate_access_token(tokens.refresh_token)

    async def test_does_not_consult_stores(self, session_service, memory_store, token_index, user):
        tokens = await session_service.create_session(user)
        await session_service.invalidate_all_sessions(user.id)

        claims = await session_service.validate_access_token(tokens.access_token)

        assert claims.kind == ACCESS_TOKEN


async def test_cleanup_expired_sessions_delegates(session_service, memory_store, user):
    tokens = await session_service.create_session(user)
    _backdate_expiry(memory_store, tokens.refresh_token, timedelta(hours=1))

    assert await session_service.cleanup_expired_sessions() == 1
    assert memory_store.get_session_by_refresh_token(tokens.refresh_token) is None
