"""Unit tests for auth/sessions.py -- session issue, validation, refresh, revocation.

Covers:
- create() returns a raw token; only its HMAC is stored
- validate() rejects unknown, revoked and expired tokens
- Sliding refresh at 25% remaining lifetime extends by the original lifetime
- Deactivated owners lose their sessions on the next validation
- revoke_by_id() cannot touch another user's session
- revoke_all() with and without a spared session
- Concurrency limit revokes the oldest sessions first
- sweep_expired() honours the grace period
"""

from datetime import timedelta

import pytest

from auth.errors import UserInactive
from auth.models import User
from auth.session_store import SessionStore
from auth.sessions import SessionManager, describe_user_agent
from auth.store import UserStore
from auth.tokens import hash_secret_token
from core.config import get_settings

_TOKEN_KEY = b"t" * 32

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def users(db_url):
    s = UserStore(db_url)
    yield s
    s.close()


@pytest.fixture
def store(db_url):
    s = SessionStore(db_url)
    yield s
    s.close()


@pytest.fixture
def sessions(store, users, clock):
    settings = get_settings().model_copy(
        update={"session_lifetime_hours": 24, "session_refresh_threshold": 0.25, "max_sessions_per_user": 3}
    )
    return SessionManager(store, users, settings, clock, token_key=_TOKEN_KEY)


@pytest.fixture
def user_id(users, clock):
    return users.create_user(User(email="ada@example.com", email_verified=True), None, clock())


@pytest.fixture
def other_user_id(users, clock):
    return users.create_user(User(email="grace@example.com", email_verified=True), None, clock())


# ---------------------------------------------------------------------------
# Issue / validate
# ---------------------------------------------------------------------------


def test_create_and_validate(sessions, store, user_id, clock):
    issued = sessions.create(user_id, ip_address="203.0.113.9", user_agent="pytest")
    assert issued.session.expires_at == clock() + timedelta(hours=24)
    stored = store.get_by_id(issued.session.id)
    assert stored.token_hash == hash_secret_token(issued.token, _TOKEN_KEY)
    assert stored.token_hash != issued.token

    ctx = sessions.validate(issued.token)
    assert ctx is not None
    assert ctx.user.id == user_id
    assert ctx.session.id == issued.session.id
    assert not ctx.refreshed


def test_create_for_inactive_user_refused(sessions, users, user_id):
    users.update_user(user_id, is_active=False)
    with pytest.raises(UserInactive):
        sessions.create(user_id)


def test_create_for_unknown_user_refused(sessions):
    with pytest.raises(UserInactive):
        sessions.create(424242)


@pytest.mark.parametrize("token", ["", None, "not-a-session-token"])
def test_unknown_token_invalid(sessions, user_id, token):
    sessions.create(user_id)
    assert sessions.validate(token) is None


def test_expired_session_invalid(sessions, user_id, clock):
    issued = sessions.create(user_id, lifetime_hours=1)
    clock.advance(hours=1)
    assert sessions.validate(issued.token) is None


def test_custom_lifetime(sessions, user_id, clock):
    issued = sessions.create(user_id, lifetime_hours=2)
    assert issued.session.lifetime_seconds == 7200
    assert issued.session.expires_at == clock() + timedelta(hours=2)


# ---------------------------------------------------------------------------
# Sliding refresh
# ---------------------------------------------------------------------------


def test_no_refresh_before_threshold(sessions, user_id, clock):
    issued = sessions.create(user_id)
    clock.advance(hours=17)
    ctx = sessions.validate(issued.token)
    assert not ctx.refreshed
    assert ctx.session.expires_at == issued.session.expires_at


def test_refresh_at_threshold_extends_by_lifetime(sessions, store, user_id, clock):
    issued = sessions.create(user_id)
    clock.advance(hours=18)  # 6 of 24 hours left
    ctx = sessions.validate(issued.token)
    assert ctx.refreshed
    assert ctx.session.expires_at == issued.session.expires_at + timedelta(hours=24)
    assert store.get_by_id(issued.session.id).expires_at == ctx.session.expires_at


def test_refresh_happens_once_per_threshold(sessions, user_id, clock):
    issued = sessions.create(user_id)
    clock.advance(hours=20)
    assert sessions.validate(issued.token).refreshed
    second = sessions.validate(issued.token)
    assert not second.refreshed
    assert second.session.expires_at == issued.session.expires_at + timedelta(hours=24)


def test_refreshed_session_outlives_original_expiry(sessions, user_id, clock):
    issued = sessions.create(user_id)
    clock.advance(hours=20)
    sessions.validate(issued.token)
    clock.advance(hours=10)
    assert sessions.validate(issued.token) is not None


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


def test_revoke(sessions, user_id):
    issued = sessions.create(user_id)
    assert sessions.revoke(issued.token)
    assert sessions.validate(issued.token) is None
    assert not sessions.revoke(issued.token)


def test_revoked_session_is_not_refreshed(sessions, store, user_id, clock):
    issued = sessions.create(user_id)
    sessions.revoke(issued.token)
    clock.advance(hours=20)
    assert sessions.validate(issued.token) is None
    assert store.get_by_id(issued.session.id).expires_at == issued.session.expires_at


def test_revoke_by_id_requires_ownership(sessions, user_id, other_user_id):
    issued = sessions.create(user_id)
    assert not sessions.revoke_by_id(issued.session.id, user_id=other_user_id)
    assert sessions.validate(issued.token) is not None
    assert sessions.revoke_by_id(issued.session.id, user_id=user_id)
    assert sessions.validate(issued.token) is None


def test_revoke_all(sessions, user_id, other_user_id):
    mine = [sessions.create(user_id) for _ in range(3)]
    theirs = sessions.create(other_user_id)
    assert sessions.revoke_all(user_id) == 3
    assert all(sessions.validate(s.token) is None for s in mine)
    assert sessions.validate(theirs.token) is not None


def test_revoke_all_can_spare_current(sessions, user_id):
    current = sessions.create(user_id)
    others = [sessions.create(user_id) for _ in range(2)]
    assert sessions.revoke_all(user_id, except_token=current.token) == 2
    assert sessions.validate(current.token) is not None
    assert all(sessions.validate(s.token) is None for s in others)


def test_deactivated_owner_loses_session(sessions, store, users, user_id):
    issued = sessions.create(user_id)
    users.update_user(user_id, is_active=False)
    assert sessions.validate(issued.token) is None
    assert not store.get_by_id(issued.session.id).is_active


def test_concurrency_limit_revokes_oldest(sessions, user_id, clock):
    issued = []
    for _ in range(5):
        issued.append(sessions.create(user_id))
        clock.advance(minutes=1)
    assert sessions.enforce_concurrency_limit(user_id) == 2
    assert sessions.validate(issued[0].token) is None
    assert sessions.validate(issued[1].token) is None
    assert all(sessions.validate(s.token) is not None for s in issued[2:])


# ---------------------------------------------------------------------------
# Listing / maintenance
# ---------------------------------------------------------------------------


def test_list_for_user_marks_current(sessions, user_id, clock):
    first = sessions.create(user_id, user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X) Firefox/120.0")
    clock.advance(minutes=1)
    second = sessions.create(user_id, user_agent="curl/8.4.0")
    listed = sessions.list_for_user(user_id, current_token=second.token)
    assert [s.id for s in listed] == [second.session.id, first.session.id]
    assert listed[0].is_current and not listed[1].is_current
    assert listed[1].device == "Firefox on macOS"
    assert listed[0].device == "API client"


def test_list_excludes_revoked_and_expired(sessions, user_id, clock):
    sessions.revoke(sessions.create(user_id).token)
    sessions.create(user_id, lifetime_hours=1)
    live = sessions.create(user_id)
    clock.advance(hours=2)
    assert [s.id for s in sessions.list_for_user(user_id)] == [live.session.id]


def test_sweep_respects_grace_period(sessions, store, user_id, clock):
    expired = sessions.create(user_id, lifetime_hours=1)
    revoked = sessions.create(user_id)
    sessions.revoke(revoked.token)
    live = sessions.create(user_id)
    clock.advance(hours=2)
    assert sessions.sweep_expired() == 0
    clock.advance(hours=24)
    assert sessions.sweep_expired() == 2
    assert store.get_by_id(expired.session.id) is None
    assert store.get_by_id(revoked.session.id) is None
    assert store.get_by_id(live.session.id) is not None


def test_stats(sessions, user_id, clock):
    sessions.create(user_id, lifetime_hours=1)
    sessions.revoke(sessions.create(user_id).token)
    sessions.create(user_id)
    clock.advance(hours=2)
    assert sessions.stats() == {"total": 3, "active": 1, "expired": 1, "inactive": 1}


@pytest.mark.parametrize(
    "ua, expected",
    [
        (None, "Unknown device"),
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Safari/604.1", "Safari on iOS"),
        ("Mozilla/5.0 (Windows NT 10.0) Chrome/120.0 Safari/537.36 Edg/120.0", "Edge on Windows"),
        ("Mozilla/5.0 (X11; Linux x86_64) Chrome/120.0 Safari/537.36", "Chrome on Linux"),
        ("python-httpx/0.27", "API client"),
    ],
)
def test_describe_user_agent(ua, expected):
    assert describe_user_agent(ua) == expected
