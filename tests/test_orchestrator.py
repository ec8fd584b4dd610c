"""Flow tests for auth/service.py -- AuthOrchestrator end to end against a real DB.

Covers:
- Registration: first user is admin, normalization, duplicates, policy, verification mail
- Login: generic failure for unknown email / wrong password, inactive and
  unverified accounts revealed only after the right password
- Rate limits run before credential checks; backoff after repeated failures
- Two-factor login: challenge, single use, expiry, backup codes, backoff;
  a challenge lost to a concurrent request spends no code
- Sessions: logout, logout-all, revoke by id, concurrency limit
- Password reset: enumeration-safe request, 15 minute expiry, session revocation
- Reset and verification tokens throttled per IP; password re-entry throttled per user
- Password change, 2FA management, audit scoping, admin operations
- Exactly one audit entry per transition, rejections included; storage failures become results
- One bcrypt comparison per login attempt, at the configured cost, known account or not
"""

import bcrypt
import pyotp
import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from audit.models import AuditLogFilter, SecurityAction, SecuritySeverity
from auth.errors import ErrorKind
from auth.service import INVALID_CREDENTIALS_MESSAGE, RESET_REQUESTED_MESSAGE, SessionGrant

PASSWORD = "Sn0wman!2024"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _entries(orch, **filters):
    return orch.audit.query(AuditLogFilter(limit=500, **filters)).items


def _actions(orch, **filters) -> list[SecurityAction]:
    return [e.action for e in _entries(orch, **filters)]


def _login(orch, email="ada@example.com", password=PASSWORD) -> str:
    result = orch.login(email, password)
    assert result.ok, result.message
    return result.value.token


def _enable_two_factor(orch, clock, token):
    setup = orch.setup_two_factor(token).value
    assert orch.confirm_two_factor(token, pyotp.TOTP(setup.secret).at(clock())).ok
    clock.advance(seconds=30)
    return setup


@pytest.fixture
def admin(make_user):
    return make_user("root@example.com")


@pytest.fixture
def ada(admin, make_user):
    return make_user("ada@example.com")


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_first_user_is_admin(self, orchestrator):
        first = orchestrator.register("root@example.com", PASSWORD).value
        second = orchestrator.register("ada@example.com", PASSWORD).value
        assert first.role == "admin"
        assert second.role == "user"

    def test_email_is_normalized(self, orchestrator):
        user = orchestrator.register("  Ada@Example.COM ", PASSWORD).value
        assert user.email == "ada@example.com"
        assert orchestrator.users.get_by_email("ADA@example.com").id == user.id

    def test_duplicate_email_rejected_case_insensitively(self, orchestrator):
        orchestrator.register("ada@example.com", PASSWORD)
        result = orchestrator.register("ADA@example.com", PASSWORD)
        assert result.error is ErrorKind.ALREADY_EXISTS
        assert orchestrator.users.count_users() == 1

    def test_weak_password_rejected(self, orchestrator):
        result = orchestrator.register("ada@example.com", "short")
        assert result.error is ErrorKind.WEAK_CREDENTIAL
        assert orchestrator.users.get_by_email("ada@example.com") is None

    @pytest.mark.parametrize("email", ["", "ada", "ada@", "ada@example", "a da@example.com"])
    def test_invalid_email_rejected(self, orchestrator, email):
        assert orchestrator.register(email, PASSWORD).error is ErrorKind.INVALID_INPUT

    def test_verification_email_sent_and_consumed(self, orchestrator, notifier):
        user = orchestrator.register("ada@example.com", PASSWORD).value
        assert not user.email_verified
        token = notifier.last_token("verification", "ada@example.com")
        assert orchestrator.verify_email(token).ok
        assert orchestrator.users.get_by_id(user.id).email_verified
        assert orchestrator.verify_email(token).error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    def test_registration_audited_once(self, orchestrator):
        user = orchestrator.register("ada@example.com", PASSWORD).value
        assert _actions(orchestrator) == [SecurityAction.USER_CREATED]
        assert _entries(orchestrator)[0].user_id == user.id

    @pytest.mark.parametrize(
        "email, password, reason, kind",
        [
            ("not-an-email", PASSWORD, "invalid_email", ErrorKind.INVALID_INPUT),
            ("grace@example.com", "short", "weak_password", ErrorKind.WEAK_CREDENTIAL),
            ("ADA@example.com", PASSWORD, "duplicate_email", ErrorKind.ALREADY_EXISTS),
        ],
    )
    def test_rejected_registration_audited(self, orchestrator, ada, email, password, reason, kind):
        before = len(_entries(orchestrator))
        assert orchestrator.register(email, password, ip_address="203.0.113.9").error is kind
        entries = _entries(orchestrator)
        assert len(entries) == before + 1
        entry = entries[0]
        assert entry.action is SecurityAction.USER_CREATED
        assert not entry.success
        assert entry.user_id is None
        assert entry.ip_address == "203.0.113.9"
        assert entry.event_data == {"reason": reason}

    def test_bad_verification_token_audited(self, orchestrator):
        assert orchestrator.verify_email("bogus").error is ErrorKind.INVALID_OR_EXPIRED_TOKEN
        assert _actions(orchestrator) == [SecurityAction.EMAIL_VERIFICATION_FAILED]

    def test_verification_token_guessing_backs_off_per_ip(self, orchestrator, ada, clock):
        ip = "198.51.100.7"
        for _ in range(4):
            assert orchestrator.verify_email("bogus", ip_address=ip).error is ErrorKind.INVALID_OR_EXPIRED_TOKEN
        locked = orchestrator.verify_email("bogus", ip_address=ip)
        assert locked.error is ErrorKind.RATE_LIMITED
        assert locked.retry_after == 1
        entry = _entries(orchestrator)[0]
        assert entry.action is SecurityAction.LOGIN_LOCKED
        assert entry.event_data["operation"] == "verify_email"
        # Another address is unaffected
        other = orchestrator.verify_email("bogus", ip_address="198.51.100.8")
        assert other.error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    def test_verification_not_required(self, make_orchestrator, notifier):
        orch = make_orchestrator(require_email_verification=False)
        user = orch.register("ada@example.com", PASSWORD).value
        assert user.email_verified
        assert notifier.messages("verification") == []
        assert orch.login("ada@example.com", PASSWORD).ok

    def test_self_registration_disabled(self, make_orchestrator):
        orch = make_orchestrator(self_registration_enabled=False)
        assert orch.register("ada@example.com", PASSWORD).error is ErrorKind.PERMISSION_DENIED

    def test_resend_verification_replaces_token(self, orchestrator, notifier):
        orchestrator.register("ada@example.com", PASSWORD)
        first = notifier.last_token("verification", "ada@example.com")
        result = orchestrator.resend_verification("ada@example.com")
        assert result.ok
        second = notifier.last_token("verification", "ada@example.com")
        assert first != second
        assert not orchestrator.verify_email(first).ok
        assert orchestrator.verify_email(second).ok

    def test_resend_verification_is_enumeration_safe(self, orchestrator, ada, notifier):
        before = len(notifier.sent)
        unknown = orchestrator.resend_verification("nobody@example.com")
        verified = orchestrator.resend_verification("ada@example.com")
        assert unknown.ok and verified.ok
        assert unknown.message == verified.message
        assert len(notifier.sent) == before

    def test_notifier_failure_does_not_fail_registration(self, orchestrator):
        class BrokenNotifier:
            def send_verification_email(self, email, token):
                raise ConnectionError("smtp down")

        orchestrator.notifier = BrokenNotifier()
        assert orchestrator.register("ada@example.com", PASSWORD).ok


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_returns_session_grant(self, orchestrator, ada, clock):
        result = orchestrator.login("ada@example.com", PASSWORD, ip_address="203.0.113.9", user_agent="pytest")
        assert result.ok
        grant = result.value
        assert isinstance(grant, SessionGrant)
        assert grant.user.id == ada.id
        ctx = orchestrator.verify_session(grant.token).value
        assert ctx.session.id == grant.session_id
        assert orchestrator.users.get_by_id(ada.id).last_login == clock()

    def test_success_audited_once(self, orchestrator, ada):
        before = len(_entries(orchestrator))
        grant = orchestrator.login("ada@example.com", PASSWORD).value
        entries = _entries(orchestrator)
        assert len(entries) == before + 1
        assert entries[0].action is SecurityAction.LOGIN
        assert entries[0].session_id == grant.session_id

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, orchestrator, ada):
        unknown = orchestrator.login("nobody@example.com", PASSWORD)
        wrong = orchestrator.login("ada@example.com", "Wr0ng!Password")
        assert unknown.error is wrong.error is ErrorKind.INVALID_CREDENTIALS
        assert unknown.message == wrong.message == INVALID_CREDENTIALS_MESSAGE
        assert _actions(orchestrator, action=SecurityAction.LOGIN_FAILED) == [
            SecurityAction.LOGIN_FAILED,
            SecurityAction.LOGIN_FAILED,
        ]

    def test_unverified_revealed_only_with_correct_password(self, orchestrator, admin, make_user):
        make_user("new@example.com", verify=False)
        assert orchestrator.login("new@example.com", "Wr0ng!Password").error is ErrorKind.INVALID_CREDENTIALS
        assert orchestrator.login("new@example.com", PASSWORD).error is ErrorKind.EMAIL_NOT_VERIFIED

    def test_inactive_revealed_only_with_correct_password(self, orchestrator, admin, ada):
        assert orchestrator.deactivate_user(ada.id, actor_id=admin.id).ok
        assert orchestrator.login("ada@example.com", "Wr0ng!Password").error is ErrorKind.INVALID_CREDENTIALS
        assert orchestrator.login("ada@example.com", PASSWORD).error is ErrorKind.ACCOUNT_INACTIVE

    def test_account_window_limit_runs_before_password_check(self, make_orchestrator, ada):
        orch = make_orchestrator(login_max_attempts_per_account=3, backoff_after_failures=100)
        for _ in range(3):
            assert orch.login("ada@example.com", "Wr0ng!Password").error is ErrorKind.INVALID_CREDENTIALS
        limited = orch.login("ada@example.com", PASSWORD)
        assert limited.error is ErrorKind.RATE_LIMITED
        assert limited.retry_after == 15 * 60
        assert _actions(orch)[0] is SecurityAction.RATE_LIMIT_EXCEEDED

    def test_account_limit_lifts_after_window(self, make_orchestrator, ada, clock):
        orch = make_orchestrator(login_max_attempts_per_account=1, backoff_after_failures=100)
        orch.login("ada@example.com", "Wr0ng!Password")
        assert orch.login("ada@example.com", PASSWORD).error is ErrorKind.RATE_LIMITED
        clock.advance(minutes=15)
        assert orch.login("ada@example.com", PASSWORD).ok

    def test_ip_limit_spans_accounts(self, make_orchestrator, ada):
        orch = make_orchestrator(login_max_attempts_per_ip=2, backoff_after_failures=100)
        ip = "198.51.100.7"
        orch.login("one@example.com", PASSWORD, ip_address=ip)
        orch.login("two@example.com", PASSWORD, ip_address=ip)
        assert orch.login("ada@example.com", PASSWORD, ip_address=ip).error is ErrorKind.RATE_LIMITED
        assert orch.login("ada@example.com", PASSWORD, ip_address="198.51.100.8").ok

    def test_backoff_after_consecutive_failures(self, make_orchestrator, ada, clock):
        orch = make_orchestrator(login_max_attempts_per_account=20)
        for _ in range(4):
            orch.login("ada@example.com", "Wr0ng!Password")
        locked = orch.login("ada@example.com", PASSWORD)
        assert locked.error is ErrorKind.RATE_LIMITED
        assert locked.retry_after == 1
        assert _actions(orch)[0] is SecurityAction.LOGIN_LOCKED
        clock.advance(seconds=1)
        assert orch.login("ada@example.com", PASSWORD).ok

    def test_success_clears_failure_tally(self, orchestrator, ada):
        for _ in range(3):
            orchestrator.login("ada@example.com", "Wr0ng!Password")
        assert orchestrator.login("ada@example.com", PASSWORD).ok
        key = orchestrator.limiter.policy_key("login_account", "ada@example.com")
        assert orchestrator.limiter.record_failure(key) == 1


class TestLoginTiming:
    """Every login attempt costs exactly one bcrypt comparison."""

    @pytest.fixture
    def checked_hashes(self, monkeypatch):
        hashes: list[bytes] = []
        real_checkpw = bcrypt.checkpw

        def counting_checkpw(password, hashed):
            hashes.append(hashed)
            return real_checkpw(password, hashed)

        monkeypatch.setattr(bcrypt, "checkpw", counting_checkpw)
        return hashes

    def test_unknown_email_runs_dummy_comparison(self, orchestrator, ada, checked_hashes):
        assert orchestrator.login("nobody@example.com", PASSWORD).error is ErrorKind.INVALID_CREDENTIALS
        assert len(checked_hashes) == 1
        assert checked_hashes[0].startswith(b"$2b$04$")

    def test_wrong_password_runs_one_comparison(self, orchestrator, ada, checked_hashes):
        assert orchestrator.login("ada@example.com", "Wr0ng!Password").error is ErrorKind.INVALID_CREDENTIALS
        assert len(checked_hashes) == 1
        assert checked_hashes[0].startswith(b"$2b$04$")

    def test_dummy_comparison_uses_configured_cost(self, make_orchestrator, ada, checked_hashes):
        orch = make_orchestrator(bcrypt_rounds=5)
        assert orch.login("nobody@example.com", PASSWORD).error is ErrorKind.INVALID_CREDENTIALS
        assert len(checked_hashes) == 1
        assert checked_hashes[0].startswith(b"$2b$05$")


# ---------------------------------------------------------------------------
# Two-factor login
# ---------------------------------------------------------------------------


class TestTwoFactorLogin:
    @pytest.fixture
    def enrolled(self, orchestrator, ada, clock):
        return _enable_two_factor(orchestrator, clock, _login(orchestrator))

    def test_password_step_returns_challenge(self, orchestrator, enrolled):
        result = orchestrator.login("ada@example.com", PASSWORD)
        assert not result.ok
        assert result.error is ErrorKind.TWO_FACTOR_REQUIRED
        assert isinstance(result.value, str) and len(result.value) >= 43
        entry = _entries(orchestrator)[0]
        assert entry.action is SecurityAction.LOGIN
        assert entry.event_data["stage"] == "password"

    def test_complete_with_totp(self, orchestrator, enrolled, clock):
        challenge = orchestrator.login("ada@example.com", PASSWORD).value
        result = orchestrator.complete_two_factor(challenge, pyotp.TOTP(enrolled.secret).at(clock()))
        assert result.ok
        assert orchestrator.verify_session(result.value.token).ok
        assert _entries(orchestrator)[0].event_data["stage"] == "two_factor"

    def test_challenge_is_single_use(self, orchestrator, enrolled, clock):
        challenge = orchestrator.login("ada@example.com", PASSWORD).value
        assert orchestrator.complete_two_factor(challenge, enrolled.backup_codes[0]).ok
        again = orchestrator.complete_two_factor(challenge, enrolled.backup_codes[1])
        assert again.error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    def test_wrong_code_keeps_challenge(self, orchestrator, enrolled, clock):
        challenge = orchestrator.login("ada@example.com", PASSWORD).value
        assert orchestrator.complete_two_factor(challenge, "000000").error is ErrorKind.INVALID_TWO_FACTOR_CODE
        assert orchestrator.complete_two_factor(challenge, pyotp.TOTP(enrolled.secret).at(clock())).ok

    def test_challenge_expires(self, orchestrator, enrolled, clock):
        challenge = orchestrator.login("ada@example.com", PASSWORD).value
        clock.advance(minutes=11)
        result = orchestrator.complete_two_factor(challenge, pyotp.TOTP(enrolled.secret).at(clock()))
        assert result.error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    def test_unknown_challenge_audited(self, orchestrator, enrolled):
        assert orchestrator.complete_two_factor("bogus", "123456").error is ErrorKind.INVALID_OR_EXPIRED_TOKEN
        entry = _entries(orchestrator)[0]
        assert entry.action is SecurityAction.TWO_FACTOR_FAILED
        assert entry.event_data["reason"] == "invalid_challenge"

    def test_backup_code_single_use(self, orchestrator, enrolled):
        code = enrolled.backup_codes[0]
        first = orchestrator.login("ada@example.com", PASSWORD).value
        assert orchestrator.complete_two_factor(first, code).ok
        second = orchestrator.login("ada@example.com", PASSWORD).value
        assert orchestrator.complete_two_factor(second, code).error is ErrorKind.INVALID_TWO_FACTOR_CODE

    def test_challenge_claimed_elsewhere_spends_no_code(self, orchestrator, ada, enrolled, monkeypatch):
        code = enrolled.backup_codes[0]
        challenge = orchestrator.login("ada@example.com", PASSWORD).value
        # A concurrent request consumed the challenge between lookup and claim
        with monkeypatch.context() as m:
            m.setattr(orchestrator.users, "consume_challenge", lambda challenge_id, now: False)
            lost = orchestrator.complete_two_factor(challenge, code)
        assert lost.error is ErrorKind.INVALID_OR_EXPIRED_TOKEN
        assert _entries(orchestrator)[0].event_data["reason"] == "challenge_already_used"
        assert orchestrator.two_factor.status(ada.id).backup_codes_remaining == 10
        fresh = orchestrator.login("ada@example.com", PASSWORD).value
        assert orchestrator.complete_two_factor(fresh, code).ok

    def test_inactive_account_at_second_step_audited(self, orchestrator, ada, enrolled, clock):
        challenge = orchestrator.login("ada@example.com", PASSWORD).value
        orchestrator.users.update_user(ada.id, is_active=False)
        before = len(_entries(orchestrator))
        result = orchestrator.complete_two_factor(challenge, pyotp.TOTP(enrolled.secret).at(clock()))
        assert result.error is ErrorKind.ACCOUNT_INACTIVE
        entries = _entries(orchestrator)
        assert len(entries) == before + 1
        assert entries[0].action is SecurityAction.TWO_FACTOR_FAILED
        assert entries[0].user_id == ada.id
        assert entries[0].event_data == {"reason": "account_inactive"}

    def test_second_factor_backoff(self, orchestrator, enrolled, clock):
        challenge = orchestrator.login("ada@example.com", PASSWORD).value
        for _ in range(4):
            orchestrator.complete_two_factor(challenge, "000000")
        locked = orchestrator.complete_two_factor(challenge, pyotp.TOTP(enrolled.secret).at(clock()))
        assert locked.error is ErrorKind.RATE_LIMITED
        assert locked.retry_after >= 1


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_logout(self, orchestrator, ada):
        token = _login(orchestrator)
        assert orchestrator.logout(token).ok
        assert orchestrator.verify_session(token).error is ErrorKind.SESSION_INVALID
        assert orchestrator.logout(token).error is ErrorKind.SESSION_INVALID
        assert _actions(orchestrator)[0] is SecurityAction.LOGOUT

    def test_logout_all(self, orchestrator, ada):
        tokens = [_login(orchestrator) for _ in range(3)]
        result = orchestrator.logout_all(tokens[0])
        assert result.value == 3
        assert all(not orchestrator.verify_session(t).ok for t in tokens)

    def test_revoke_own_session_by_id(self, orchestrator, ada):
        token = _login(orchestrator)
        other = orchestrator.login("ada@example.com", PASSWORD).value
        assert orchestrator.revoke_session(ada.id, other.session_id).ok
        assert not orchestrator.verify_session(other.token).ok
        assert orchestrator.verify_session(token).ok

    def test_cannot_revoke_another_users_session(self, orchestrator, admin, ada):
        admin_grant = orchestrator.login("root@example.com", PASSWORD).value
        result = orchestrator.revoke_session(ada.id, admin_grant.session_id)
        assert result.error is ErrorKind.NOT_FOUND
        assert orchestrator.verify_session(admin_grant.token).ok

    def test_list_sessions_marks_current(self, orchestrator, ada):
        _login(orchestrator)
        current = _login(orchestrator)
        listed = orchestrator.list_sessions(ada.id, current_token=current).value
        assert len(listed) == 2
        assert [s.is_current for s in listed] == [True, False]

    def test_concurrency_limit(self, make_orchestrator, ada, clock):
        orch = make_orchestrator(max_sessions_per_user=2)
        tokens = []
        for _ in range(3):
            tokens.append(_login(orch))
            clock.advance(seconds=1)
        assert not orch.verify_session(tokens[0]).ok
        assert orch.verify_session(tokens[1]).ok
        assert orch.verify_session(tokens[2]).ok


# ---------------------------------------------------------------------------
# Password reset and change
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_request_is_enumeration_safe(self, orchestrator, ada, notifier):
        known = orchestrator.request_password_reset("ada@example.com")
        unknown = orchestrator.request_password_reset("nobody@example.com")
        assert known.ok and unknown.ok
        assert known.message == unknown.message == RESET_REQUESTED_MESSAGE
        assert len(notifier.messages("reset")) == 1
        assert notifier.messages("reset")[0][1] == "ada@example.com"

    def test_unknown_email_request_audited_as_undelivered(self, orchestrator, ada):
        orchestrator.request_password_reset("nobody@example.com")
        entry = _entries(orchestrator)[0]
        assert entry.action is SecurityAction.PASSWORD_RESET_REQUESTED
        assert not entry.success
        assert entry.event_data == {"delivered": False}

    def test_reset_sets_password_and_revokes_sessions(self, orchestrator, ada, notifier):
        tokens = [_login(orchestrator) for _ in range(2)]
        orchestrator.request_password_reset("ada@example.com")
        reset_token = notifier.last_token("reset", "ada@example.com")

        result = orchestrator.reset_password(reset_token, "Fr3sh!Start")
        assert result.ok
        assert all(not orchestrator.verify_session(t).ok for t in tokens)
        assert orchestrator.login("ada@example.com", PASSWORD).error is ErrorKind.INVALID_CREDENTIALS
        assert orchestrator.login("ada@example.com", "Fr3sh!Start").ok
        assert notifier.messages("password_changed", "ada@example.com")
        assert _entries(orchestrator, action=SecurityAction.PASSWORD_RESET_COMPLETED)[0].event_data == {
            "sessions_revoked": 2
        }

    def test_reset_token_single_use(self, orchestrator, ada, notifier):
        orchestrator.request_password_reset("ada@example.com")
        token = notifier.last_token("reset")
        assert orchestrator.reset_password(token, "Fr3sh!Start").ok
        assert orchestrator.reset_password(token, "An0ther!One").error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    def test_reset_token_expires_after_fifteen_minutes(self, orchestrator, ada, notifier, clock):
        orchestrator.request_password_reset("ada@example.com")
        token = notifier.last_token("reset")
        clock.advance(minutes=16)
        result = orchestrator.reset_password(token, "Fr3sh!Start")
        assert result.error is ErrorKind.INVALID_OR_EXPIRED_TOKEN
        assert _actions(orchestrator)[0] is SecurityAction.PASSWORD_RESET_FAILED
        assert orchestrator.login("ada@example.com", PASSWORD).ok

    def test_weak_new_password(self, orchestrator, ada, notifier):
        orchestrator.request_password_reset("ada@example.com")
        token = notifier.last_token("reset")
        before = len(_entries(orchestrator))
        assert orchestrator.reset_password(token, "short").error is ErrorKind.WEAK_CREDENTIAL
        entries = _entries(orchestrator)
        assert len(entries) == before + 1
        assert entries[0].action is SecurityAction.PASSWORD_RESET_FAILED
        assert entries[0].event_data == {"reason": "weak_password"}
        assert orchestrator.reset_password(token, "Fr3sh!Start").ok

    def test_check_reset_token_is_read_only(self, orchestrator, ada, notifier):
        orchestrator.request_password_reset("ada@example.com")
        token = notifier.last_token("reset")
        before = len(_entries(orchestrator))
        assert orchestrator.check_reset_token(token, ip_address="203.0.113.9").ok
        assert orchestrator.check_reset_token(token, ip_address="203.0.113.9").ok
        assert len(_entries(orchestrator)) == before
        assert orchestrator.reset_password(token, "Fr3sh!Start").ok
        assert orchestrator.check_reset_token(token).error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    def test_check_reset_token_rejects_expired_link(self, orchestrator, ada, notifier, clock):
        orchestrator.request_password_reset("ada@example.com")
        token = notifier.last_token("reset")
        clock.advance(minutes=16)
        assert orchestrator.check_reset_token(token).error is ErrorKind.INVALID_OR_EXPIRED_TOKEN
        entry = _entries(orchestrator)[0]
        assert entry.action is SecurityAction.PASSWORD_RESET_FAILED
        assert entry.event_data["stage"] == "validate"

    def test_reset_token_guessing_rate_limited_per_ip(self, make_orchestrator, ada, notifier):
        orch = make_orchestrator(token_max_attempts_per_ip=3, backoff_after_failures=100)
        orch.request_password_reset("ada@example.com")
        token = notifier.last_token("reset")
        ip = "198.51.100.7"
        for guess in ("guess-1", "guess-2", "guess-3"):
            assert orch.reset_password(guess, "Fr3sh!Start", ip_address=ip).error is ErrorKind.INVALID_OR_EXPIRED_TOKEN
        limited = orch.reset_password(token, "Fr3sh!Start", ip_address=ip)
        assert limited.error is ErrorKind.RATE_LIMITED
        assert limited.retry_after == 15 * 60
        assert _actions(orch)[0] is SecurityAction.RATE_LIMIT_EXCEEDED
        # The gate ran before the token was touched
        assert orch.reset_password(token, "Fr3sh!Start", ip_address="198.51.100.8").ok

    def test_reset_token_guessing_backs_off(self, orchestrator, ada, notifier, clock):
        orchestrator.request_password_reset("ada@example.com")
        token = notifier.last_token("reset")
        ip = "198.51.100.7"
        for _ in range(4):
            orchestrator.reset_password("guess", "Fr3sh!Start", ip_address=ip)
        locked = orchestrator.reset_password(token, "Fr3sh!Start", ip_address=ip)
        assert locked.error is ErrorKind.RATE_LIMITED
        assert locked.retry_after == 1
        clock.advance(seconds=1)
        assert orchestrator.reset_password(token, "Fr3sh!Start", ip_address=ip).ok
        key = orchestrator.limiter.policy_key("token_ip", ip)
        assert orchestrator.limiter.record_failure(key) == 1

    def test_reset_requests_rate_limited_per_account(self, orchestrator, ada):
        for _ in range(3):
            assert orchestrator.request_password_reset("ada@example.com").ok
        limited = orchestrator.request_password_reset("ada@example.com")
        assert limited.error is ErrorKind.RATE_LIMITED
        assert limited.retry_after == 3600

    def test_reset_clears_login_backoff(self, make_orchestrator, ada, notifier):
        orch = make_orchestrator(login_max_attempts_per_account=20)
        for _ in range(5):
            orch.login("ada@example.com", "Wr0ng!Password")
        orch.request_password_reset("ada@example.com")
        orch.reset_password(notifier.last_token("reset"), "Fr3sh!Start")
        assert orch.login("ada@example.com", "Fr3sh!Start").ok


class TestPasswordChange:
    def test_change_keeps_current_session_only(self, orchestrator, ada, notifier):
        other = _login(orchestrator)
        current = _login(orchestrator)
        result = orchestrator.change_password(current, PASSWORD, "N3w!Password")
        assert result.ok
        assert result.value == 1
        assert orchestrator.verify_session(current).ok
        assert not orchestrator.verify_session(other).ok
        assert orchestrator.login("ada@example.com", "N3w!Password").ok
        assert notifier.messages("password_changed", "ada@example.com")

    def test_wrong_current_password(self, orchestrator, ada):
        token = _login(orchestrator)
        result = orchestrator.change_password(token, "Wr0ng!Password", "N3w!Password")
        assert result.error is ErrorKind.INVALID_CREDENTIALS
        entry = _entries(orchestrator)[0]
        assert entry.action is SecurityAction.PASSWORD_CHANGED and not entry.success
        assert entry.event_data == {"reason": "password_mismatch", "consecutive_failures": 1}

    def test_weak_new_password_audited(self, orchestrator, ada):
        token = _login(orchestrator)
        before = len(_entries(orchestrator))
        assert orchestrator.change_password(token, PASSWORD, "short").error is ErrorKind.WEAK_CREDENTIAL
        entries = _entries(orchestrator)
        assert len(entries) == before + 1
        assert entries[0].action is SecurityAction.PASSWORD_CHANGED
        assert not entries[0].success
        assert entries[0].event_data == {"reason": "weak_password"}
        assert orchestrator.login("ada@example.com", PASSWORD).ok

    def test_password_guessing_backs_off_across_operations(self, make_orchestrator, ada, clock):
        orch = make_orchestrator(reauth_max_attempts=20)
        token = _login(orch)
        for _ in range(4):
            orch.change_password(token, "Wr0ng!Password", "N3w!Password")
        # Re-entry failures are tallied per user, whichever operation asked
        locked = orch.regenerate_backup_codes(token, PASSWORD)
        assert locked.error is ErrorKind.RATE_LIMITED
        assert locked.retry_after == 1
        entry = _entries(orch)[0]
        assert entry.action is SecurityAction.LOGIN_LOCKED
        assert entry.event_data["operation"] == "backup_codes_regenerate"
        clock.advance(seconds=1)
        assert orch.change_password(token, PASSWORD, "N3w!Password").ok

    def test_password_reentry_window_limit(self, make_orchestrator, ada):
        orch = make_orchestrator(reauth_max_attempts=2, backoff_after_failures=100)
        token = _login(orch)
        for _ in range(2):
            assert orch.disable_two_factor(token, "Wr0ng!Password").error is ErrorKind.INVALID_CREDENTIALS
        limited = orch.change_password(token, PASSWORD, "N3w!Password")
        assert limited.error is ErrorKind.RATE_LIMITED
        assert limited.retry_after == 15 * 60
        assert _actions(orch)[0] is SecurityAction.RATE_LIMIT_EXCEEDED

    def test_requires_session(self, orchestrator, ada):
        assert orchestrator.change_password("nope", PASSWORD, "N3w!Password").error is ErrorKind.SESSION_INVALID


# ---------------------------------------------------------------------------
# Two-factor management
# ---------------------------------------------------------------------------


class TestTwoFactorManagement:
    def test_setup_twice_when_enabled(self, orchestrator, ada, clock):
        token = _login(orchestrator)
        _enable_two_factor(orchestrator, clock, token)
        before = len(_entries(orchestrator))
        assert orchestrator.setup_two_factor(token).error is ErrorKind.INVALID_STATE
        entries = _entries(orchestrator)
        assert len(entries) == before + 1
        assert entries[0].action is SecurityAction.TWO_FACTOR_SETUP
        assert not entries[0].success
        assert entries[0].event_data == {"reason": "already_enabled"}

    def test_confirm_with_wrong_code(self, orchestrator, ada):
        token = _login(orchestrator)
        orchestrator.setup_two_factor(token)
        assert orchestrator.confirm_two_factor(token, "000000").error is ErrorKind.INVALID_TWO_FACTOR_CODE
        assert not orchestrator.two_factor.is_enabled(ada.id)

    def test_disable_requires_password(self, orchestrator, ada, clock):
        token = _login(orchestrator)
        _enable_two_factor(orchestrator, clock, token)
        assert orchestrator.disable_two_factor(token, "Wr0ng!Password").error is ErrorKind.INVALID_CREDENTIALS
        assert orchestrator.disable_two_factor(token, PASSWORD).ok
        assert not orchestrator.two_factor.is_enabled(ada.id)
        entry = _entries(orchestrator)[0]
        assert entry.action is SecurityAction.TWO_FACTOR_DISABLED
        assert entry.severity is SecuritySeverity.WARN
        assert orchestrator.login("ada@example.com", PASSWORD).ok

    def test_disable_when_not_enabled(self, orchestrator, ada):
        token = _login(orchestrator)
        before = len(_entries(orchestrator))
        assert orchestrator.disable_two_factor(token, PASSWORD).error is ErrorKind.INVALID_STATE
        entries = _entries(orchestrator)
        assert len(entries) == before + 1
        assert entries[0].action is SecurityAction.TWO_FACTOR_DISABLED
        assert not entries[0].success
        assert entries[0].event_data == {"reason": "not_enabled"}

    def test_regenerate_backup_codes(self, orchestrator, ada, clock):
        token = _login(orchestrator)
        setup = _enable_two_factor(orchestrator, clock, token)
        codes = orchestrator.regenerate_backup_codes(token, PASSWORD).value
        assert len(codes) == 10
        challenge = orchestrator.login("ada@example.com", PASSWORD).value
        assert orchestrator.complete_two_factor(challenge, setup.backup_codes[0]).error is (
            ErrorKind.INVALID_TWO_FACTOR_CODE
        )
        assert orchestrator.complete_two_factor(challenge, codes[0]).ok

    def test_regenerate_requires_enabled(self, orchestrator, ada):
        token = _login(orchestrator)
        before = len(_entries(orchestrator))
        assert orchestrator.regenerate_backup_codes(token, PASSWORD).error is ErrorKind.INVALID_STATE
        entries = _entries(orchestrator)
        assert len(entries) == before + 1
        assert entries[0].action is SecurityAction.BACKUP_CODES_GENERATED
        assert not entries[0].success
        assert entries[0].event_data == {"reason": "not_enabled"}


# ---------------------------------------------------------------------------
# Audit access and administration
# ---------------------------------------------------------------------------


class TestAdministration:
    def test_non_admin_sees_only_own_entries(self, orchestrator, admin, ada):
        token = _login(orchestrator)
        page = orchestrator.query_audit_log(token, AuditLogFilter(user_id=admin.id)).value
        assert page.total > 0
        assert {e.user_id for e in page.items} == {ada.id}

    def test_admin_sees_everything(self, orchestrator, admin, ada):
        token = _login(orchestrator, "root@example.com")
        page = orchestrator.query_audit_log(token, AuditLogFilter(limit=500)).value
        assert {admin.id, ada.id} <= {e.user_id for e in page.items}

    def test_query_over_undecodable_entry_reports_violation(self, orchestrator, admin, ada):
        token = _login(orchestrator, "root@example.com")
        victim = _entries(orchestrator, user_id=ada.id)[0]
        with orchestrator.audit._store.engine.connect() as conn:
            conn.execute(text("UPDATE audit_logs SET event_type = 'FORGED' WHERE id = :id"), {"id": victim.id})
            conn.commit()

        result = orchestrator.query_audit_log(token, AuditLogFilter(limit=500))
        assert result.error is ErrorKind.INTEGRITY_VIOLATION
        alert = _entries(orchestrator, action=SecurityAction.INTEGRITY_VIOLATION)
        assert len(alert) == 1
        assert alert[0].severity is SecuritySeverity.CRITICAL
        assert alert[0].event_data == {"corrupted_ids": [victim.id], "operation": "query"}

    def test_deactivate_revokes_sessions(self, orchestrator, admin, ada):
        token = _login(orchestrator)
        result = orchestrator.deactivate_user(ada.id, actor_id=admin.id)
        assert result.ok and result.value == 1
        assert not orchestrator.verify_session(token).ok
        assert _actions(orchestrator)[0] is SecurityAction.USER_DEACTIVATED

    def test_cannot_deactivate_self(self, orchestrator, admin):
        assert orchestrator.deactivate_user(admin.id, actor_id=admin.id).error is ErrorKind.PERMISSION_DENIED

    def test_cannot_deactivate_last_admin(self, orchestrator, admin, ada):
        assert orchestrator.deactivate_user(admin.id, actor_id=ada.id).error is ErrorKind.INVALID_STATE

    def test_deactivate_unknown_user(self, orchestrator, admin):
        assert orchestrator.deactivate_user(9999, actor_id=admin.id).error is ErrorKind.NOT_FOUND

    def test_reactivate(self, orchestrator, admin, ada):
        orchestrator.deactivate_user(ada.id, actor_id=admin.id)
        assert orchestrator.activate_user(ada.id, actor_id=admin.id).ok
        assert orchestrator.login("ada@example.com", PASSWORD).ok

    def test_set_role(self, orchestrator, admin, ada):
        assert orchestrator.set_role(ada.id, "admin", actor_id=admin.id).ok
        assert orchestrator.users.get_by_id(ada.id).is_admin
        assert orchestrator.set_role(admin.id, "user", actor_id=ada.id).ok

    def test_cannot_demote_last_admin(self, orchestrator, admin):
        assert orchestrator.set_role(admin.id, "user").error is ErrorKind.INVALID_STATE

    def test_invalid_role(self, orchestrator, ada):
        assert orchestrator.set_role(ada.id, "superuser").error is ErrorKind.INVALID_INPUT


# ---------------------------------------------------------------------------
# Storage and maintenance
# ---------------------------------------------------------------------------


def test_storage_failure_becomes_result(orchestrator, ada, monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(orchestrator.users, "get_by_email", broken)
    result = orchestrator.login("ada@example.com", PASSWORD)
    assert result.error is ErrorKind.STORAGE_UNAVAILABLE
    assert "locked" not in result.message


def test_run_maintenance(orchestrator, ada, clock):
    orchestrator.login("ada@example.com", PASSWORD)
    orchestrator.login("ada@example.com", "Wr0ng!Password")
    clock.advance(days=200)
    report = orchestrator.run_maintenance()
    assert report.sessions_removed == 1
    assert report.counters_purged >= 2
    assert report.audit_entries_removed >= 2
    assert orchestrator.audit.run_integrity_check() > 0
