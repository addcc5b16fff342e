"""End-to-end tests for authentication.

Tests for:
- Failed attempts counted inside the sliding window
- Automatic lockout and escalation to permanent
- One trace per authentication call
- Account creation rules
"""

import pytest

from gatekeep.service.errors import StateConflictError, ValidationError
from gatekeep.storage.models import AccountStatus, AuditEventType, LockoutKind

from conftest import OTHER_PASSWORD, PASSWORD


def _fail_times(runtime, email, n, ip="10.0.0.1"):
    for _ in range(n):
        assert runtime.auth.authenticate(email, "Wrong-Password1", ip) is None


class TestAuthenticate:
    def test_correct_password(self, runtime, account):
        result = runtime.auth.authenticate("User@Example.com ", PASSWORD, "10.0.0.1")

        assert result.id == account.id
        entry = runtime.audit.by_event_type(AuditEventType.SUCCESSFUL_LOGIN)[0]
        assert entry.account_id == account.id
        assert entry.ip_addr == "10.0.0.1"
        assert runtime.audit.verify(entry)

    @pytest.mark.parametrize(
        "email,password,reason",
        [
            ("user@example.com", "Wrong-Password1", "invalid_password"),
            ("ghost@example.com", PASSWORD, "unknown_account"),
            ("", PASSWORD, "missing_credentials"),
            ("user@example.com", "", "missing_credentials"),
            (None, None, "missing_credentials"),
        ],
    )
    def test_each_failure_leaves_one_trace(self, runtime, account, email, password, reason):
        assert runtime.auth.authenticate(email, password, "10.0.0.1") is None

        failures = runtime.audit.by_event_type(AuditEventType.FAILED_LOGIN)
        assert [e.reason for e in failures] == [reason]
        assert runtime.failed_logins.count_by_ip("10.0.0.1") == 1
        assert runtime.audit.by_event_type(AuditEventType.SUCCESSFUL_LOGIN) == []

    def test_failure_reason_not_exposed(self, runtime, account):
        unknown = runtime.auth.authenticate("ghost@example.com", PASSWORD)
        wrong = runtime.auth.authenticate(account.email, OTHER_PASSWORD)

        assert unknown is None and wrong is None

    def test_inactive_account_rejected(self, runtime, make_account):
        held = make_account("held@example.com", status=AccountStatus.SUSPENDED)

        assert runtime.auth.authenticate(held.email, PASSWORD) is None
        assert runtime.audit.by_event_type(AuditEventType.FAILED_LOGIN)[0].reason == "account_suspended"

    @pytest.mark.parametrize("state", ["unknown", "locked", "suspended", "wrong_password"])
    def test_every_refusal_runs_one_hash_check(self, runtime, make_account, monkeypatch, state):
        email, password = "user@example.com", PASSWORD
        if state == "unknown":
            email = "ghost@example.com"
        elif state == "locked":
            runtime.lockouts.lock(make_account().id, 5)
        elif state == "suspended":
            make_account(status=AccountStatus.SUSPENDED)
        else:
            make_account()
            password = OTHER_PASSWORD
        checks = []
        verify = runtime.hasher.verify
        monkeypatch.setattr(
            runtime.hasher, "verify", lambda stored, given: checks.append(given) or verify(stored, given)
        )

        assert runtime.auth.authenticate(email, password) is None
        assert checks == [password]

    def test_account_without_password_cannot_log_in(self, runtime, make_account):
        pending = make_account("pending@example.com", None)

        assert runtime.auth.authenticate(pending.email, PASSWORD) is None


class TestAutomaticLockout:
    def test_max_attempts_in_window_locks_account(self, runtime, account, settings):
        session = runtime.sessions.create(account.id)
        _fail_times(runtime, account.email, settings.lockout_max_attempts - 1)
        assert not runtime.lockouts.is_locked(account.id)

        _fail_times(runtime, account.email, 1)

        lockout = runtime.lockouts.get_active_lockout(account.id)
        assert lockout.kind == LockoutKind.TEMPORARY
        assert lockout.failed_attempts == settings.lockout_max_attempts
        assert not runtime.sessions.validate(session.token)
        assert runtime.auth.authenticate(account.email, PASSWORD) is None
        assert runtime.audit.by_event_type(AuditEventType.FAILED_LOGIN)[0].reason == "account_locked"

    def test_attempts_outside_window_do_not_count(self, runtime, account, clock, settings):
        _fail_times(runtime, account.email, settings.lockout_max_attempts - 1)
        clock.advance(minutes=settings.lockout_window_minutes + 1)

        _fail_times(runtime, account.email, 1)

        assert not runtime.lockouts.is_locked(account.id)
        assert runtime.auth.authenticate(account.email, PASSWORD) is not None

    def test_login_allowed_after_lockout_expires(self, runtime, account, clock, settings):
        _fail_times(runtime, account.email, settings.lockout_max_attempts)
        clock.advance(minutes=settings.lockout_duration_minutes + 1)

        assert runtime.auth.authenticate(account.email, PASSWORD) is not None

    def test_repeated_lockouts_escalate(self, runtime, account, clock, settings):
        kinds = []
        for _ in range(settings.lockout_permanent_threshold):
            _fail_times(runtime, account.email, settings.lockout_max_attempts)
            kinds.append(runtime.lockouts.get_active_lockout(account.id).kind)
            clock.advance(minutes=settings.lockout_duration_minutes + 1)

        assert kinds[-1] == LockoutKind.PERMANENT
        assert set(kinds[:-1]) == {LockoutKind.TEMPORARY}
        assert runtime.auth.authenticate(account.email, PASSWORD) is None

        assert runtime.lockouts.unlock(account.id, "identity verified")
        assert runtime.auth.authenticate(account.email, PASSWORD) is not None


class TestLoginLogout:
    def test_login_returns_session(self, runtime, account):
        logged_in, session = runtime.auth.login(account.email, PASSWORD, "10.0.0.1", "pytest")

        assert logged_in.id == account.id
        assert session.account_id == account.id
        assert runtime.sessions.validate(session.token)

        assert runtime.auth.logout(session.token) is True
        assert not runtime.sessions.validate(session.token)
        assert runtime.auth.logout(session.token) is False

    def test_failed_login_returns_nothing(self, runtime, account):
        assert runtime.auth.login(account.email, OTHER_PASSWORD) == (None, None)
        assert runtime.sessions.list_active(account.id) == []


class TestCreateAccount:
    def test_email_is_normalized_and_unique(self, runtime, make_account):
        created = make_account("  New@Example.com ")

        assert created.email == "new@example.com"
        with pytest.raises(StateConflictError):
            make_account("NEW@example.com")

    def test_invalid_input(self, runtime):
        with pytest.raises(ValidationError):
            runtime.auth.create_account("not-an-email", PASSWORD)
        with pytest.raises(ValidationError) as exc:
            runtime.auth.create_account("weak@example.com", "weak")
        assert exc.value.status_code == 400

    def test_creation_by_admin_is_audited_twice(self, runtime, make_account):
        admin = make_account("admin@example.com")

        created = runtime.auth.create_account("staff@example.com", created_by=admin.id)

        entries = runtime.audit.for_record("account", created.id)
        assert {e.account_id for e in entries} == {created.id, admin.id}
        assert all(e.event_type == AuditEventType.ACCOUNT_CREATED for e in entries)
