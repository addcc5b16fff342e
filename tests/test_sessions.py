"""Unit tests for the session manager."""

from datetime import timedelta

import pytest

from gatekeep.service.errors import NotFoundError
from gatekeep.storage.models import AccountStatus, AuditEventType, LockoutKind


class TestCreate:
    def test_session_has_random_token_and_ttl(self, runtime, account, clock, settings):
        session = runtime.sessions.create(account.id, "10.0.0.1", "pytest")

        assert len(session.token) >= 43
        assert session.expires_at == clock.now + timedelta(minutes=settings.session_ttl_minutes)
        assert session.ip_addr == "10.0.0.1"
        assert session.user_agent == "pytest"
        other = runtime.sessions.create(account.id)
        assert other.token != session.token

    def test_creation_is_audited(self, runtime, account):
        session = runtime.sessions.create(account.id, "10.0.0.1")

        entries = runtime.audit.for_record("auth_session", session.id)
        assert [e.event_type for e in entries] == [AuditEventType.SESSION_STARTED]

    def test_unknown_account(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.sessions.create("missing")


class TestValidate:
    def test_live_session_is_valid(self, runtime, account):
        session = runtime.sessions.create(account.id)

        assert runtime.sessions.validate(session.token)
        assert runtime.sessions.resolve(session.token).id == session.id

    def test_expired_session(self, runtime, account, clock, settings):
        session = runtime.sessions.create(account.id)
        clock.advance(minutes=settings.session_ttl_minutes)

        assert not runtime.sessions.validate(session.token)

    def test_missing_or_unknown_token(self, runtime):
        assert runtime.sessions.resolve(None) is None
        assert runtime.sessions.resolve("") is None
        assert not runtime.sessions.validate("not-a-token")

    def test_inactive_account_rejected_and_audited(self, runtime, store, account, clock):
        session = runtime.sessions.create(account.id)
        store.accounts.update(account.id, clock.now, status=AccountStatus.SUSPENDED)

        assert runtime.sessions.resolve(session.token) is None
        rejected = runtime.audit.by_event_type(AuditEventType.SESSION_REJECTED)
        assert len(rejected) == 1
        assert rejected[0].reason == "account_suspended"

    def test_locked_account_rejected(self, runtime, store, account, clock):
        session = runtime.sessions.create(account.id)
        # a lockout written straight to the store, with the session left open
        store.lockouts.create_unless_active(
            account.id,
            clock.now,
            lambda history: (LockoutKind.TEMPORARY, clock.now + timedelta(minutes=5)),
            failed_attempts=5,
            reason=None,
            ip_addr=None,
        )

        assert not runtime.sessions.validate(session.token)
        assert runtime.audit.by_event_type(AuditEventType.SESSION_REJECTED)[0].reason == "account_locked"

        clock.advance(minutes=6)
        assert runtime.sessions.validate(session.token)


class TestEnd:
    def test_end_once(self, runtime, account, clock):
        session = runtime.sessions.create(account.id)

        assert runtime.sessions.end(session.token, "logout") is True
        assert runtime.sessions.end(session.token, "logout") is False
        assert not runtime.sessions.validate(session.token)
        ended = runtime.audit.by_event_type(AuditEventType.SESSION_ENDED)
        assert len(ended) == 1
        assert ended[0].reason == "logout"

    def test_end_unknown_token(self, runtime):
        assert runtime.sessions.end("missing") is False
        assert runtime.sessions.end(None) is False

    def test_end_all_only_touches_live_sessions(self, runtime, account, make_account, clock):
        other = make_account("other@example.com")
        runtime.sessions.create(account.id)
        runtime.sessions.create(account.id)
        expired = runtime.sessions.create(account.id)
        runtime.sessions.end(expired.token)
        untouched = runtime.sessions.create(other.id)

        assert runtime.sessions.end_all(account.id, "admin_action") == 2
        assert runtime.sessions.end_all(account.id, "admin_action") == 0
        assert runtime.sessions.list_active(account.id) == []
        assert runtime.sessions.validate(untouched.token)

    def test_list_active(self, runtime, account, clock):
        first = runtime.sessions.create(account.id)
        clock.advance(minutes=1)
        second = runtime.sessions.create(account.id)

        assert [s.id for s in runtime.sessions.list_active(account.id)] == [first.id, second.id]
