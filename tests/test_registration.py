"""Unit tests for self-registration.

Tests for:
- Registration switched on and off
- Suspended accounts with a verification invitation
- Email verification activating the account exactly once
"""

from datetime import timedelta

import pytest

from gatekeep.config import Settings
from gatekeep.service.errors import PermissionDeniedError, StateConflictError, ValidationError
from gatekeep.service.runtime import Runtime
from gatekeep.storage.models import AccountStatus, AuditEventType, InvitationStatus

from conftest import PASSWORD


@pytest.fixture
def settings():
    return Settings(use_memory_store=True, self_registration_allowed=True)


@pytest.fixture
def build_runtime(store, notifier, hasher, clock):
    def _build(**overrides):
        settings = Settings(use_memory_store=True, **overrides)
        return Runtime(settings, store=store, notifier=notifier, hasher=hasher, clock=clock)

    return _build


@pytest.fixture
def registered(runtime):
    return runtime.registration.register(
        " New@Example.com", PASSWORD, name=" Ada ", ip="10.0.0.1"
    )


class TestRegister:
    def test_account_waits_for_verification(self, runtime, registered, notifier, clock, settings):
        assert registered.email == "new@example.com"
        assert registered.name == "Ada"
        assert registered.status == AccountStatus.SUSPENDED

        [invitation] = runtime.invitations.list_for_account(registered.id)
        assert invitation.status == InvitationStatus.SENT
        assert invitation.expires_at == clock.now + timedelta(hours=settings.email_verification_ttl_hours)
        assert notifier.sent[-1]["subject"] == "Confirm your email address"
        assert "/email/verify?token=" in notifier.sent[-1]["body"]
        assert notifier.last_token() == invitation.token
        assert runtime.auth.authenticate(registered.email, PASSWORD) is None

    def test_disabled_by_default(self, build_runtime):
        runtime = build_runtime()

        with pytest.raises(PermissionDeniedError) as exc:
            runtime.registration.register("new@example.com", PASSWORD, name="Ada")
        assert exc.value.status_code == 403
        assert not runtime.registration.is_email_in_use("new@example.com")

    def test_without_verification_account_is_active(self, build_runtime, notifier):
        runtime = build_runtime(self_registration_allowed=True, email_verification_required=False)

        account = runtime.registration.register("new@example.com", PASSWORD, name="Ada")

        assert account.status == AccountStatus.ACTIVE
        assert runtime.invitations.list_for_account(account.id) == []
        assert notifier.sent == []
        assert runtime.auth.authenticate("new@example.com", PASSWORD).id == account.id

    def test_email_in_use(self, runtime, registered):
        assert runtime.registration.is_email_in_use("NEW@example.com")
        assert not runtime.registration.is_email_in_use("other@example.com")
        assert not runtime.registration.is_email_in_use(None)

        with pytest.raises(StateConflictError):
            runtime.registration.register("new@example.com", PASSWORD, name="Bob")

    @pytest.mark.parametrize(
        "email,password,name",
        [
            ("new@example.com", PASSWORD, "  "),
            ("new@example.com", "", "Ada"),
            ("new@example.com", "weak", "Ada"),
            ("not-an-email", PASSWORD, "Ada"),
        ],
    )
    def test_invalid_input_creates_nothing(self, runtime, notifier, email, password, name):
        with pytest.raises(ValidationError):
            runtime.registration.register(email, password, name=name)

        assert not runtime.registration.is_email_in_use(email)
        assert notifier.sent == []


class TestVerifyEmail:
    def test_verification_activates_account(self, runtime, registered, notifier):
        token = notifier.last_token()

        assert runtime.registration.verify_email(token, "10.0.0.1") is True

        assert runtime.store.accounts.get(registered.id).status == AccountStatus.ACTIVE
        assert notifier.sent[-1]["subject"] == "Welcome aboard"
        account, session = runtime.auth.login(registered.email, PASSWORD, "10.0.0.1", "ua")
        assert account.id == registered.id
        assert session is not None

        entry = runtime.audit.by_event_type(AuditEventType.EMAIL_VERIFIED)[0]
        changes = {c.column_name: (c.old_value, c.new_value) for c in runtime.audit.changes_for(entry.id)}
        assert changes == {"status": ("suspended", "active")}

    def test_token_works_once(self, runtime, registered, notifier):
        token = notifier.last_token()

        assert runtime.registration.verify_email(token) is True
        assert runtime.registration.verify_email(token) is False
        assert len(runtime.audit.by_event_type(AuditEventType.EMAIL_VERIFIED)) == 1

    def test_expired_verification(self, runtime, registered, notifier, clock, settings):
        token = notifier.last_token()
        clock.advance(hours=settings.email_verification_ttl_hours)

        assert runtime.registration.verify_email(token) is False
        assert runtime.invitations.get_by_token(token).status == InvitationStatus.EXPIRED
        assert runtime.store.accounts.get(registered.id).status == AccountStatus.SUSPENDED

    def test_unknown_token(self, runtime):
        assert runtime.registration.verify_email("bogus") is False
        assert runtime.registration.verify_email(None) is False

    def test_blocked_account_stays_blocked(self, runtime, registered, notifier):
        runtime.store.accounts.update(registered.id, registered.created_at, status=AccountStatus.BLOCKED)

        assert runtime.registration.verify_email(notifier.last_token()) is True
        assert runtime.store.accounts.get(registered.id).status == AccountStatus.BLOCKED
        assert notifier.sent[-1]["subject"] == "Confirm your email address"

    def test_invited_account_must_accept_instead(self, runtime, make_account):
        invitee = make_account("invitee@example.com", None, status=AccountStatus.SUSPENDED)
        sent = runtime.invitations.send(runtime.invitations.issue(invitee.id).id)

        assert runtime.registration.verify_email(sent.token) is False
        assert runtime.invitations.get(sent.id).status == InvitationStatus.SENT

    def test_resend_repeats_verification_email(self, runtime, registered, notifier):
        [invitation] = runtime.invitations.list_for_account(registered.id)

        runtime.invitations.resend(invitation.id)

        assert len(notifier.sent) == 2
        assert notifier.sent[-1]["subject"] == "Confirm your email address"
        assert notifier.last_token() == invitation.token
