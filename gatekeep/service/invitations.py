from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional

from gatekeep.config import Settings
from gatekeep.service.audit import AuditTrail
from gatekeep.service.credentials import PasswordHasher, PasswordPolicy
from gatekeep.service.email import (
    Notifier,
    invitation_message,
    verification_message,
    welcome_message,
)
from gatekeep.service.errors import NotFoundError, StateConflictError, ValidationError
from gatekeep.service.tokens import TokenIssuer
from gatekeep.storage.models import (
    Account,
    AccountStatus,
    AuditEventType,
    Invitation,
    InvitationStatus,
)
from gatekeep.storage.repository import Store

ACCEPT_DETAIL_FIELDS = {"name"}


class InvitationService(TokenIssuer[Invitation]):
    """Invitations that let a provisioned account set its password.

    PENDING (issued) -> SENT (emailed) -> ACCEPTED. Admin-facing operations
    (``send``, ``resend``, ``cancel``) raise on unknown ids or wrong states;
    the recipient-facing ``validate`` and ``accept`` answer ``None``.
    """

    table = "invitation"
    consumable_status = InvitationStatus.SENT
    live_statuses = (InvitationStatus.PENDING, InvitationStatus.SENT)
    expired_status = InvitationStatus.EXPIRED

    def __init__(
        self,
        store: Store,
        settings: Settings,
        audit: AuditTrail,
        notifier: Notifier,
        hasher: PasswordHasher,
        policy: PasswordPolicy,
        *,
        base_url: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(store, settings, audit, notifier, clock=clock)
        self.hasher = hasher
        self.policy = policy
        self.base_url = (base_url or settings.app_base_url).rstrip("/")

    @property
    def repo(self):
        return self.store.invitations

    def _expiry(self, now: datetime) -> datetime:
        return now + timedelta(days=self.settings.invitation_ttl_days)

    def _require(self, invitation_id: str) -> Invitation:
        invitation = self.repo.get(invitation_id)
        if not invitation:
            raise NotFoundError("invitation not found", detail={"invitation_id": invitation_id})
        return invitation

    def _conflict(self, invitation: Invitation, action: str) -> StateConflictError:
        return StateConflictError(
            f"cannot {action} an invitation that is {invitation.status.value}",
            detail={"invitation_id": invitation.id, "status": invitation.status.value},
        )

    def _inviter_label(self, invited_by: Optional[str]) -> Optional[str]:
        if not invited_by:
            return None
        inviter = self.store.accounts.get(invited_by)
        if not inviter:
            return None
        return inviter.name or inviter.email

    def _email(self, invitation: Invitation) -> bool:
        account = self.store.accounts.get(invitation.account_id)
        if not account:
            self.logger.warning("invitation_account_missing", invitation_id=invitation.id)
            return False
        if account.password_hash:
            # the account chose its own password; it only has to confirm the address
            return self._deliver(
                account.email,
                verification_message(
                    self.base_url, invitation.token, self.settings.email_verification_ttl_hours
                ),
            )
        return self._deliver(
            account.email,
            invitation_message(
                self.base_url, invitation.token, self._inviter_label(invitation.invited_by)
            ),
        )

    # admin side
    def issue(
        self, account_id: str, invited_by: Optional[str] = None, ip: Optional[str] = None
    ) -> Invitation:
        if self.store.accounts.get(account_id) is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        now = self._clock()
        invitation = self.repo.add(
            Invitation(
                id=str(uuid.uuid4()),
                token=self.generate(),
                account_id=account_id,
                status=InvitationStatus.PENDING,
                expires_at=self._expiry(now),
                created_at=now,
                invited_by=invited_by,
            )
        )
        self.audit.record_transition(
            AuditEventType.INVITATION_CREATED,
            account_id=account_id,
            actor_id=invited_by,
            description="invitation created",
            ip=ip,
            table_name=self.table,
            record_id=invitation.id,
        )
        self.logger.info("invitation_issued", invitation_id=invitation.id, account_id=account_id)
        return invitation

    def send(
        self, invitation_id: str, ip: Optional[str] = None, *, actor_id: Optional[str] = None
    ) -> Invitation:
        invitation = self._require(invitation_id)
        if self._expire_if_due(invitation) or invitation.status != InvitationStatus.PENDING:
            raise self._conflict(self._require(invitation_id), "send")
        if not self._email(invitation):
            self.logger.warning("invitation_left_pending", invitation_id=invitation_id)
            return invitation
        sent = self.repo.transition(
            invitation_id,
            (InvitationStatus.PENDING,),
            InvitationStatus.SENT,
            sent_at=self._clock(),
        )
        if not sent:
            raise self._conflict(self._require(invitation_id), "send")
        self.audit.record_transition(
            AuditEventType.INVITATION_SENT,
            account_id=sent.account_id,
            actor_id=actor_id,
            description="invitation sent",
            ip=ip,
            table_name=self.table,
            record_id=sent.id,
        )
        self.logger.info("invitation_sent", invitation_id=invitation_id)
        return sent

    def resend(
        self, invitation_id: str, ip: Optional[str] = None, *, actor_id: Optional[str] = None
    ) -> Invitation:
        invitation = self._require(invitation_id)
        if self._expire_if_due(invitation) or invitation.status != InvitationStatus.SENT:
            raise self._conflict(self._require(invitation_id), "resend")
        now = self._clock()
        refreshed = self.repo.transition(
            invitation_id,
            (InvitationStatus.SENT,),
            InvitationStatus.SENT,
            unexpired_at=now,
            resend_count=invitation.resend_count + 1,
            sent_at=now,
            expires_at=self._expiry(now),
        )
        if not refreshed:
            raise self._conflict(self._require(invitation_id), "resend")
        delivered = self._email(refreshed)
        self.audit.record_transition(
            AuditEventType.INVITATION_RESENT,
            account_id=refreshed.account_id,
            actor_id=actor_id,
            description=f"invitation resent ({refreshed.resend_count})",
            ip=ip,
            table_name=self.table,
            record_id=refreshed.id,
        )
        self.logger.info(
            "invitation_resent",
            invitation_id=invitation_id,
            resend_count=refreshed.resend_count,
            delivered=delivered,
        )
        return refreshed

    def cancel(
        self,
        invitation_id: str,
        ip: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Invitation:
        cancelled = self.repo.transition(
            invitation_id, self.live_statuses, InvitationStatus.CANCELLED
        )
        if not cancelled:
            raise self._conflict(self._require(invitation_id), "cancel")
        self.audit.record_transition(
            AuditEventType.INVITATION_CANCELLED,
            account_id=cancelled.account_id,
            actor_id=actor_id,
            description="invitation cancelled",
            ip=ip,
            table_name=self.table,
            record_id=cancelled.id,
            reason=reason,
        )
        self.logger.info("invitation_cancelled", invitation_id=invitation_id)
        return cancelled

    def issue_verification(self, account_id: str, ip: Optional[str] = None) -> Invitation:
        """Create an already-SENT invitation that confirms a self-registered address."""
        if self.store.accounts.get(account_id) is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        now = self._clock()
        invitation = self.repo.add(
            Invitation(
                id=str(uuid.uuid4()),
                token=self.generate(),
                account_id=account_id,
                status=InvitationStatus.SENT,
                expires_at=now + timedelta(hours=self.settings.email_verification_ttl_hours),
                created_at=now,
                sent_at=now,
            )
        )
        delivered = self._email(invitation)
        self.audit.append(
            AuditEventType.INVITATION_SENT,
            account_id=account_id,
            description="email verification sent",
            ip=ip,
            table_name=self.table,
            record_id=invitation.id,
            signed_by=account_id,
        )
        self.logger.info(
            "email_verification_issued",
            invitation_id=invitation.id,
            account_id=account_id,
            delivered=delivered,
        )
        return invitation

    def cleanup_expired(self) -> int:
        expired = self.repo.expire_overdue(self._clock())
        self.logger.info("invitations_expired", count=expired)
        return expired

    # recipient side
    def validate(self, token: Optional[str]) -> Optional[Invitation]:
        return self._usable(self._lookup(token))

    def _check_accept_input(
        self,
        password: Optional[str],
        confirm_password: Optional[str],
        details: Optional[Mapping[str, Any]],
    ) -> None:
        unknown = set(details or {}) - ACCEPT_DETAIL_FIELDS
        if unknown:
            raise ValidationError("unsupported account details", detail={"fields": sorted(unknown)})
        if password is None:
            return
        if confirm_password is not None and confirm_password != password:
            raise ValidationError("passwords do not match", detail={"failed": ["confirm"]})
        self.policy.check(password)

    def accept(
        self,
        token: Optional[str],
        ip: Optional[str] = None,
        *,
        password: Optional[str] = None,
        confirm_password: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Account]:
        self._check_accept_input(password, confirm_password, details)
        invitation = self.validate(token)
        if not invitation:
            self.logger.info("invitation_accept_rejected", reason="not_acceptable")
            return None
        account = self.store.accounts.get(invitation.account_id)
        if not account:
            self.logger.warning("invitation_account_missing", invitation_id=invitation.id)
            return None
        now = self._clock()
        accepted = self._consume(invitation, InvitationStatus.ACCEPTED, accepted_at=now)
        if not accepted:
            self.logger.info("invitation_accept_rejected", reason="lost_race", invitation_id=invitation.id)
            return None

        changes: dict[str, Any] = {"status": AccountStatus.ACTIVE}
        if password is not None:
            changes["password_hash"] = self.hasher.hash(password)
        if details and details.get("name"):
            changes["name"] = details["name"]
        updated = self.store.accounts.update(account.id, now, **changes)

        entry = self.audit.append(
            AuditEventType.INVITATION_ACCEPTED,
            account_id=account.id,
            description="invitation accepted and account activated",
            ip=ip,
            table_name=self.table,
            record_id=accepted.id,
            signed_by=account.id,
        )
        if entry:
            before = {"status": account.status, "name": account.name}
            after = {"status": updated.status, "name": updated.name}
            if password is not None:
                # never put hashes in the change log
                before["password"] = "set" if account.password_hash else None
                after["password"] = "changed"
            self.audit.record_changes(entry.id, before, after)
        self._deliver(updated.email, welcome_message(updated.name))
        self.logger.info("invitation_accepted", invitation_id=accepted.id, account_id=account.id)
        return updated

    def verify_email(self, token: Optional[str], ip: Optional[str] = None) -> Optional[Account]:
        """Confirm a self-registered address and activate the suspended account.

        Only accounts that already hold a password can be verified this way;
        an invited account without one has to go through :meth:`accept`.
        Other account states (BLOCKED) are left as they are.
        """
        invitation = self.validate(token)
        if not invitation:
            self.logger.info("email_verification_rejected", reason="not_acceptable")
            return None
        account = self.store.accounts.get(invitation.account_id)
        if not account:
            self.logger.warning("invitation_account_missing", invitation_id=invitation.id)
            return None
        if not account.password_hash:
            self.logger.info(
                "email_verification_rejected", reason="password_not_set", invitation_id=invitation.id
            )
            return None
        now = self._clock()
        accepted = self._consume(invitation, InvitationStatus.ACCEPTED, accepted_at=now)
        if not accepted:
            self.logger.info(
                "email_verification_rejected", reason="lost_race", invitation_id=invitation.id
            )
            return None

        updated = account
        if account.status == AccountStatus.SUSPENDED:
            updated = self.store.accounts.update(account.id, now, status=AccountStatus.ACTIVE)
        entry = self.audit.append(
            AuditEventType.EMAIL_VERIFIED,
            account_id=account.id,
            description="email address verified",
            ip=ip,
            table_name=self.table,
            record_id=accepted.id,
            signed_by=account.id,
        )
        if entry:
            self.audit.record_changes(
                entry.id, {"status": account.status}, {"status": updated.status}
            )
        if updated.is_active:
            self._deliver(updated.email, welcome_message(updated.name))
        self.logger.info("email_verified", invitation_id=accepted.id, account_id=account.id)
        return updated

    # queries
    def get(self, invitation_id: str) -> Optional[Invitation]:
        return self.repo.get(invitation_id)

    def get_by_token(self, token: str) -> Optional[Invitation]:
        return self._lookup(token)

    def list_for_account(self, account_id: str) -> List[Invitation]:
        return self.repo.list_for_account(account_id)

    def list_by_status(self, status: InvitationStatus) -> List[Invitation]:
        return self.repo.list_by_status(status)
