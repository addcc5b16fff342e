from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from gatekeep.config import Settings
from gatekeep.service.audit import AuditTrail
from gatekeep.service.credentials import (
    PasswordHasher,
    PasswordPolicy,
    is_valid_email,
    normalize_email,
)
from gatekeep.service.email import (
    Notifier,
    password_changed_message,
    password_reset_message,
)
from gatekeep.service.errors import NotFoundError, ValidationError
from gatekeep.service.sessions import SessionManager
from gatekeep.service.tokens import TokenIssuer
from gatekeep.storage.models import (
    Account,
    AuditEventType,
    PasswordHistoryEntry,
    PasswordResetToken,
    ResetTokenStatus,
)
from gatekeep.storage.repository import Store


class PasswordResetService(TokenIssuer[PasswordResetToken]):
    """Forgot-password flow built on single-use reset tokens.

    Tokens are consumable as soon as they are issued. A successful reset
    consumes only the presented token, rotates the password hash into the
    history table and signs the account out everywhere.
    """

    table = "password_reset_token"
    consumable_status = ResetTokenStatus.ISSUED
    live_statuses = (ResetTokenStatus.ISSUED,)
    expired_status = ResetTokenStatus.EXPIRED

    def __init__(
        self,
        store: Store,
        settings: Settings,
        audit: AuditTrail,
        notifier: Notifier,
        sessions: SessionManager,
        hasher: PasswordHasher,
        policy: PasswordPolicy,
        *,
        base_url: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(store, settings, audit, notifier, clock=clock)
        self.sessions = sessions
        self.hasher = hasher
        self.policy = policy
        self.base_url = (base_url or settings.app_base_url).rstrip("/")

    @property
    def repo(self):
        return self.store.reset_tokens

    def _expiry(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.settings.password_reset_ttl_minutes)

    def _email_token(self, account: Account, record: PasswordResetToken) -> bool:
        return self._deliver(
            account.email,
            password_reset_message(
                self.base_url, record.token, self.settings.password_reset_ttl_minutes
            ),
        )

    def issue(self, account_id: str, ip: Optional[str] = None) -> PasswordResetToken:
        if self.store.accounts.get(account_id) is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        now = self._clock()
        record = self.repo.add(
            PasswordResetToken(
                id=str(uuid.uuid4()),
                token=self.generate(),
                account_id=account_id,
                status=ResetTokenStatus.ISSUED,
                expires_at=self._expiry(now),
                created_at=now,
            )
        )
        self.audit.append(
            AuditEventType.PASSWORD_RESET_REQUESTED,
            account_id=account_id,
            description="password reset requested",
            ip=ip,
            table_name=self.table,
            record_id=record.id,
            signed_by=account_id,
        )
        self.logger.info("password_reset_issued", account_id=account_id, reset_id=record.id)
        return record

    def request_reset(self, email: str, ip: Optional[str] = None) -> bool:
        """Start a reset for ``email``.

        Answers True whether or not the address belongs to an account, so the
        response cannot be used to discover registered addresses.
        """
        if not is_valid_email(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        account = self.store.accounts.get_by_email(normalize_email(email))
        if not account or not account.is_active:
            self.logger.info(
                "password_reset_skipped",
                reason="unknown_account" if not account else "inactive_account",
            )
            return True
        record = self.issue(account.id, ip)
        self._email_token(account, record)
        return True

    def validate(self, token: Optional[str]) -> bool:
        return self._usable(self._lookup(token)) is not None

    def _recently_used(self, account: Account, password: str) -> bool:
        depth = self.settings.password_history_count
        if depth <= 0:
            return False
        previous: List[Optional[str]] = [account.password_hash]
        previous.extend(
            entry.password_hash for entry in self.store.password_history.recent(account.id, depth)
        )
        return any(self.hasher.verify(stored, password) for stored in previous if stored)

    def _reject(
        self,
        reason: str,
        ip: Optional[str],
        record: Optional[PasswordResetToken] = None,
        *,
        account_id: Optional[str] = None,
    ) -> None:
        self.audit.append(
            AuditEventType.PASSWORD_RESET_REJECTED,
            account_id=account_id,
            description="password reset rejected",
            ip=ip,
            table_name=self.table,
            record_id=record.id if record else None,
            reason=reason,
        )
        self.logger.info(
            "password_reset_rejected",
            reason=reason,
            reset_id=record.id if record else None,
        )

    def reset_password(
        self, token: Optional[str], new_password: str, ip: Optional[str] = None
    ) -> bool:
        """Set a new password with a reset token.

        Every refusal is audited as PASSWORD_RESET_REJECTED with the true
        reason; the caller only sees False (or a ``ValidationError`` for a
        password it has to change).
        """
        self.policy.check(new_password)
        found = self._lookup(token)
        if not found:
            self._reject("token_unknown", ip)
            return False
        record = self._usable(found)
        if not record:
            self._reject("token_unusable", ip, found, account_id=found.account_id)
            return False
        account = self.store.accounts.get(record.account_id)
        if not account:
            self._reject("account_missing", ip, record)
            return False
        if self._recently_used(account, new_password):
            self._reject("password_reused", ip, record, account_id=account.id)
            raise ValidationError(
                "password was used recently",
                detail={"history_count": self.settings.password_history_count},
            )

        now = self._clock()
        consumed = self._consume(record, ResetTokenStatus.USED, used_at=now)
        if not consumed:
            self._reject("token_unusable", ip, record, account_id=account.id)
            return False

        self.store.accounts.update(account.id, now, password_hash=self.hasher.hash(new_password))
        if account.password_hash:
            self.store.password_history.add(
                PasswordHistoryEntry(
                    id=0,
                    account_id=account.id,
                    password_hash=account.password_hash,
                    created_at=now,
                )
            )
        ended = self.sessions.end_all(account.id, "password_reset")
        self.audit.append(
            AuditEventType.PASSWORD_RESET_COMPLETED,
            account_id=account.id,
            description=f"password reset completed, {ended} sessions ended",
            ip=ip,
            table_name=self.table,
            record_id=consumed.id,
            signed_by=account.id,
        )
        self._deliver(account.email, password_changed_message())
        self.logger.info("password_reset_completed", account_id=account.id, sessions_ended=ended)
        return True

    def cancel(self, token: Optional[str], ip: Optional[str] = None) -> bool:
        record = self._lookup(token)
        if not record:
            return False
        cancelled = self.repo.transition(
            record.id, (ResetTokenStatus.ISSUED,), ResetTokenStatus.CANCELLED
        )
        if not cancelled:
            return False
        self.audit.append(
            AuditEventType.PASSWORD_RESET_CANCELLED,
            account_id=cancelled.account_id,
            description="password reset cancelled",
            ip=ip,
            table_name=self.table,
            record_id=cancelled.id,
        )
        return True

    def resend(self, token: Optional[str], ip: Optional[str] = None) -> bool:
        """Re-email a live token and restart its validity window."""
        record = self._usable(self._lookup(token))
        if not record:
            return False
        account = self.store.accounts.get(record.account_id)
        if not account:
            return False
        refreshed = self.repo.transition(
            record.id,
            (ResetTokenStatus.ISSUED,),
            ResetTokenStatus.ISSUED,
            unexpired_at=self._clock(),
            resend_count=record.resend_count + 1,
            expires_at=self._expiry(self._clock()),
        )
        if not refreshed:
            return False
        delivered = self._email_token(account, refreshed)
        self.logger.info(
            "password_reset_resent",
            reset_id=refreshed.id,
            resend_count=refreshed.resend_count,
            delivered=delivered,
        )
        return True
