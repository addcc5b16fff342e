from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditTrail
from gatekeep.service.credentials import (
    PasswordHasher,
    PasswordPolicy,
    is_valid_email,
    normalize_email,
)
from gatekeep.service.errors import StateConflictError, ValidationError
from gatekeep.service.failed_logins import FailedLoginTracker
from gatekeep.service.lockout import LockoutManager
from gatekeep.service.sessions import SessionManager
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Account, AccountStatus, AuditEventType, Session
from gatekeep.storage.repository import Store

ACCOUNT_TABLE = "account"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Entry point for logins.

    Every call to :meth:`authenticate` leaves exactly one trace: a failed
    attempt (plus a FAILED_LOGIN audit entry) or a SUCCESSFUL_LOGIN audit
    entry. Callers only ever see ``None`` on failure, never the reason.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        audit: AuditTrail,
        tracker: FailedLoginTracker,
        lockouts: LockoutManager,
        sessions: SessionManager,
        hasher: PasswordHasher,
        policy: PasswordPolicy,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.tracker = tracker
        self.lockouts = lockouts
        self.sessions = sessions
        self.hasher = hasher
        self.policy = policy
        self.logger = get_logger(__name__)
        self._clock = clock or _utcnow
        self._decoy_hash: Optional[str] = None

    def _spend_hash_time(self, password: str) -> None:
        # refusals before the password check cost as much as a wrong password
        if self._decoy_hash is None:
            self._decoy_hash = self.hasher.hash(uuid.uuid4().hex)
        self.hasher.verify(self._decoy_hash, password)

    def _fail(
        self,
        email: str,
        ip: Optional[str],
        reason: str,
        metadata: Optional[Dict[str, Any]],
        account: Optional[Account] = None,
    ) -> None:
        self.tracker.record(email or None, ip, reason, metadata, account=account)
        self.audit.append(
            AuditEventType.FAILED_LOGIN,
            account_id=account.id if account else None,
            description="login failed",
            ip=ip,
            table_name=ACCOUNT_TABLE if account else None,
            record_id=account.id if account else None,
            reason=reason,
        )
        self.logger.info(
            "login_failed",
            reason=reason,
            account_id=account.id if account else None,
            ip=ip,
        )

    def authenticate(
        self,
        email: Optional[str],
        password: Optional[str],
        ip: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Account]:
        normalized = normalize_email(email)
        if not normalized or not password:
            self._fail(normalized, ip, "missing_credentials", metadata)
            return None

        account = self.store.accounts.get_by_email(normalized)
        if not account:
            self._spend_hash_time(password)
            self._fail(normalized, ip, "unknown_account", metadata)
            return None
        if self.lockouts.is_locked(account.id):
            self._spend_hash_time(password)
            self._fail(normalized, ip, "account_locked", metadata, account)
            return None
        if not account.is_active:
            self._spend_hash_time(password)
            self._fail(normalized, ip, f"account_{account.status.value}", metadata, account)
            return None

        if not self.hasher.verify(account.password_hash, password):
            self._fail(normalized, ip, "invalid_password", metadata, account)
            recent = self.tracker.count_by_email(normalized, self.settings.lockout_window_minutes)
            if recent >= self.settings.lockout_max_attempts:
                self.lockouts.lock(
                    account.id,
                    recent,
                    f"{recent} failed login attempts within "
                    f"{self.settings.lockout_window_minutes} minutes",
                    ip,
                )
            return None

        self.audit.append(
            AuditEventType.SUCCESSFUL_LOGIN,
            account_id=account.id,
            description="login succeeded",
            ip=ip,
            table_name=ACCOUNT_TABLE,
            record_id=account.id,
            signed_by=account.id,
        )
        self.logger.info("login_succeeded", account_id=account.id, ip=ip)
        return account

    def login(
        self,
        email: Optional[str],
        password: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[Account], Optional[Session]]:
        account = self.authenticate(email, password, ip, metadata)
        if not account:
            return None, None
        session = self.sessions.create(account.id, ip, user_agent)
        return account, session

    def logout(self, token: Optional[str]) -> bool:
        return self.sessions.end(token, "logout")

    def create_account(
        self,
        email: str,
        password: Optional[str] = None,
        *,
        status: AccountStatus = AccountStatus.ACTIVE,
        name: Optional[str] = None,
        tenant_id: Optional[str] = None,
        created_by: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Account:
        if not is_valid_email(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        if password is not None:
            self.policy.check(password)
        now = self._clock()
        try:
            account = self.store.accounts.add(
                Account(
                    id=str(uuid.uuid4()),
                    email=normalize_email(email),
                    password_hash=self.hasher.hash(password) if password is not None else None,
                    status=AccountStatus(status),
                    name=name,
                    tenant_id=tenant_id or self.settings.default_tenant_id,
                    created_at=now,
                )
            )
        except ConstraintViolation as exc:
            self.logger.info("account_create_conflict", detail=exc.detail)
            raise StateConflictError("email already registered", detail={"field": "email"}) from exc
        self.audit.record_transition(
            AuditEventType.ACCOUNT_CREATED,
            account_id=account.id,
            actor_id=created_by,
            description=f"account created with status {account.status.value}",
            ip=ip,
            table_name=ACCOUNT_TABLE,
            record_id=account.id,
        )
        self.logger.info("account_created", account_id=account.id, status=account.status.value)
        return account
