from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_token() -> str:
    """256 bits of randomness, URL-safe."""
    return secrets.token_urlsafe(32)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BLOCKED = "blocked"
    ARCHIVED = "archived"


class LockoutKind(str, Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"


class InvitationStatus(str, Enum):
    """Lifecycle of an invitation.

    PENDING -> SENT -> ACCEPTED is the happy path; EXPIRED, CANCELLED and
    ACCEPTED are terminal.
    """

    PENDING = "pending"
    SENT = "sent"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    ACCEPTED = "accepted"


class ResetTokenStatus(str, Enum):
    ISSUED = "issued"
    USED = "used"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class AuditEventType(str, Enum):
    FAILED_LOGIN = "failed_login"
    SUCCESSFUL_LOGIN = "successful_login"
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    SESSION_REJECTED = "session_rejected"
    ACCOUNT_CREATED = "account_created"
    EMAIL_VERIFIED = "email_verified"
    ACCOUNT_UPDATED = "account_updated"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    LOCKOUT_EXTENDED = "lockout_extended"
    LOCKOUT_ESCALATED = "lockout_escalated"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    PASSWORD_RESET_CANCELLED = "password_reset_cancelled"
    PASSWORD_RESET_REJECTED = "password_reset_rejected"
    INVITATION_CREATED = "invitation_created"
    INVITATION_SENT = "invitation_sent"
    INVITATION_RESENT = "invitation_resent"
    INVITATION_CANCELLED = "invitation_cancelled"
    INVITATION_ACCEPTED = "invitation_accepted"
    ROLE_ASSIGNMENT_CHANGE = "role_assignment_change"
    CONFIGURATION_UPDATE = "configuration_update"
    DATA_EXPORT = "data_export"
    OTHER = "other"


@dataclass
class Account:
    id: str
    email: str
    password_hash: Optional[str] = None
    status: AccountStatus = AccountStatus.ACTIVE
    name: Optional[str] = None
    tenant_id: str = "public"
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class Session:
    id: str
    token: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        now: datetime,
        ttl_minutes: int,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            token=new_token(),
            account_id=account_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class Lockout:
    id: int
    account_id: str
    start: datetime
    end: Optional[datetime]
    failed_attempts: int = 0
    reason: Optional[str] = None
    ip_addr: Optional[str] = None
    kind: LockoutKind = LockoutKind.TEMPORARY
    lifted_at: Optional[datetime] = None
    lifted_by: Optional[str] = None

    @property
    def is_permanent(self) -> bool:
        return self.end is None

    def is_active(self, now: datetime) -> bool:
        return self.end is None or self.end > now


@dataclass
class FailedLoginAttempt:
    id: int
    ip_addr: Optional[str]
    attempted_at: datetime
    email: Optional[str] = None
    account_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Invitation:
    id: str
    token: str
    account_id: str
    status: InvitationStatus
    expires_at: datetime
    created_at: datetime
    invited_by: Optional[str] = None
    resend_count: int = 0
    sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class PasswordResetToken:
    id: str
    token: str
    account_id: str
    status: ResetTokenStatus
    expires_at: datetime
    created_at: datetime
    used_at: Optional[datetime] = None
    resend_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class PasswordHistoryEntry:
    id: int
    account_id: str
    password_hash: str
    created_at: datetime


@dataclass
class AuditLogEntry:
    id: int
    event_type: AuditEventType
    created_at: datetime
    account_id: Optional[str] = None
    description: Optional[str] = None
    ip_addr: Optional[str] = None
    table_name: Optional[str] = None
    record_id: Optional[str] = None
    signed_by: Optional[str] = None
    reason: Optional[str] = None
    group_id: Optional[str] = None
    signature: Optional[str] = None


@dataclass
class AuditChangeEntry:
    id: int
    audit_log_id: int
    column_name: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
