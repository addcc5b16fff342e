from __future__ import annotations

from enum import Enum
from typing import Any, Collection, Dict, Generic, Mapping, Type, TypeVar

from gatekeep.storage.models import (
    AccountStatus,
    AuditEventType,
    InvitationStatus,
    LockoutKind,
    ResetTokenStatus,
)

E = TypeVar("E", bound=Enum)

# Columns callers may change through update/transition, per table
ACCOUNT_COLUMNS = frozenset({"email", "password_hash", "status", "name", "tenant_id"})
INVITATION_COLUMNS = frozenset({"expires_at", "resend_count", "sent_at", "accepted_at"})
RESET_TOKEN_COLUMNS = frozenset({"expires_at", "used_at", "resend_count"})


def check_columns(changes: Mapping[str, Any], allowed: Collection[str]) -> None:
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValueError(f"unsupported columns: {sorted(unknown)}")


class EnumMapping(Generic[E]):
    """Explicit two-way mapping between an enum and its database label.

    The mapping is checked when it is built: every member must have exactly
    one label and no two members may share one, so a schema/enum drift fails
    at import rather than on the first unlucky row.
    """

    def __init__(self, enum_cls: Type[E], labels: Mapping[E, str]):
        missing = [member.name for member in enum_cls if member not in labels]
        if missing:
            raise ValueError(f"{enum_cls.__name__} has no database label for {missing}")
        reverse: Dict[str, E] = {}
        for member, label in labels.items():
            if label in reverse:
                raise ValueError(
                    f"{enum_cls.__name__} label {label!r} is used by "
                    f"{reverse[label].name} and {member.name}"
                )
            reverse[label] = member
        self.enum_cls = enum_cls
        self._to_db: Dict[E, str] = dict(labels)
        self._from_db = reverse

    def to_db(self, member: E) -> str:
        return self._to_db[self.enum_cls(member)]

    def from_db(self, label: str) -> E:
        try:
            return self._from_db[label]
        except KeyError:
            # rows written by older tooling may use a different case
            upper = label.upper() if isinstance(label, str) else label
            if upper in self._from_db:
                return self._from_db[upper]
            raise ValueError(
                f"unknown {self.enum_cls.__name__} label {label!r}"
            ) from None

    def labels(self) -> list[str]:
        return list(self._to_db.values())


def _by_name(enum_cls: Type[E]) -> EnumMapping[E]:
    return EnumMapping(enum_cls, {member: member.name for member in enum_cls})


ACCOUNT_STATUS = _by_name(AccountStatus)
LOCKOUT_KIND = _by_name(LockoutKind)
INVITATION_STATUS = _by_name(InvitationStatus)
RESET_TOKEN_STATUS = _by_name(ResetTokenStatus)
AUDIT_EVENT_TYPE = _by_name(AuditEventType)


__all__ = [
    "EnumMapping",
    "check_columns",
    "ACCOUNT_COLUMNS",
    "INVITATION_COLUMNS",
    "RESET_TOKEN_COLUMNS",
    "ACCOUNT_STATUS",
    "LOCKOUT_KIND",
    "INVITATION_STATUS",
    "RESET_TOKEN_STATUS",
    "AUDIT_EVENT_TYPE",
]
