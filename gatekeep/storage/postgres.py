from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime
from typing import Any, Collection, Dict, Generic, Iterator, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatekeep.logging import get_logger
from gatekeep.storage.common import (
    ACCOUNT_COLUMNS,
    ACCOUNT_STATUS,
    AUDIT_EVENT_TYPE,
    INVITATION_COLUMNS,
    INVITATION_STATUS,
    LOCKOUT_KIND,
    RESET_TOKEN_COLUMNS,
    RESET_TOKEN_STATUS,
    EnumMapping,
    check_columns,
)
from gatekeep.storage.errors import ConstraintViolation, PersistenceError
from gatekeep.storage.models import (
    Account,
    AuditChangeEntry,
    AuditEventType,
    AuditLogEntry,
    FailedLoginAttempt,
    Invitation,
    InvitationStatus,
    Lockout,
    LockoutKind,
    PasswordHistoryEntry,
    PasswordResetToken,
    Session,
)
from gatekeep.storage.repository import LockoutPlan

T = TypeVar("T")


def _check(mapping: EnumMapping) -> str:
    return ", ".join(f"'{label}'" for label in mapping.labels())


SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    status TEXT NOT NULL CHECK (status IN ({_check(ACCOUNT_STATUS)})),
    name TEXT,
    tenant_id TEXT NOT NULL DEFAULT 'public',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS auth_session (
    id TEXT PRIMARY KEY,
    token TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    created_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    ip_addr TEXT,
    user_agent TEXT
);
CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id, expires_at);

CREATE TABLE IF NOT EXISTS account_lockout (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    starts_at TIMESTAMPTZ NOT NULL,
    ends_at TIMESTAMPTZ,
    failed_attempts INTEGER NOT NULL DEFAULT 0,
    reason TEXT,
    ip_addr TEXT,
    kind TEXT NOT NULL CHECK (kind IN ({_check(LOCKOUT_KIND)})),
    lifted_at TIMESTAMPTZ,
    lifted_by TEXT
);
CREATE INDEX IF NOT EXISTS account_lockout_account_idx ON account_lockout (account_id, ends_at);

CREATE TABLE IF NOT EXISTS failed_login (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    email TEXT,
    account_id TEXT REFERENCES account(id) ON DELETE SET NULL,
    ip_addr TEXT,
    reason TEXT,
    metadata JSONB,
    attempted_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS failed_login_email_idx ON failed_login (email, attempted_at);
CREATE INDEX IF NOT EXISTS failed_login_ip_idx ON failed_login (ip_addr, attempted_at);

CREATE TABLE IF NOT EXISTS invitation (
    id TEXT PRIMARY KEY,
    token TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    status TEXT NOT NULL CHECK (status IN ({_check(INVITATION_STATUS)})),
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    invited_by TEXT,
    resend_count INTEGER NOT NULL DEFAULT 0,
    sent_at TIMESTAMPTZ,
    accepted_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS password_reset_token (
    id TEXT PRIMARY KEY,
    token TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    status TEXT NOT NULL CHECK (status IN ({_check(RESET_TOKEN_STATUS)})),
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    used_at TIMESTAMPTZ,
    resend_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS password_history (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    password_hash TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    event_type TEXT NOT NULL CHECK (event_type IN ({_check(AUDIT_EVENT_TYPE)})),
    created_at TIMESTAMPTZ NOT NULL,
    account_id TEXT,
    description TEXT,
    ip_addr TEXT,
    table_name TEXT,
    record_id TEXT,
    signed_by TEXT,
    reason TEXT,
    group_id TEXT,
    signature TEXT
);
CREATE INDEX IF NOT EXISTS audit_log_account_idx ON audit_log (account_id, created_at);
CREATE INDEX IF NOT EXISTS audit_log_group_idx ON audit_log (group_id);

CREATE TABLE IF NOT EXISTS audit_change_log (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    audit_log_id BIGINT NOT NULL REFERENCES audit_log(id) ON DELETE CASCADE,
    column_name TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT
);
"""


class _PgRepository(Generic[T]):
    """One table, mapped field-for-field onto a dataclass.

    ``renamed`` maps dataclass fields to column names where they differ,
    ``enums`` maps fields to their :class:`EnumMapping`.
    """

    table: str = ""
    model: Type[Any] = object
    generated_id: bool = False
    renamed: Mapping[str, str] = {}
    enums: Mapping[str, EnumMapping] = {}
    json_fields: Collection[str] = ()
    order_by: str = "id"

    def __init__(self, store: "PostgresStore") -> None:
        self._store = store

    def _col(self, field_name: str) -> str:
        return self.renamed.get(field_name, field_name)

    def _to_db(self, field_name: str, value: Any) -> Any:
        if value is None:
            return None
        if field_name in self.enums:
            return self.enums[field_name].to_db(value)
        if field_name in self.json_fields:
            return json.dumps(value)
        return value

    def _from_row(self, row: Optional[Dict[str, Any]]) -> Optional[T]:
        if not row:
            return None
        values: Dict[str, Any] = {}
        for f in fields(self.model):
            value = row.get(self._col(f.name))
            if value is not None and f.name in self.enums:
                value = self.enums[f.name].from_db(value)
            elif f.name in self.json_fields:
                if isinstance(value, str):
                    value = json.loads(value)
                value = value or {}
            values[f.name] = value
        return self.model(**values)

    def _fetch_one(self, sql: str, params: Sequence[Any]) -> Optional[T]:
        with self._store._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._from_row(row)

    def _fetch_all(self, sql: str, params: Sequence[Any]) -> List[T]:
        with self._store._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._from_row(row) for row in rows]

    def _insert_sql(self, item: T) -> Tuple[str, List[Any]]:
        names = [
            f.name for f in fields(self.model) if not (self.generated_id and f.name == "id")
        ]
        columns = ", ".join(self._col(name) for name in names)
        placeholders = ", ".join(["%s"] * len(names))
        params = [self._to_db(name, getattr(item, name)) for name in names]
        return f"INSERT INTO {self.table} ({columns}) VALUES ({placeholders}) RETURNING *", params

    def get(self, key: Any) -> Optional[T]:
        return self._fetch_one(f"SELECT * FROM {self.table} WHERE id = %s", (key,))

    def add(self, item: T) -> T:
        sql, params = self._insert_sql(item)
        return self._fetch_one(sql, params)

    def delete(self, key: Any) -> bool:
        with self._store._connect() as conn:
            cur = conn.execute(f"DELETE FROM {self.table} WHERE id = %s", (key,))
        return bool(cur.rowcount)

    def _update_sql(self, changes: Mapping[str, Any]) -> Tuple[List[str], List[Any]]:
        assignments = [f"{self._col(name)} = %s" for name in changes]
        params = [self._to_db(name, value) for name, value in changes.items()]
        return assignments, params


class PgAccountRepository(_PgRepository[Account]):
    table = "account"
    model = Account
    enums = {"status": ACCOUNT_STATUS}

    def get_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one("SELECT * FROM account WHERE email = %s", (email,))

    def update(self, account_id: str, now: datetime, **changes: Any) -> Optional[Account]:
        check_columns(changes, ACCOUNT_COLUMNS)
        assignments, params = self._update_sql({**changes, "updated_at": now})
        return self._fetch_one(
            f"UPDATE account SET {', '.join(assignments)} WHERE id = %s RETURNING *",
            (*params, account_id),
        )


class PgSessionRepository(_PgRepository[Session]):
    table = "auth_session"
    model = Session

    def get_by_token(self, token: str) -> Optional[Session]:
        return self._fetch_one("SELECT * FROM auth_session WHERE token = %s", (token,))

    def end(self, session_id: str, now: datetime) -> Optional[Session]:
        return self._fetch_one(
            "UPDATE auth_session SET expires_at = %s WHERE id = %s AND expires_at > %s RETURNING *",
            (now, session_id, now),
        )

    def list_live(self, account_id: str, now: datetime) -> List[Session]:
        return self._fetch_all(
            "SELECT * FROM auth_session WHERE account_id = %s AND expires_at > %s ORDER BY created_at",
            (account_id, now),
        )


class PgLockoutRepository(_PgRepository[Lockout]):
    table = "account_lockout"
    model = Lockout
    generated_id = True
    renamed = {"start": "starts_at", "end": "ends_at"}
    enums = {"kind": LOCKOUT_KIND}

    _ACTIVE = "(ends_at IS NULL OR ends_at > %s)"

    def create_unless_active(
        self,
        account_id: str,
        now: datetime,
        plan: LockoutPlan,
        *,
        failed_attempts: int,
        reason: Optional[str],
        ip_addr: Optional[str],
    ) -> Tuple[Lockout, bool]:
        with self._store._connect() as conn:
            # Serialise lockout creation per account on the account row
            owner = conn.execute(
                "SELECT id FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not owner:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            active = conn.execute(
                f"SELECT * FROM account_lockout WHERE account_id = %s AND {self._ACTIVE} "
                "ORDER BY id DESC LIMIT 1",
                (account_id, now),
            ).fetchone()
            if active:
                return self._from_row(active), False
            history = [
                self._from_row(row)
                for row in conn.execute(
                    "SELECT * FROM account_lockout WHERE account_id = %s ORDER BY id",
                    (account_id,),
                ).fetchall()
            ]
            kind, end = plan(history)
            sql, params = self._insert_sql(
                Lockout(
                    id=0,
                    account_id=account_id,
                    start=now,
                    end=end,
                    failed_attempts=failed_attempts,
                    reason=reason,
                    ip_addr=ip_addr,
                    kind=kind,
                )
            )
            row = conn.execute(sql, params).fetchone()
        return self._from_row(row), True

    def get_active(self, account_id: str, now: datetime) -> Optional[Lockout]:
        return self._fetch_one(
            f"SELECT * FROM account_lockout WHERE account_id = %s AND {self._ACTIVE} "
            "ORDER BY id DESC LIMIT 1",
            (account_id, now),
        )

    def list_for_account(self, account_id: str) -> List[Lockout]:
        return self._fetch_all(
            "SELECT * FROM account_lockout WHERE account_id = %s ORDER BY id", (account_id,)
        )

    def list_active(self, now: datetime) -> List[Lockout]:
        return self._fetch_all(
            f"SELECT * FROM account_lockout WHERE {self._ACTIVE} ORDER BY id", (now,)
        )

    def lift(
        self, lockout_id: int, now: datetime, lifted_by: Optional[str]
    ) -> Optional[Lockout]:
        return self._fetch_one(
            "UPDATE account_lockout SET ends_at = %s, lifted_at = %s, lifted_by = %s "
            f"WHERE id = %s AND {self._ACTIVE} RETURNING *",
            (now, now, lifted_by, lockout_id, now),
        )

    def extend(self, lockout_id: int, now: datetime, minutes: int) -> Optional[Lockout]:
        return self._fetch_one(
            "UPDATE account_lockout SET ends_at = ends_at + make_interval(mins => %s) "
            "WHERE id = %s AND kind = %s AND ends_at > %s RETURNING *",
            (minutes, lockout_id, LOCKOUT_KIND.to_db(LockoutKind.TEMPORARY), now),
        )

    def make_permanent(self, lockout_id: int, now: datetime) -> Optional[Lockout]:
        return self._fetch_one(
            "UPDATE account_lockout SET ends_at = NULL, kind = %s "
            f"WHERE id = %s AND {self._ACTIVE} RETURNING *",
            (LOCKOUT_KIND.to_db(LockoutKind.PERMANENT), lockout_id, now),
        )

    def delete_ended_before(self, cutoff: datetime) -> int:
        with self._store._connect() as conn:
            cur = conn.execute(
                "DELETE FROM account_lockout WHERE ends_at IS NOT NULL AND ends_at < %s",
                (cutoff,),
            )
        return cur.rowcount or 0


class PgFailedLoginRepository(_PgRepository[FailedLoginAttempt]):
    table = "failed_login"
    model = FailedLoginAttempt
    generated_id = True
    json_fields = ("metadata",)

    def _count(self, column: str, value: str, since: datetime) -> int:
        with self._store._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM failed_login WHERE {column} = %s AND attempted_at >= %s",
                (value, since),
            ).fetchone()
        return int(row["total"]) if row else 0

    def count_by_email(self, email: str, since: datetime) -> int:
        return self._count("email", email, since)

    def count_by_ip(self, ip_addr: str, since: datetime) -> int:
        return self._count("ip_addr", ip_addr, since)

    def list_by_email(self, email: str, since: datetime) -> List[FailedLoginAttempt]:
        return self._fetch_all(
            "SELECT * FROM failed_login WHERE email = %s AND attempted_at >= %s "
            "ORDER BY attempted_at DESC, id DESC",
            (email, since),
        )

    def list_by_ip(self, ip_addr: str, since: datetime) -> List[FailedLoginAttempt]:
        return self._fetch_all(
            "SELECT * FROM failed_login WHERE ip_addr = %s AND attempted_at >= %s "
            "ORDER BY attempted_at DESC, id DESC",
            (ip_addr, since),
        )

    def delete_before(self, cutoff: datetime) -> int:
        with self._store._connect() as conn:
            cur = conn.execute("DELETE FROM failed_login WHERE attempted_at < %s", (cutoff,))
        return cur.rowcount or 0


class _PgTokenRepository(_PgRepository[T]):
    columns: Collection[str] = ()

    def get_by_token(self, token: str) -> Optional[T]:
        return self._fetch_one(f"SELECT * FROM {self.table} WHERE token = %s", (token,))

    def list_for_account(self, account_id: str) -> List[T]:
        return self._fetch_all(
            f"SELECT * FROM {self.table} WHERE account_id = %s ORDER BY created_at DESC",
            (account_id,),
        )

    def transition(
        self,
        token_id: str,
        expected: Collection[Any],
        new_status: Any,
        *,
        unexpired_at: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[T]:
        check_columns(changes, self.columns)
        status_map = self.enums["status"]
        assignments, params = self._update_sql({"status": new_status, **changes})
        where = "id = %s AND status = ANY(%s)"
        params += [token_id, [status_map.to_db(status) for status in expected]]
        if unexpired_at is not None:
            where += " AND expires_at > %s"
            params.append(unexpired_at)
        return self._fetch_one(
            f"UPDATE {self.table} SET {', '.join(assignments)} WHERE {where} RETURNING *",
            params,
        )


class PgInvitationRepository(_PgTokenRepository[Invitation]):
    table = "invitation"
    model = Invitation
    enums = {"status": INVITATION_STATUS}
    columns = INVITATION_COLUMNS

    def list_by_status(self, status: InvitationStatus) -> List[Invitation]:
        return self._fetch_all(
            "SELECT * FROM invitation WHERE status = %s ORDER BY created_at DESC",
            (INVITATION_STATUS.to_db(status),),
        )

    def expire_overdue(self, now: datetime) -> int:
        with self._store._connect() as conn:
            cur = conn.execute(
                "UPDATE invitation SET status = %s WHERE status = ANY(%s) AND expires_at <= %s",
                (
                    INVITATION_STATUS.to_db(InvitationStatus.EXPIRED),
                    [
                        INVITATION_STATUS.to_db(InvitationStatus.PENDING),
                        INVITATION_STATUS.to_db(InvitationStatus.SENT),
                    ],
                    now,
                ),
            )
        return cur.rowcount or 0


class PgResetTokenRepository(_PgTokenRepository[PasswordResetToken]):
    table = "password_reset_token"
    model = PasswordResetToken
    enums = {"status": RESET_TOKEN_STATUS}
    columns = RESET_TOKEN_COLUMNS


class PgPasswordHistoryRepository(_PgRepository[PasswordHistoryEntry]):
    table = "password_history"
    model = PasswordHistoryEntry
    generated_id = True

    def recent(self, account_id: str, limit: int) -> List[PasswordHistoryEntry]:
        if limit <= 0:
            return []
        return self._fetch_all(
            "SELECT * FROM password_history WHERE account_id = %s "
            "ORDER BY created_at DESC, id DESC LIMIT %s",
            (account_id, limit),
        )


class PgAuditLogRepository(_PgRepository[AuditLogEntry]):
    table = "audit_log"
    model = AuditLogEntry
    generated_id = True
    enums = {"event_type": AUDIT_EVENT_TYPE}

    _NEWEST_FIRST = "ORDER BY created_at DESC, id DESC"

    def list_for_account(self, account_id: str, limit: int = 100) -> List[AuditLogEntry]:
        return self._fetch_all(
            f"SELECT * FROM audit_log WHERE account_id = %s {self._NEWEST_FIRST} LIMIT %s",
            (account_id, limit),
        )

    def list_by_event_type(
        self, event_type: AuditEventType, limit: int = 100
    ) -> List[AuditLogEntry]:
        return self._fetch_all(
            f"SELECT * FROM audit_log WHERE event_type = %s {self._NEWEST_FIRST} LIMIT %s",
            (AUDIT_EVENT_TYPE.to_db(event_type), limit),
        )

    def list_between(
        self, start: datetime, end: datetime, limit: int = 100
    ) -> List[AuditLogEntry]:
        return self._fetch_all(
            f"SELECT * FROM audit_log WHERE created_at BETWEEN %s AND %s {self._NEWEST_FIRST} LIMIT %s",
            (start, end, limit),
        )

    def list_for_record(self, table_name: str, record_id: str) -> List[AuditLogEntry]:
        return self._fetch_all(
            f"SELECT * FROM audit_log WHERE table_name = %s AND record_id = %s {self._NEWEST_FIRST}",
            (table_name, record_id),
        )

    def list_by_group(self, group_id: str) -> List[AuditLogEntry]:
        return self._fetch_all(
            f"SELECT * FROM audit_log WHERE group_id = %s {self._NEWEST_FIRST}", (group_id,)
        )


class PgAuditChangeRepository(_PgRepository[AuditChangeEntry]):
    table = "audit_change_log"
    model = AuditChangeEntry
    generated_id = True

    def list_for_log(self, audit_log_id: int) -> List[AuditChangeEntry]:
        return self._fetch_all(
            "SELECT * FROM audit_change_log WHERE audit_log_id = %s ORDER BY id", (audit_log_id,)
        )


class PostgresStore:
    """Postgres-backed store; every repository shares one connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._build_repositories()
        self._ensure_schema()

    def _build_repositories(self) -> None:
        self.accounts = PgAccountRepository(self)
        self.sessions = PgSessionRepository(self)
        self.lockouts = PgLockoutRepository(self)
        self.failed_logins = PgFailedLoginRepository(self)
        self.invitations = PgInvitationRepository(self)
        self.reset_tokens = PgResetTokenRepository(self)
        self.password_history = PgPasswordHistoryRepository(self)
        self.audit_logs = PgAuditLogRepository(self)
        self.audit_changes = PgAuditChangeRepository(self)

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection; commits on success, rolls back on error."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.UniqueViolation, errors.ForeignKeyViolation, errors.CheckViolation) as exc:
            diag = getattr(exc, "diag", None)
            raise ConstraintViolation(
                "constraint violated",
                {"constraint": getattr(diag, "constraint_name", None)},
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_operation_failed", error=str(exc))
            raise PersistenceError(str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the tables the repositories rely on when they are missing."""

        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()
