"""Unit tests for the audit trail.

Covers:
- Signature format and tamper detection
- Keyed (HMAC) signatures
- Write failures stay inside the audit trail
- Correlation grouping and change rows
"""

import base64
import hashlib
import hmac
from dataclasses import replace
from datetime import timedelta

from gatekeep.config import Settings
from gatekeep.logging import set_correlation_id
from gatekeep.service.audit import AuditTrail
from gatekeep.storage.models import AccountStatus, AuditEventType


def _expected(payload: str, key: bytes = None) -> str:
    data = payload.encode("utf-8")
    if key:
        digest = hmac.new(key, data, hashlib.sha256).digest()
    else:
        digest = hashlib.sha256(data).digest()
    return base64.b64encode(digest).decode("ascii")


class TestSigning:
    def test_signature_over_ordered_fields(self, store, settings, clock):
        trail = AuditTrail(store, settings, clock=clock)

        entry = trail.append(
            AuditEventType.ACCOUNT_LOCKED,
            account_id="acct-1",
            description="locked",
            ip="10.0.0.1",
            table_name="account",
            record_id="acct-1",
        )

        payload = "\x1f".join(
            [
                "acct-1",
                "account_locked",
                "locked",
                "10.0.0.1",
                "null",
                "null",
                "account",
                "acct-1",
                "null",
                clock.now.isoformat(),
            ]
        )
        assert entry.signature == _expected(payload)
        assert trail.verify(entry)

    def test_any_field_change_breaks_verification(self, store, settings, clock):
        trail = AuditTrail(store, settings, clock=clock)
        entry = trail.append(AuditEventType.FAILED_LOGIN, account_id="acct-1", reason="invalid_password")

        assert not trail.verify(replace(entry, reason="unknown_account"))
        assert not trail.verify(replace(entry, account_id="acct-2"))
        assert not trail.verify(replace(entry, created_at=entry.created_at + timedelta(seconds=1)))
        assert not trail.verify(replace(entry, event_type=AuditEventType.SUCCESSFUL_LOGIN))
        assert not trail.verify(replace(entry, signature=None))
        # the row id is assigned by storage and is not signed
        assert trail.verify(replace(entry, id=entry.id + 1))

    def test_null_and_empty_are_distinct(self, store, settings, clock):
        trail = AuditTrail(store, settings, clock=clock)
        entry = trail.append(AuditEventType.FAILED_LOGIN, description=None)

        assert not trail.verify(replace(entry, description=""))

    def test_keyed_signatures(self, store, clock):
        keyed = AuditTrail(store, Settings(use_memory_store=True, audit_signing_key="s3cret"), clock=clock)
        plain = AuditTrail(store, Settings(use_memory_store=True), clock=clock)

        entry = keyed.append(AuditEventType.SUCCESSFUL_LOGIN, account_id="acct-1")

        assert keyed.verify(entry)
        assert not plain.verify(entry)
        assert entry.signature == _expected(keyed._payload(entry).decode("utf-8"), b"s3cret")

    def test_blank_key_means_unkeyed(self, store, clock):
        trail = AuditTrail(store, Settings(use_memory_store=True, audit_signing_key="  "), clock=clock)
        entry = trail.append(AuditEventType.SUCCESSFUL_LOGIN, account_id="acct-1")

        assert entry.signature == _expected(trail._payload(entry).decode("utf-8"))


class TestWriteFailures:
    def test_storage_error_is_logged_not_raised(self, runtime, account, monkeypatch):
        def broken_add(entry):
            raise RuntimeError("disk full")

        monkeypatch.setattr(runtime.store.audit_logs, "add", broken_add)

        assert runtime.audit.append(AuditEventType.SUCCESSFUL_LOGIN, account_id=account.id) is None
        # the operation being audited still goes through
        assert runtime.auth.authenticate(account.email, "Correct-Horse9") is not None
        session = runtime.sessions.create(account.id)
        assert runtime.sessions.validate(session.token)

    def test_change_rows_need_a_log_entry(self, runtime):
        assert runtime.audit.record_change(999, "status", "a", "b") is None


class TestGrouping:
    def test_correlation_id_becomes_group(self, runtime, account):
        correlation_id = set_correlation_id("req-42")

        entry = runtime.audit.append(AuditEventType.SUCCESSFUL_LOGIN, account_id=account.id)

        assert entry.group_id == correlation_id
        assert entry in runtime.audit.by_group("req-42")

    def test_explicit_group_wins(self, runtime):
        set_correlation_id("req-42")

        entry = runtime.audit.append(AuditEventType.SUCCESSFUL_LOGIN, group_id="batch-1")

        assert entry.group_id == "batch-1"

    def test_admin_pair_uses_correlation_id(self, runtime, account, make_account):
        admin = make_account("admin@example.com")
        set_correlation_id("req-7")

        runtime.audit.record_transition(
            AuditEventType.ACCOUNT_UNLOCKED, account_id=account.id, actor_id=admin.id, description="unlocked"
        )

        pair = runtime.audit.by_group("req-7")
        assert {e.account_id for e in pair} == {account.id, admin.id}
        assert all(e.signed_by == admin.id for e in pair)


class TestChanges:
    def test_only_changed_columns_recorded(self, runtime, account):
        entry = runtime.audit.append(AuditEventType.ACCOUNT_UPDATED, account_id=account.id)

        written = runtime.audit.record_changes(
            entry.id,
            {"status": AccountStatus.ACTIVE, "name": "Ada", "tenant_id": "t1"},
            {"status": AccountStatus.SUSPENDED, "name": "Ada", "tenant_id": None},
        )

        assert [(c.column_name, c.old_value, c.new_value) for c in written] == [
            ("status", "active", "suspended"),
            ("tenant_id", "t1", None),
        ]
        assert [c.id for c in runtime.audit.changes_for(entry.id)] == [c.id for c in written]


class TestQueries:
    def test_reads_newest_first(self, runtime, account, clock):
        first = runtime.audit.append(AuditEventType.FAILED_LOGIN, account_id=account.id)
        clock.advance(minutes=5)
        second = runtime.audit.append(AuditEventType.SUCCESSFUL_LOGIN, account_id=account.id)

        ids = [e.id for e in runtime.audit.for_account(account.id)]
        assert ids.index(second.id) < ids.index(first.id)
        assert runtime.audit.get(first.id) == first
        assert [e.id for e in runtime.audit.by_event_type(AuditEventType.FAILED_LOGIN)] == [first.id]

    def test_date_range_is_inclusive(self, runtime, clock):
        start = clock.now
        inside = runtime.audit.append(AuditEventType.FAILED_LOGIN)
        clock.advance(hours=2)
        runtime.audit.append(AuditEventType.FAILED_LOGIN)

        found = runtime.audit.by_date_range(start, start + timedelta(hours=1))
        assert [e.id for e in found] == [inside.id]

    def test_for_record_matches_string_ids(self, runtime, account):
        lockout = runtime.lockouts.lock(account.id, 5)

        entries = runtime.audit.for_record("account_lockout", lockout.id)

        assert [e.event_type for e in entries] == [AuditEventType.ACCOUNT_LOCKED]
