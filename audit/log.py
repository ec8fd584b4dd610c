"""
audit/log.py -- Tamper-evident security audit log.

Every security-relevant state transition in the engine ends with exactly one
append() here. Entries are immutable once written.

Tamper evidence:
  checksum = HMAC-SHA256(audit_key, canonical_json(entry without checksum))
  canonical_json = json.dumps(..., sort_keys=True, separators=(",", ":"))

  Because the key is server-held, an attacker with write access to the
  audit table cannot forge a matching checksum for an edited row. A plain
  SHA-256 would only catch accidental corruption.

Integrity job:
  run_integrity_check() scans the whole log oldest first. On the first batch
  containing a mismatch it logs at CRITICAL, appends a SECURITY /
  INTEGRITY_VIOLATION entry naming the corrupted ids, and raises
  IntegrityViolation so the caller (CLI or maintenance loop) halts.

Layer rule: no imports from api/, auth/, or ratelimit/.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import Any

from audit.models import (
    AuditEventMismatch,
    AuditLogEntry,
    AuditLogFilter,
    AuditPage,
    AuditStats,
    IntegrityReport,
    IntegrityViolation,
    RetentionPolicy,
    SecurityAction,
    SecurityEventType,
    SecuritySeverity,
    is_valid_action,
)
from audit.store import AuditStore
from core.crypto import constant_time_equals
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("gatekeeper.audit")


def compute_checksum(entry: AuditLogEntry, key: bytes) -> str:
    """Return the HMAC over every field of entry except checksum itself."""
    payload = {
        "id": entry.id,
        "event_type": entry.event_type.value,
        "action": entry.action.value,
        "success": entry.success,
        "severity": entry.severity.value,
        "created_at": to_iso(entry.created_at),
        "user_id": entry.user_id,
        "email": entry.email,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "session_id": entry.session_id,
        "request_id": entry.request_id,
        "resource": entry.resource,
        "event_data": entry.event_data,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hmac.new(key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


class SecurityAuditLog:
    """Append-only, checksummed security event log.

    Usage:
        audit = SecurityAuditLog(AuditStore(), key=keyring.audit_key)
        audit.log_auth_event(SecurityAction.LOGIN, success=True, user_id=7)
        audit.run_integrity_check()
    """

    def __init__(
        self,
        store: AuditStore,
        key: bytes,
        clock: Clock = utc_now,
        retention: RetentionPolicy | None = None,
    ) -> None:
        self._store = store
        self._key = key
        self._clock = clock
        self.retention = retention or RetentionPolicy()

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def append(
        self,
        event_type: SecurityEventType,
        action: SecurityAction,
        *,
        success: bool = True,
        severity: SecuritySeverity | None = None,
        user_id: int | None = None,
        email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        session_id: int | None = None,
        request_id: str | None = None,
        resource: str | None = None,
        event_data: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Write one entry and return it. The entry is durable when this returns.

        Raises AuditEventMismatch if action is not legal under event_type.
        """
        if not is_valid_action(event_type, action):
            raise AuditEventMismatch(f"{action.value} is not a valid action for {event_type.value} events")
        if severity is None:
            severity = SecuritySeverity.INFO if success else SecuritySeverity.WARN
        # JSON round-trip so the checksummed form equals what the store returns
        data = json.loads(json.dumps(event_data or {}, sort_keys=True, default=str))
        unsigned = AuditLogEntry(
            id=uuid.uuid4().hex,
            event_type=event_type,
            action=action,
            success=success,
            severity=severity,
            created_at=self._clock(),
            checksum="",
            user_id=user_id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
            request_id=request_id,
            resource=resource,
            event_data=data,
        )
        entry = replace(unsigned, checksum=compute_checksum(unsigned, self._key))
        self._store.insert(entry)
        logger.debug(
            "audit %s/%s success=%s user_id=%s id=%s",
            event_type.value,
            action.value,
            success,
            user_id,
            entry.id,
        )
        return entry

    def log_auth_event(self, action: SecurityAction, *, success: bool = True, **fields) -> AuditLogEntry:
        """AUTH event; severity INFO on success, WARN on failure unless given."""
        return self.append(SecurityEventType.AUTH, action, success=success, **fields)

    def log_user_event(self, action: SecurityAction, *, success: bool = True, **fields) -> AuditLogEntry:
        return self.append(SecurityEventType.USER_MGMT, action, success=success, **fields)

    def log_security_event(
        self,
        action: SecurityAction,
        *,
        severity: SecuritySeverity = SecuritySeverity.ERROR,
        success: bool = False,
        **fields,
    ) -> AuditLogEntry:
        return self.append(SecurityEventType.SECURITY, action, success=success, severity=severity, **fields)

    def log_system_event(self, action: SecurityAction, **fields) -> AuditLogEntry:
        return self.append(SecurityEventType.SYSTEM, action, **fields)

    def log_rate_limited(self, operation: str, retry_after: int, **fields) -> AuditLogEntry:
        data = dict(fields.pop("event_data", None) or {})
        data.update({"operation": operation, "retry_after": retry_after})
        return self.log_security_event(
            SecurityAction.RATE_LIMIT_EXCEEDED,
            severity=SecuritySeverity.WARN,
            event_data=data,
            **fields,
        )

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_integrity(self, entry: AuditLogEntry) -> bool:
        expected = compute_checksum(entry, self._key)
        return constant_time_equals(expected, entry.checksum)

    def verify_entries(self, entry_ids: list[str]) -> IntegrityReport:
        """Verify the given ids. Ids that no longer exist are not reported."""
        entries, unreadable = self._store.get_many(entry_ids)
        report = IntegrityReport(corrupted=list(unreadable))
        for entry in entries:
            if self.verify_integrity(entry):
                report.verified += 1
            else:
                report.corrupted.append(entry.id)
        return report

    def run_integrity_check(self, batch_size: int = 500) -> int:
        """Verify every stored entry. Returns the number verified.

        Raises IntegrityViolation on the first batch with a mismatch.
        """
        verified = 0
        for entries, unreadable in self._store.iter_batches(batch_size):
            # A row that no longer decodes has been edited outside the store
            corrupted = unreadable + [e.id for e in entries if not self.verify_integrity(e)]
            if corrupted:
                logger.critical(
                    "Audit log integrity violation: %d corrupted entr%s (first: %s)",
                    len(corrupted),
                    "y" if len(corrupted) == 1 else "ies",
                    corrupted[0],
                )
                self.log_security_event(
                    SecurityAction.INTEGRITY_VIOLATION,
                    severity=SecuritySeverity.CRITICAL,
                    event_data={"corrupted_ids": corrupted, "verified_before_halt": verified},
                )
                raise IntegrityViolation(corrupted)
            verified += len(entries)
        logger.info("Audit integrity check passed (%d entries)", verified)
        return verified

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(self, flt: AuditLogFilter | None = None) -> AuditPage:
        flt = flt or AuditLogFilter()
        items, total = self._store.query(flt)
        return AuditPage(items=items, total=total, limit=min(max(1, flt.limit), 500), offset=max(0, flt.offset))

    def stats(self, flt: AuditLogFilter | None = None) -> AuditStats:
        return self._store.stats(flt or AuditLogFilter())

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup_expired(self, policy: RetentionPolicy | None = None, dry_run: bool = False) -> int:
        """Delete (or with dry_run, count) entries older than their retention window."""
        policy = policy or self.retention
        now = self._clock()
        counts: dict[str, int] = {}
        for event_type in SecurityEventType:
            cutoff = now - timedelta(days=policy.days_for(event_type))
            if dry_run:
                counts[event_type.value] = self._store.count_older_than(event_type, cutoff)
            else:
                counts[event_type.value] = self._store.delete_older_than(event_type, cutoff)
        total = sum(counts.values())
        if dry_run:
            logger.info("Audit retention dry run: %d entries would be deleted %s", total, counts)
            return total
        if total:
            logger.info("Audit retention removed %d entries %s", total, counts)
            self.log_system_event(
                SecurityAction.MAINTENANCE_MODE,
                resource="audit_logs",
                event_data={"operation": "retention_cleanup", "deleted": counts},
            )
        return total

    def close(self) -> None:
        self._store.close()
