"""
InfraShare - Audit Trail

Append-only record of every financial mutation: distribution creation,
settlement references, claim state transitions, payment initiations,
rollbacks and reconciliation alerts.

Writing to the audit trail is fire-and-forget from the caller's point of
view. A failing sink is logged and never undoes the financial write it
describes.
"""

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from profit_models import utc_now

logger = logging.getLogger(__name__)


class AuditAction:
    """Action names recorded in the trail."""

    DISTRIBUTION_CREATED = "distribution_created"
    SETTLEMENT_ATTACHED = "settlement_reference_attached"
    CLAIM_CREATED = "claim_created"
    CLAIM_TRANSITION = "claim_transition"
    PAYMENT_INITIATED = "payment_initiated"
    CLAIM_ROLLBACK = "claim_rollback"
    RECONCILIATION_ALERT = "reconciliation_alert"


@dataclass
class AuditRecord:
    """One entry of the audit trail."""

    actor: str
    action: str
    entity_id: str
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utc_now)
    record_id: str = ""

    def __post_init__(self):
        if not self.record_id:
            self.record_id = self._generate_record_id()

    def _generate_record_id(self) -> str:
        data = {
            "actor": self.actor,
            "action": self.action,
            "entity_id": self.entity_id,
            "after": self.after_state,
            "timestamp": self.timestamp.isoformat(),
        }
        hash_input = json.dumps(data, sort_keys=True, default=str)
        return f"AUDIT-{hashlib.sha256(hash_input.encode()).hexdigest()[:16].upper()}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink(ABC):
    """Destination for audit records."""

    @abstractmethod
    def append(self, record: AuditRecord) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit records to a dedicated logger."""

    def __init__(self, logger_name: str = "infrashare.audit"):
        self._logger = logging.getLogger(logger_name)

    def append(self, record: AuditRecord) -> None:
        self._logger.info(
            f"{record.action} {record.entity_id} by {record.actor}",
            extra={"audit": record.to_dict()},
        )


class StorageAuditSink(AuditSink):
    """Persists audit records through the profit store."""

    def __init__(self, store):
        self.store = store

    def append(self, record: AuditRecord) -> None:
        self.store.append_audit(record.to_dict())


class MemoryAuditSink(AuditSink):
    """Keeps audit records in a list; used in tests and development."""

    def __init__(self):
        self.records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self.records.append(record)

    def by_action(self, action: str) -> list[AuditRecord]:
        with self._lock:
            return [r for r in self.records if r.action == action]


class AuditTrail:
    """Fans audit records out to every configured sink."""

    def __init__(self, sinks: list[AuditSink] | None = None):
        self.sinks = list(sinks or [])
        self.failures = 0

    def record(
        self,
        actor: str,
        action: str,
        entity_id: str,
        before_state: dict[str, Any] | None = None,
        after_state: dict[str, Any] | None = None,
    ) -> AuditRecord:
        """
        Append a record to every sink.

        Returns:
            The record that was written
        """
        record = AuditRecord(
            actor=actor,
            action=action,
            entity_id=entity_id,
            before_state=before_state,
            after_state=after_state,
        )
        for sink in self.sinks:
            try:
                sink.append(record)
            except Exception as e:
                self.failures += 1
                logger.error(
                    f"Audit sink {sink.__class__.__name__} failed for "
                    f"{record.action} {record.entity_id}: {e}",
                    extra={"audit": record.to_dict()},
                )
        return record
