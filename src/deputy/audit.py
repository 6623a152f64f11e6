"""
Audit trail for keeper activity.

Lifecycle events and every execution attempt are appended to a JSONL file.
Each record carries ``prev_hash`` and an HMAC-SHA256 ``event_hash`` over
``prev_hash|canonical_payload``, so an edited, dropped or reordered line
breaks the chain and is reported on read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .schedule import ExecutionAttempt, Outcome
from .storage import DEFAULT_HOME, ensure_private_dir, ensure_private_file


def audit_key_path_for(home: Path) -> Path:
    """HMAC key location for a keeper home, kept outside the home directory."""
    return home.with_name(home.name + "-secrets") / "audit_hmac.key"


DEFAULT_AUDIT_PATH = DEFAULT_HOME / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = audit_key_path_for(DEFAULT_HOME)
AUDIT_KEY_ENV = "DEPUTY_AUDIT_HMAC_KEY"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    KEEPER_STARTED = "keeper_started"
    KEEPER_STOPPED = "keeper_stopped"
    LOW_BALANCE = "low_balance"
    EXECUTION_SKIPPED = "execution_skipped"
    EXECUTION_SUBMITTED = "execution_submitted"
    EXECUTION_CONFIRMED = "execution_confirmed"
    EXECUTION_REVERTED = "execution_reverted"
    EXECUTION_TIMED_OUT = "execution_timed_out"
    EXECUTION_ERROR = "execution_error"
    EXECUTION_DRY_RUN = "execution_dry_run"


_OUTCOME_EVENTS = {
    Outcome.SKIPPED_NOT_READY: EventType.EXECUTION_SKIPPED,
    Outcome.SKIPPED_FEE_TOO_HIGH: EventType.EXECUTION_SKIPPED,
    Outcome.SKIPPED_SIMULATION_FAILED: EventType.EXECUTION_SKIPPED,
    Outcome.SUBMITTED: EventType.EXECUTION_SUBMITTED,
    Outcome.CONFIRMED_SUCCESS: EventType.EXECUTION_CONFIRMED,
    Outcome.CONFIRMED_FAILURE: EventType.EXECUTION_REVERTED,
    Outcome.TIMED_OUT: EventType.EXECUTION_TIMED_OUT,
    Outcome.TRANSPORT_ERROR: EventType.EXECUTION_ERROR,
    Outcome.DRY_RUN: EventType.EXECUTION_DRY_RUN,
}

# Outcomes an operator should look at.
_FAILED_OUTCOMES = frozenset({Outcome.CONFIRMED_FAILURE, Outcome.TIMED_OUT, Outcome.TRANSPORT_ERROR})


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    owner: Optional[str] = None
    schedule_id: Optional[int] = None
    agent: Optional[str] = None
    amount: Optional[int] = None
    tx_hash: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> "AuditEvent":
        return cls(**{k: v for k, v in record.items() if k in cls.__dataclass_fields__})

    def to_json(self) -> str:
        return json.dumps(_compact(asdict(self)), separators=(",", ":"))


def _compact(values: dict) -> dict:
    return {k: v for k, v in values.items() if v is not None}


def load_audit_key(key_path: Path) -> bytes:
    """Return the HMAC key: env override, else the key file, else a new one."""
    override = os.getenv(AUDIT_KEY_ENV)
    if override:
        return override.encode()
    stored = key_path.read_bytes().strip() if key_path.exists() else b""
    if stored:
        return stored
    key = secrets.token_hex(32).encode()
    key_path.write_bytes(key)
    ensure_private_file(key_path)
    return key


class AuditTrail:
    """Append-only, hash-chained keeper audit log."""

    def __init__(self, path: Optional[Path] = None, key_path: Optional[Path] = None):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        for target in (self.path, self.key_path):
            ensure_private_dir(target.parent)
            ensure_private_file(target)
        self._key = load_audit_key(self.key_path)
        self._head = self._tail_hash()

    def _tail_hash(self) -> str:
        head = ""
        for record in self._records():
            head = record.get("event_hash", "")
        return head

    def _records(self) -> Iterator[dict]:
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _sign(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def _verified(self) -> Iterator[dict]:
        """Yield records in order, raising once the chain stops verifying."""
        expected_prev = ""
        for record in self._records():
            prev_hash = record.get("prev_hash") or ""
            if prev_hash != expected_prev:
                raise RuntimeError("Audit chain broken: previous hash mismatch")
            payload = {k: v for k, v in record.items() if k not in _CHAIN_FIELDS}
            if not hmac.compare_digest(self._sign(payload, prev_hash), record.get("event_hash") or ""):
                raise RuntimeError("Audit chain broken: event hash mismatch")
            expected_prev = record["event_hash"]
            yield record
        self._head = expected_prev

    def _append(self, event: AuditEvent) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())
        ensure_private_file(self.path)

    def log(
        self,
        event_type: EventType,
        owner: Optional[str] = None,
        schedule_id: Optional[int] = None,
        agent: Optional[str] = None,
        amount: Optional[int] = None,
        tx_hash: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        payload = _compact(
            {
                "event_type": event_type.value,
                "timestamp": time.time(),
                "owner": owner,
                "schedule_id": schedule_id,
                "agent": agent,
                "amount": amount,
                "tx_hash": tx_hash,
                "success": success,
                "reason": reason,
                "details": details,
            }
        )
        event_hash = self._sign(payload, self._head)
        event = AuditEvent(**payload, prev_hash=self._head or None, event_hash=event_hash)
        self._append(event)
        self._head = event_hash
        return event

    def log_attempt(self, attempt: ExecutionAttempt, agent: Optional[str] = None) -> AuditEvent:
        """Record one execution attempt under the event type for its outcome."""
        details: dict[str, Any] = {"outcome": attempt.outcome.value}
        if attempt.fee_at_submission is not None:
            details["fee_price"] = attempt.fee_at_submission
        if attempt.effects:
            details["effects"] = dict(attempt.effects)
        return self.log(
            _OUTCOME_EVENTS[attempt.outcome],
            owner=attempt.schedule.owner,
            schedule_id=attempt.schedule.schedule_id,
            agent=agent,
            amount=attempt.schedule.amount_per_action,
            tx_hash=attempt.tx_hash,
            success=attempt.outcome not in _FAILED_OUTCOMES,
            reason=attempt.reason,
            details=details,
        )

    def read_events(
        self,
        owner: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verify the whole chain and return the last ``limit`` matching events."""
        if not self.path.exists():
            return []
        wanted_owner = owner.lower() if owner else None
        events = [
            AuditEvent.from_record(record)
            for record in self._verified()
            if (wanted_owner is None or (record.get("owner") or "").lower() == wanted_owner)
            and (event_type is None or record.get("event_type") == event_type.value)
        ]
        return events[-limit:]

    def summary(self, owner: Optional[str] = None) -> dict:
        events = self.read_events(owner=owner, limit=10_000)
        by_type: dict[str, int] = {}
        for event in events:
            by_type[event.event_type] = by_type.get(event.event_type, 0) + 1
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
