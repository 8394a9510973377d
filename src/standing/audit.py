"""
Audit trail for worker admission, subscription lifecycle and payments.

Each entry is one JSON line. Entries are chained: every line stores the
previous line's digest and an HMAC over its own body plus that digest.
Editing, dropping or reordering a line breaks the chain, and reads fail
loudly instead of returning a doctored history.

The trail is an observer. Components call `record()`, which never lets
an audit write failure abort a billing operation.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import ensure_private_dir, ensure_private_file


logger = logging.getLogger(__name__)

DEFAULT_AUDIT_PATH = Path.home() / ".standing" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".standing-secrets" / "audit_hmac.key"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    WORKER_REGISTERED = "worker_registered"
    WORKER_REJECTED = "worker_rejected"
    CODEHASH_APPROVED = "codehash_approved"
    MERCHANT_REGISTERED = "merchant_registered"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    KEY_REGISTERED = "key_registered"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_REJECTED = "payment_rejected"


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    subscription_id: Optional[str] = None
    principal: Optional[str] = None
    merchant: Optional[str] = None
    # Decimal string; u128 amounts do not survive a JSON float.
    amount: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, raw: dict) -> AuditEvent:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})

    @property
    def amount_value(self) -> int:
        return int(self.amount) if self.amount else 0

    def to_json(self) -> str:
        body = {f.name: getattr(self, f.name) for f in fields(self)}
        return json.dumps({k: v for k, v in body.items() if v is not None}, separators=(",", ":"))


class AuditTrail:
    """Append-only, HMAC-chained JSONL log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        for target in (self.path, self.key_path):
            ensure_private_dir(target.parent)
            ensure_private_file(target)

        self._key = self._signing_key()
        self._append_lock = threading.Lock()
        self._head = self._last_digest()

    def _signing_key(self) -> bytes:
        from_env = os.getenv("STANDING_AUDIT_HMAC_KEY")
        if from_env:
            return from_env.encode()
        stored = self.key_path.read_bytes().strip()
        if stored:
            return stored
        generated = secrets.token_hex(32).encode()
        self.key_path.write_bytes(generated)
        ensure_private_file(self.key_path)
        return generated

    def _lines(self) -> Iterator[dict]:
        if not self.path.exists():
            return
        with open(self.path, encoding="utf-8") as f:
            for number, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    raise RuntimeError(f"Audit chain broken: unreadable entry at line {number}") from None

    def _last_digest(self) -> str:
        head = ""
        for raw in self._lines():
            head = raw.get("event_hash", "")
        return head

    def _digest(self, body: dict, prev_hash: str) -> str:
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def log(
        self,
        event_type: EventType,
        subscription_id: Optional[str] = None,
        principal: Optional[str] = None,
        merchant: Optional[str] = None,
        amount: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        body = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "subscription_id": subscription_id,
            "principal": principal,
            "merchant": merchant,
            "amount": None if amount is None else str(amount),
            "success": success,
            "reason": reason,
            "details": details,
        }
        body = {k: v for k, v in body.items() if v is not None}

        with self._append_lock:
            prev_hash = self._head
            event = AuditEvent(**body, prev_hash=prev_hash or None, event_hash=self._digest(body, prev_hash))
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._head = event.event_hash
        return event

    def _verified(self) -> Iterator[AuditEvent]:
        """Yield events in file order, raising at the first broken link."""
        expected_prev = ""
        for lineno, raw in enumerate(self._lines(), start=1):
            prev_hash = raw.get("prev_hash") or ""
            if prev_hash != expected_prev:
                raise RuntimeError(f"Audit chain broken: previous hash mismatch at line {lineno}")
            body = {k: v for k, v in raw.items() if k not in _CHAIN_FIELDS}
            if not hmac.compare_digest(self._digest(body, prev_hash), raw.get("event_hash") or ""):
                raise RuntimeError(f"Audit chain broken: event hash mismatch at line {lineno}")
            expected_prev = raw["event_hash"]
            yield AuditEvent.from_record(raw)

    def verify(self) -> int:
        """Check the whole chain; returns the number of intact events."""
        return sum(1 for _ in self._verified())

    def _matching(
        self,
        subscription_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
    ) -> Iterator[AuditEvent]:
        for event in self._verified():
            if subscription_id is not None and event.subscription_id != subscription_id:
                continue
            if event_type is not None and event.event_type != event_type.value:
                continue
            yield event

    def read_events(
        self,
        subscription_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        matched = list(self._matching(subscription_id, event_type))
        return matched[-limit:] if limit else []

    def summary(self, subscription_id: Optional[str] = None) -> dict:
        events = list(self._matching(subscription_id))
        by_type: dict[str, int] = {}
        for event in events:
            by_type[event.event_type] = by_type.get(event.event_type, 0) + 1
        paid = sum(e.amount_value for e in events if e.event_type == EventType.PAYMENT_COMPLETED.value)
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "amount_paid": str(paid),
            "last_event": events[-1].to_json() if events else None,
        }


def record(trail: Optional[AuditTrail], event_type: EventType, **event_fields: Any) -> None:
    """Append to trail if one is configured; write failures are logged, not raised."""
    if trail is None:
        return
    try:
        trail.log(event_type, **event_fields)
    except OSError as exc:
        logger.warning("Audit write failed for %s: %s", event_type.value, exc)
