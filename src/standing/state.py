"""
Engine state and its file-backed store.

All registries and the ledger share one EngineState. StateStore hands it
out under an exclusive file lock and persists it only when the caller's
block completes, so a failed operation leaves no partial mutation.
"""

from __future__ import annotations

import fcntl
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from .errors import UnauthorizedError
from .storage import atomic_write_json, ensure_private_dir, ensure_private_file
from .subscription import Subscription, Worker


logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = Path.home() / ".standing" / "state.json"
STATE_VERSION = 1


@dataclass
class EngineState:
    """Everything the engine owns; passed explicitly to each component."""

    owner: str
    approved_codehashes: set[str] = field(default_factory=set)
    merchants: set[str] = field(default_factory=set)
    workers: dict[str, Worker] = field(default_factory=dict)
    # Insertion order is storage order; the scheduler scans in this order.
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    subscription_keys: dict[str, str] = field(default_factory=dict)
    id_sequence: int = 0

    def require_owner(self, principal: str) -> None:
        if principal != self.owner:
            raise UnauthorizedError("Only owner can call this method")

    def next_sequence(self) -> int:
        self.id_sequence += 1
        return self.id_sequence

    def to_dict(self) -> dict:
        return {
            "version": STATE_VERSION,
            "owner": self.owner,
            "approved_codehashes": sorted(self.approved_codehashes),
            "merchants": sorted(self.merchants),
            "workers": {p: w.to_dict() for p, w in self.workers.items()},
            "subscriptions": [s.to_dict() for s in self.subscriptions.values()],
            "subscription_keys": dict(self.subscription_keys),
            "id_sequence": self.id_sequence,
        }

    @classmethod
    def from_dict(cls, d: dict) -> EngineState:
        version = d.get("version", STATE_VERSION)
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported state version: {version}")
        subscriptions = [Subscription.from_dict(raw) for raw in d.get("subscriptions", [])]
        return cls(
            owner=d["owner"],
            approved_codehashes=set(d.get("approved_codehashes", [])),
            merchants=set(d.get("merchants", [])),
            workers={p: Worker.from_dict(w) for p, w in d.get("workers", {}).items()},
            subscriptions={s.id: s for s in subscriptions},
            subscription_keys=dict(d.get("subscription_keys", {})),
            id_sequence=int(d.get("id_sequence", 0)),
        )


class StateStore:
    """File-backed EngineState with lock-based serialization across processes."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or DEFAULT_STATE_PATH
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / f".{self.path.name}.lock"
        ensure_private_file(self._lock_path)

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    @property
    def exists(self) -> bool:
        return self.path.exists() and self.path.stat().st_size > 0

    def initialize(self, owner: str) -> EngineState:
        """Create a fresh state file owned by owner; refuses to overwrite."""
        if not owner:
            raise ValueError("owner is required")
        with self._lock():
            if self.exists:
                raise FileExistsError(f"State already initialized at {self.path}")
            state = EngineState(owner=owner)
            atomic_write_json(self.path, state.to_dict())
        logger.info("State initialized at %s (owner: %s)", self.path, owner)
        return state

    def _read(self) -> EngineState:
        if not self.exists:
            raise FileNotFoundError(f"State not initialized at {self.path}; run `standing init`")
        with open(self.path, encoding="utf-8") as f:
            return EngineState.from_dict(json.load(f))

    def load(self) -> EngineState:
        """Read-only snapshot of the current state."""
        with self._lock():
            return self._read()

    @contextmanager
    def transaction(self) -> Iterator[EngineState]:
        """Yield the state under the lock; persist only on clean exit."""
        with self._lock():
            state = self._read()
            yield state
            atomic_write_json(self.path, state.to_dict())
