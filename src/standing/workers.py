"""
Worker admission.

A worker is an autonomous agent that proved, via attestation, which code
it runs. Only workers whose codehash the owner approved may ask what is
due or trigger payments.
"""

from __future__ import annotations

import logging
from typing import Optional

from .attestation import AttestationVerifier
from .audit import AuditTrail, EventType, record
from .clock import Clock
from .errors import AttestationError, NotFoundError, UnauthorizedError
from .state import EngineState
from .subscription import Worker


logger = logging.getLogger(__name__)


class WorkerRegistry:
    def __init__(
        self,
        state: EngineState,
        verifier: AttestationVerifier,
        clock: Clock,
        audit: Optional[AuditTrail] = None,
    ):
        self.state = state
        self.verifier = verifier
        self.clock = clock
        self.audit = audit

    def register(
        self,
        principal: str,
        quote: bytes,
        trust_anchor: bytes,
        checksum: str,
        codehash: str,
    ) -> bool:
        """Verify the quote and upsert the caller's worker record.

        Re-registration replaces the previous record outright. Returns False
        without touching state if the verifier rejects the quote or the quote
        attests a different codehash than the one claimed.
        """
        try:
            report = self.verifier.verify(quote, trust_anchor, self.clock.now())
            if report is not None and report.codehash != codehash:
                raise AttestationError(
                    f"Quote attests codehash {report.codehash}, not {codehash}"
                )
        except AttestationError as exc:
            logger.warning("Worker registration failed for %s: %s", principal, exc)
            record(
                self.audit,
                EventType.WORKER_REJECTED,
                principal=principal,
                success=False,
                reason=str(exc),
                details={"codehash": codehash},
            )
            return False

        previous = self.state.workers.get(principal)
        self.state.workers[principal] = Worker(checksum=checksum, codehash=codehash)
        logger.info("Worker registered: %s (codehash: %s)", principal, codehash)
        record(
            self.audit,
            EventType.WORKER_REGISTERED,
            principal=principal,
            details={
                "checksum": checksum,
                "codehash": codehash,
                "replaced_codehash": previous.codehash if previous else None,
            },
        )
        return True

    def get(self, principal: str) -> Worker:
        worker = self.state.workers.get(principal)
        if worker is None:
            raise NotFoundError(f"Worker not found for account: {principal}")
        return worker

    def approve_codehash(self, caller: str, codehash: str) -> None:
        self.state.require_owner(caller)
        if not codehash:
            raise ValueError("codehash is required")
        self.state.approved_codehashes.add(codehash)
        logger.info("Codehash approved: %s", codehash)
        record(self.audit, EventType.CODEHASH_APPROVED, principal=caller, details={"codehash": codehash})

    def is_approved_caller(self, principal: str) -> bool:
        """Whether principal runs approved code; NotFoundError if never registered."""
        return self.get(principal).codehash in self.state.approved_codehashes

    def require_approved(self, principal: str) -> Worker:
        worker = self.get(principal)
        if worker.codehash not in self.state.approved_codehashes:
            raise UnauthorizedError("Not an approved worker")
        return worker

    def require_codehash(self, principal: str, codehash: str) -> Worker:
        worker = self.get(principal)
        if worker.codehash != codehash:
            raise UnauthorizedError("Worker not verified for this codehash")
        return worker
