"""
Transfer executors.

The engine decides that a transfer is authorized; an executor moves the
value. Accepting the instruction is all the engine waits for. Settlement
happens later and is not observed here.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

from .errors import TransferError


logger = logging.getLogger(__name__)


@dataclass
class TransferInstruction:
    payee: str
    amount: int
    token_id: Optional[str] = None
    memo: Optional[str] = None
    transfer_id: str = ""

    def to_dict(self) -> dict:
        d = {"payee": self.payee, "amount": str(self.amount)}
        if self.token_id is not None:
            d["token_id"] = self.token_id
        if self.memo is not None:
            d["memo"] = self.memo
        return d


@dataclass
class RecordingTransferExecutor:
    """Dry-run executor: records instructions instead of moving value."""

    instructions: list[TransferInstruction] = field(default_factory=list)

    def transfer(self, payee: str, amount: int) -> str:
        return self._record(TransferInstruction(payee=payee, amount=amount))

    def token_transfer(self, token_id: str, payee: str, amount: int, memo: str) -> str:
        return self._record(TransferInstruction(payee=payee, amount=amount, token_id=token_id, memo=memo))

    def _record(self, instruction: TransferInstruction) -> str:
        seed = f"{len(self.instructions)}:{instruction.payee}:{instruction.amount}:{time.time()}"
        instruction.transfer_id = f"dry-run-{hashlib.sha256(seed.encode()).hexdigest()[:12]}"
        self.instructions.append(instruction)
        logger.info(
            "Dry-run transfer %s: %d to %s%s",
            instruction.transfer_id,
            instruction.amount,
            instruction.payee,
            f" (token {instruction.token_id})" if instruction.token_id else "",
        )
        return instruction.transfer_id


class HttpTransferExecutor:
    """Posts transfer instructions to a settlement service.

    Any 2xx response counts as accepted. The service's `transfer_id`
    field, if present, is returned as the transfer reference.
    """

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def transfer(self, payee: str, amount: int) -> Optional[str]:
        return self._post("/transfers/native", TransferInstruction(payee=payee, amount=amount))

    def token_transfer(self, token_id: str, payee: str, amount: int, memo: str) -> Optional[str]:
        return self._post(
            "/transfers/token",
            TransferInstruction(payee=payee, amount=amount, token_id=token_id, memo=memo),
        )

    def _post(self, path: str, instruction: TransferInstruction) -> Optional[str]:
        url = f"{self.endpoint}{path}"
        try:
            response = self._client.post(url, json=instruction.to_dict())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransferError(
                f"Transfer rejected ({exc.response.status_code}): {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransferError(f"Transfer request failed: {type(exc).__name__}: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        transfer_id = body.get("transfer_id") if isinstance(body, dict) else None
        logger.info("Transfer accepted by %s: %s", url, transfer_id)
        return transfer_id

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpTransferExecutor:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
