"""
Delegated subscription keys.

A payer never hands its own credential to a worker. Instead it registers
a single-purpose key against one subscription; whoever holds that key may
trigger payment for that subscription and nothing else.

Keys are secp256k1 accounts (eth-account). The registered public-key
string is the key's checksum address.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from .audit import AuditTrail, EventType, record
from .errors import UnauthorizedError
from .ledger import SubscriptionLedger
from .state import EngineState
from .storage import ensure_private_dir, ensure_private_file


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegatedKey:
    private_key: str
    public_key: str

    def __repr__(self) -> str:
        return f"DelegatedKey(public_key={self.public_key!r})"


class KeyAuthorizationMap:
    """public key -> subscription id; the only gate on payment execution."""

    def __init__(
        self,
        state: EngineState,
        ledger: SubscriptionLedger,
        audit: Optional[AuditTrail] = None,
    ):
        self.state = state
        self.ledger = ledger
        self.audit = audit

    def register(self, payer: str, public_key: str, subscription_id: str) -> None:
        """Bind public_key to subscription_id, replacing any earlier binding of that key."""
        if not public_key:
            raise ValueError("public_key is required")
        subscription = self.ledger.require(subscription_id)
        if subscription.user_id != payer:
            raise UnauthorizedError("Not authorized to register key for this subscription")

        previous = self.state.subscription_keys.get(public_key)
        self.state.subscription_keys[public_key] = subscription_id
        logger.info("Key registered for subscription: %s", subscription_id)
        record(
            self.audit,
            EventType.KEY_REGISTERED,
            subscription_id=subscription_id,
            principal=payer,
            details={"public_key": public_key, "replaced_binding": previous},
        )

    def resolve(self, public_key: Optional[str]) -> Optional[str]:
        if not public_key:
            return None
        return self.state.subscription_keys.get(public_key)

    def keys_for(self, subscription_id: str) -> list[str]:
        return [k for k, sid in self.state.subscription_keys.items() if sid == subscription_id]


def generate_delegated_key() -> DelegatedKey:
    account = Account.create()
    return DelegatedKey(private_key=_hex_key(account.key), public_key=account.address)


def delegated_key_from_private(private_key: str) -> DelegatedKey:
    account = Account.from_key(private_key.strip())
    return DelegatedKey(private_key=_hex_key(account.key), public_key=account.address)


def save_delegated_key(key: DelegatedKey, path: Path) -> Path:
    ensure_private_dir(path.parent)
    ensure_private_file(path)
    path.write_text(key.private_key + "\n")
    return path


def load_delegated_key(path: Path) -> DelegatedKey:
    return delegated_key_from_private(path.read_text())


def _request_message(subscription_id: str, timestamp: int):
    return encode_defunct(text=f"standing:process_payment:{subscription_id}:{timestamp}")


def sign_payment_request(key: DelegatedKey, subscription_id: str, timestamp: int) -> str:
    """Signature a host can use to authenticate which key made a payment call."""
    signed = Account.sign_message(_request_message(subscription_id, timestamp), private_key=key.private_key)
    return _hex_key(signed.signature)


def recover_request_key(
    subscription_id: str,
    timestamp: int,
    signature: str,
    now: Optional[int] = None,
    max_skew: int = 300,
) -> str:
    """Public key that signed a payment request; rejects stale timestamps when now is given."""
    if now is not None and abs(now - timestamp) > max_skew:
        raise UnauthorizedError("Payment request timestamp outside allowed window")
    return Account.recover_message(_request_message(subscription_id, timestamp), signature=signature)


def _hex_key(raw: bytes) -> str:
    value = raw.hex()
    return value if value.startswith("0x") else "0x" + value
