"""
Attestation verification for worker admission.

The engine treats verification as an opaque collaborator: given a quote,
the trust anchor it should chain to, and the current time, it either
passes or raises AttestationError.

SignedQuoteVerifier is a local stand-in for hardware quote verification.
A quote is a canonical JSON report body followed by a 64-byte Ed25519
signature; the trust anchor is the PEM-encoded Ed25519 public key of the
quoting authority.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import AttestationError


SIGNATURE_LENGTH = 64
DEFAULT_QUOTE_TTL = 3600


class AttestationVerifier(Protocol):
    """Raises AttestationError on rejection.

    Verifiers whose quotes name the attested codehash return it in a
    QuoteReport; those that cannot return None.
    """

    def verify(self, quote: bytes, trust_anchor: bytes, current_time: int) -> Optional[QuoteReport]: ...


@dataclass
class QuoteReport:
    codehash: str
    issued_at: int
    expires_at: int

    def canonical_bytes(self) -> bytes:
        return json.dumps(
            {
                "codehash": self.codehash,
                "issued_at": self.issued_at,
                "expires_at": self.expires_at,
            },
            sort_keys=True,
            separators=(",", ":"),
        ).encode()


class SignedQuoteVerifier:
    """Verifies Ed25519-signed quotes against a PEM trust anchor."""

    def verify(self, quote: bytes, trust_anchor: bytes, current_time: int) -> QuoteReport:
        report = parse_quote(quote)
        public_key = _load_anchor(trust_anchor)
        body, signature = quote[:-SIGNATURE_LENGTH], quote[-SIGNATURE_LENGTH:]
        try:
            public_key.verify(signature, body)
        except InvalidSignature as exc:
            raise AttestationError("Quote signature does not match trust anchor") from exc
        if current_time < report.issued_at:
            raise AttestationError(f"Quote not valid before {report.issued_at}")
        if current_time > report.expires_at:
            raise AttestationError(f"Quote expired at {report.expires_at}")
        return report


def parse_quote(quote: bytes) -> QuoteReport:
    if len(quote) <= SIGNATURE_LENGTH:
        raise AttestationError("Quote is too short")
    try:
        raw = json.loads(quote[:-SIGNATURE_LENGTH].decode())
        return QuoteReport(
            codehash=str(raw["codehash"]),
            issued_at=int(raw["issued_at"]),
            expires_at=int(raw["expires_at"]),
        )
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        raise AttestationError(f"Malformed quote body: {exc}") from exc


def _load_anchor(trust_anchor: bytes) -> ed25519.Ed25519PublicKey:
    try:
        key = serialization.load_pem_public_key(trust_anchor)
    except ValueError as exc:
        raise AttestationError(f"Invalid trust anchor: {exc}") from exc
    if not isinstance(key, ed25519.Ed25519PublicKey):
        raise AttestationError("Trust anchor must be an Ed25519 public key")
    return key


def issue_quote(
    private_key: ed25519.Ed25519PrivateKey,
    codehash: str,
    issued_at: int,
    ttl: int = DEFAULT_QUOTE_TTL,
) -> bytes:
    """Build a signed quote; the quoting-authority side of SignedQuoteVerifier."""
    report = QuoteReport(codehash=codehash, issued_at=issued_at, expires_at=issued_at + ttl)
    body = report.canonical_bytes()
    return body + private_key.sign(body)


def generate_quoting_key() -> tuple[ed25519.Ed25519PrivateKey, bytes]:
    """New quoting-authority key and its PEM trust anchor."""
    private_key = ed25519.Ed25519PrivateKey.generate()
    anchor = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_key, anchor
