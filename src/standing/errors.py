"""
Standing error types.

Fatal preconditions (authorization, missing entities, illegal lifecycle
transitions) are raised as typed exceptions and abort the call.
Routine payment rejections are never raised; they come back as an
unsuccessful PaymentResult (see payment.py).
"""


class StandingError(Exception):
    """Base error for all Standing operations."""
    pass


# Authorization errors
class UnauthorizedError(StandingError):
    """Caller lacks standing for the operation (wrong owner, payer or worker)."""
    pass


class InvalidMerchantError(UnauthorizedError):
    """Merchant is not in the registered merchant set."""
    def __init__(self, merchant_id: str):
        self.merchant_id = merchant_id
        super().__init__(f"Merchant not registered: {merchant_id}")


# Lookup errors
class NotFoundError(StandingError):
    """Referenced entity (subscription, worker) does not exist."""
    pass


# Lifecycle errors
class InvalidStateError(StandingError):
    """Operation is illegal in the subscription's current status."""
    def __init__(self, message: str, status: str | None = None):
        self.status = status
        super().__init__(message)


# Worker admission errors
class AttestationError(StandingError):
    """Attestation verifier rejected the quote."""
    pass


# Collaborator errors
class TransferError(StandingError):
    """Transfer executor did not accept the dispatch."""
    pass
