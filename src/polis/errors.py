"""Error taxonomy shared by the registry, ledger and scheduler.

ValidationError  -- malformed input rejected at the boundary
StateError       -- operation on a finalized / expired / resolved entity
InsufficientResource -- pool exhaustion, nothing to redeem
ExternalFailure  -- oracle / settlement collaborator failed (recoverable)
"""

from __future__ import annotations


class PolisError(Exception):
    """Base class for all POLIS errors."""


class ValidationError(PolisError):
    """Raised when proposal, vote or trade inputs are malformed."""


class UnknownProposal(ValidationError):
    """Raised when a vote references a proposal id that was never created."""

    def __init__(self, proposal_id: str) -> None:
        super().__init__("Unknown proposal: {}".format(proposal_id))
        self.proposal_id = proposal_id


class UnknownMarket(ValidationError):
    """Raised when a ledger operation references a market that does not exist."""

    def __init__(self, market_id: str) -> None:
        super().__init__("Unknown market: {}".format(market_id))
        self.market_id = market_id


class SlippageExceeded(ValidationError):
    """Raised when a trade result falls below the caller's minimum."""

    def __init__(self, got: int, minimum: int) -> None:
        super().__init__("Slippage exceeded: got {} < minimum {}".format(got, minimum))
        self.got = got
        self.minimum = minimum


class StateError(PolisError):
    """Raised when an entity is in the wrong lifecycle state."""


class MarketInactive(StateError):
    """Raised when trading a market that is resolved or past expiry."""


class InsufficientResource(PolisError):
    """Raised when the requested amount cannot be served."""


class InsufficientPool(InsufficientResource):
    """Raised when a trade would not leave both AMM pools positive."""


class NothingToRedeem(InsufficientResource):
    """Raised when a holder's redemption computes to zero."""


class ExternalFailure(PolisError):
    """Raised by oracle / settlement adapters on network or timeout failure."""
