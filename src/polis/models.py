"""Core records: proposals, votes, consensus results and the closed enums
that tag them.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional


class Direction(str, Enum):
    """Resolution direction of a market relative to its strike."""

    ABOVE = "above"  # YES iff settlement >= strike
    BELOW = "below"  # YES iff settlement < strike

    def is_yes(self, settlement_price: float, strike: float) -> bool:
        if self is Direction.ABOVE:
            return settlement_price >= strike
        return settlement_price < strike


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Outcome(str, Enum):
    UNRESOLVED = "unresolved"
    YES = "yes"
    NO = "no"
    INVALID = "invalid"


class Side(str, Enum):
    YES = "yes"
    NO = "no"


class CandidateSource(str, Enum):
    PRICE_ANALYSIS = "price_analysis"
    VOLATILITY_DETECTION = "volatility_detection"
    SYNTHETIC_GENERATION = "synthetic_generation"
    MANUAL = "manual"


class EvaluatorKind(str, Enum):
    FEASIBILITY = "feasibility"
    DATA_CONFIDENCE = "data_confidence"
    LIQUIDITY_VIABILITY = "liquidity_viability"
    RISK = "risk"


def new_proposal_id() -> str:
    return "prop_{}".format(uuid.uuid4().hex)


class Proposal:
    """Immutable market proposal."""

    __slots__ = (
        "proposal_id",
        "question",
        "asset",
        "strike",
        "direction",
        "duration_minutes",
        "category",
        "confidence",
        "created_at",
        "resolution_criteria",
        "source",
        "current_price",
        "proposer",
    )

    def __init__(
        self,
        proposal_id: str,
        question: str,
        asset: str,
        strike: float,
        direction: Direction,
        duration_minutes: int,
        category: str = "crypto",
        confidence: int = 50,
        created_at: Optional[float] = None,
        resolution_criteria: str = "",
        source: CandidateSource = CandidateSource.MANUAL,
        current_price: Optional[float] = None,
        proposer: str = "scout",
    ) -> None:
        values = {
            "proposal_id": proposal_id,
            "question": question,
            "asset": asset,
            "strike": strike,
            "direction": direction,
            "duration_minutes": duration_minutes,
            "category": category,
            "confidence": confidence,
            "created_at": created_at if created_at is not None else time.time(),
            "resolution_criteria": resolution_criteria,
            "source": source,
            "current_price": current_price,
            "proposer": proposer,
        }
        for name, value in values.items():
            object.__setattr__(self, name, value)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Proposal is immutable (tried to set {})".format(name))

    def __repr__(self) -> str:
        return "Proposal(id={}, asset={}, strike={}, direction={}, duration={}m)".format(
            self.proposal_id, self.asset, self.strike, self.direction.value, self.duration_minutes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "question": self.question,
            "asset": self.asset,
            "strike": self.strike,
            "direction": self.direction.value,
            "duration_minutes": self.duration_minutes,
            "category": self.category,
            "confidence": self.confidence,
            "created_at": self.created_at,
            "resolution_criteria": self.resolution_criteria,
            "source": self.source.value,
            "current_price": self.current_price,
            "proposer": self.proposer,
        }


class Vote:
    """One evaluator's conviction score on one proposal."""

    def __init__(
        self,
        proposal_id: str,
        evaluator: str,
        score: int,
        rationale: str,
        timestamp: Optional[float] = None,
    ) -> None:
        self.proposal_id = proposal_id
        self.evaluator = evaluator
        self.score = score
        self.rationale = rationale
        self.timestamp = timestamp if timestamp is not None else time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluator": self.evaluator,
            "score": self.score,
            "rationale": self.rationale,
            "timestamp": self.timestamp,
        }


class PendingStatus:
    """Returned by a vote that has not yet reached quorum."""

    status = ProposalStatus.PENDING

    def __init__(
        self,
        proposal_id: str,
        votes_received: int,
        votes_needed: int,
        current_avg: float,
    ) -> None:
        self.proposal_id = proposal_id
        self.votes_received = votes_received
        self.votes_needed = votes_needed
        self.current_avg = current_avg

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "status": self.status.value,
            "votes_received": self.votes_received,
            "votes_needed": self.votes_needed,
            "current_avg": self.current_avg,
        }


class ConsensusResult:
    """Final, immutable consensus for a proposal."""

    __slots__ = (
        "proposal_id",
        "vote_count",
        "mean_score",
        "approved",
        "votes",
        "decided_at",
    )

    def __init__(
        self,
        proposal_id: str,
        vote_count: int,
        mean_score: float,
        approved: bool,
        votes: Dict[str, Dict[str, Any]],
        decided_at: Optional[float] = None,
    ) -> None:
        object.__setattr__(self, "proposal_id", proposal_id)
        object.__setattr__(self, "vote_count", vote_count)
        object.__setattr__(self, "mean_score", mean_score)
        object.__setattr__(self, "approved", approved)
        object.__setattr__(self, "votes", dict(votes))
        object.__setattr__(self, "decided_at", decided_at if decided_at is not None else time.time())

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("ConsensusResult is immutable (tried to set {})".format(name))

    @property
    def status(self) -> ProposalStatus:
        return ProposalStatus.APPROVED if self.approved else ProposalStatus.REJECTED

    @property
    def avg_score(self) -> float:
        """Mean rounded to one decimal, for reporting only."""
        return round(self.mean_score, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "status": self.status.value,
            "vote_count": self.vote_count,
            "avg_score": self.avg_score,
            "approved": self.approved,
            "votes": dict(self.votes),
            "decided_at": self.decided_at,
        }
