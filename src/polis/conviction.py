"""Conviction Registry — proposal lifecycle, bounded votes, consensus.

Each proposal moves PENDING -> {APPROVED, REJECTED} exactly once, when the
number of distinct evaluator votes reaches the quorum. Approval uses the
unrounded mean score; a mean exactly at the threshold approves.

Votes on one proposal are serialized by a per-proposal lock; different
proposals never contend.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from polis.constants import (
    CONSENSUS_HISTORY_MAX,
    CONSENSUS_QUORUM,
    CONSENSUS_THRESHOLD,
    SCORE_MAX,
    SCORE_MIN,
)
from polis.errors import UnknownProposal, ValidationError
from polis.models import (
    CandidateSource,
    ConsensusResult,
    Direction,
    PendingStatus,
    Proposal,
    ProposalStatus,
    Vote,
    new_proposal_id,
)
from polis.observability import EventBus, EventType

logger = logging.getLogger(__name__)

VoteOutcome = Union[ConsensusResult, PendingStatus]
ConsensusListener = Callable[[Proposal, ConsensusResult], None]


def clamp_score(raw_score: Any) -> int:
    """Round to int and clamp into [SCORE_MIN, SCORE_MAX]. Non-numeric input is rejected."""
    try:
        value = float(raw_score)
    except (TypeError, ValueError):
        raise ValidationError("score must be numeric, got {!r}".format(raw_score))
    if math.isnan(value):
        raise ValidationError("score must not be NaN")
    if math.isinf(value):
        return SCORE_MAX if value > 0 else SCORE_MIN
    return int(max(SCORE_MIN, min(SCORE_MAX, round(value))))


def build_proposal(data: Mapping[str, Any], known_assets: Optional[FrozenSet[str]] = None) -> Proposal:
    """Validate raw proposal data and build an immutable Proposal.

    Raises ValidationError on the first malformed field.
    """
    question = data.get("question")
    if not isinstance(question, str) or not question.strip():
        raise ValidationError("question must be a non-empty string")

    asset = data.get("asset")
    if not isinstance(asset, str) or not asset.strip():
        raise ValidationError("asset reference is required")
    if known_assets is not None and asset not in known_assets:
        raise ValidationError("asset '{}' is not a known feed".format(asset))

    duration = data.get("duration_minutes")
    if (
        isinstance(duration, bool) or not isinstance(duration, (int, float))
        or not math.isfinite(duration) or duration <= 0
    ):
        raise ValidationError("duration_minutes must be > 0, got {!r}".format(duration))

    strike = data.get("strike")
    if isinstance(strike, bool) or not isinstance(strike, (int, float)) or not strike > 0 or math.isinf(strike):
        raise ValidationError("strike must be a positive number, got {!r}".format(strike))

    try:
        direction = Direction(data.get("direction", Direction.ABOVE))
    except ValueError:
        raise ValidationError("direction must be 'above' or 'below', got {!r}".format(data.get("direction")))

    try:
        source = CandidateSource(data.get("source", CandidateSource.MANUAL))
    except ValueError:
        raise ValidationError("unknown candidate source {!r}".format(data.get("source")))

    confidence = data.get("confidence", 50)
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not math.isfinite(confidence):
        raise ValidationError("confidence must be a finite number, got {!r}".format(confidence))

    current_price = data.get("current_price")
    if current_price is not None and (
        not isinstance(current_price, (int, float)) or not math.isfinite(current_price) or current_price <= 0
    ):
        current_price = None

    return Proposal(
        proposal_id=data.get("proposal_id") or new_proposal_id(),
        question=question.strip(),
        asset=asset,
        strike=float(strike),
        direction=direction,
        duration_minutes=int(math.ceil(duration)),
        category=data.get("category") or "crypto",
        confidence=int(max(0, min(100, round(confidence)))),
        created_at=data.get("created_at"),
        resolution_criteria=data.get("resolution_criteria") or "",
        source=source,
        current_price=float(current_price) if current_price is not None else None,
        proposer=data.get("proposer") or "scout",
    )


class _ProposalEntry:
    """Mutable bookkeeping around one immutable Proposal."""

    def __init__(self, proposal: Proposal) -> None:
        self.proposal = proposal
        self.status = ProposalStatus.PENDING
        self.votes = {}  # type: Dict[str, Vote]
        self.result = None  # type: Optional[ConsensusResult]
        self.lock = threading.Lock()


class ConvictionRegistry:
    """Collects proposals and votes, computes consensus once per proposal."""

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        quorum: int = CONSENSUS_QUORUM,
        threshold: float = CONSENSUS_THRESHOLD,
        known_assets: Optional[Iterable[str]] = None,
    ) -> None:
        if quorum < 1:
            raise ValidationError("quorum must be >= 1")
        self._bus = bus
        self.quorum = quorum
        self.threshold = threshold
        self.known_assets = frozenset(known_assets) if known_assets is not None else None

        self._entries = {}  # type: Dict[str, _ProposalEntry]
        self._entries_lock = threading.Lock()
        self._history = []  # type: List[ConsensusResult]
        self._listeners = []  # type: List[ConsensusListener]

    # ── Proposals ─────────────────────────────────────────────────────────────

    def create_proposal(
        self,
        data: Mapping[str, Any],
        known_assets: Optional[Iterable[str]] = None,
    ) -> Proposal:
        """Validate and register a proposal as PENDING.

        `known_assets` overrides the registry-wide asset set for this call.
        """
        assets = frozenset(known_assets) if known_assets is not None else self.known_assets
        proposal = build_proposal(data, assets)

        with self._entries_lock:
            if proposal.proposal_id in self._entries:
                raise ValidationError("duplicate proposal id: {}".format(proposal.proposal_id))
            self._entries[proposal.proposal_id] = _ProposalEntry(proposal)

        logger.info("Proposal created: %s \"%s\"", proposal.proposal_id, proposal.question[:60])
        if self._bus is not None:
            self._bus.publish(EventType.PROPOSAL_CREATED, proposal.to_dict())
        return proposal

    def _entry(self, proposal_id: str) -> _ProposalEntry:
        entry = self._entries.get(proposal_id)
        if entry is None:
            raise UnknownProposal(proposal_id)
        return entry

    def get_proposal(self, proposal_id: str) -> Proposal:
        return self._entry(proposal_id).proposal

    def get_status(self, proposal_id: str) -> ProposalStatus:
        return self._entry(proposal_id).status

    def get_result(self, proposal_id: str) -> Optional[ConsensusResult]:
        return self._entry(proposal_id).result

    def get_votes(self, proposal_id: str) -> Dict[str, Vote]:
        entry = self._entry(proposal_id)
        with entry.lock:
            return dict(entry.votes)

    # ── Voting ────────────────────────────────────────────────────────────────

    def vote(
        self,
        proposal_id: str,
        evaluator_id: str,
        raw_score: Any,
        rationale: str = "",
    ) -> VoteOutcome:
        """Record a vote; returns the final result once quorum is reached.

        Votes on a finalized proposal are ignored and return the stored result.
        """
        entry = self._entry(proposal_id)
        if not evaluator_id:
            raise ValidationError("evaluator id is required")
        score = clamp_score(raw_score)

        with entry.lock:
            if entry.result is not None:
                logger.debug(
                    "Vote from %s on finalized %s ignored", evaluator_id, proposal_id,
                )
                return entry.result

            replaced = evaluator_id in entry.votes
            entry.votes[evaluator_id] = Vote(proposal_id, evaluator_id, score, rationale)
            total = len(entry.votes)

            if self._bus is not None:
                self._bus.publish(EventType.VOTE_CAST, {
                    "proposal_id": proposal_id,
                    "evaluator": evaluator_id,
                    "score": score,
                    "rationale": rationale,
                    "total_votes": total,
                    "replaced": replaced,
                })

            if total < self.quorum:
                current_avg = sum(v.score for v in entry.votes.values()) / float(total)
                return PendingStatus(proposal_id, total, self.quorum - total, current_avg)

            result = self._finalize(entry)

        for listener in list(self._listeners):
            try:
                listener(entry.proposal, result)
            except Exception as e:
                logger.warning("Consensus listener failed for %s: %s", proposal_id, e)
        return result

    def _finalize(self, entry: _ProposalEntry) -> ConsensusResult:
        """Compute consensus. Caller holds entry.lock."""
        votes = list(entry.votes.values())
        mean = sum(v.score for v in votes) / float(len(votes))
        approved = len(votes) >= self.quorum and mean >= self.threshold

        result = ConsensusResult(
            proposal_id=entry.proposal.proposal_id,
            vote_count=len(votes),
            mean_score=mean,
            approved=approved,
            votes={v.evaluator: {"score": v.score, "rationale": v.rationale} for v in votes},
        )
        entry.result = result
        entry.status = result.status

        self._history.append(result)
        if len(self._history) > CONSENSUS_HISTORY_MAX:
            del self._history[: len(self._history) - CONSENSUS_HISTORY_MAX]

        logger.info(
            "Consensus %s: %s avg=%.1f voters=%d",
            entry.proposal.proposal_id, result.status.value.upper(), result.avg_score, result.vote_count,
        )
        if self._bus is not None:
            payload = result.to_dict()
            payload["question"] = entry.proposal.question
            self._bus.publish(EventType.CONSENSUS_REACHED, payload)
        return result

    def on_consensus(self, listener: ConsensusListener) -> None:
        self._listeners.append(listener)

    # ── Queries ───────────────────────────────────────────────────────────────

    def pending(self) -> List[Proposal]:
        return [e.proposal for e in list(self._entries.values()) if e.status is ProposalStatus.PENDING]

    def history(self, count: int = 20) -> List[ConsensusResult]:
        return self._history[-count:] if count > 0 else []

    @property
    def stats(self) -> Dict[str, Any]:
        by_status = {s.value: 0 for s in ProposalStatus}
        for e in list(self._entries.values()):
            by_status[e.status.value] += 1
        return {
            "total_proposals": len(self._entries),
            "by_status": by_status,
            "quorum": self.quorum,
            "threshold": self.threshold,
        }
