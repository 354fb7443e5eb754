"""Deterministic proposal scoring and the holistic multi-proposal comparison."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from repositories import proposal_repo, solicitation_repo
from services.extraction_client import ExtractionClient
from services.schemas import ComparisonResult, ProposalScore, clamp_score

logger = logging.getLogger(__name__)

BUDGET_PARITY_SCORE = 50.0
SINGLE_PROPOSAL_SCORE = 50.0
NO_PROPOSALS_MESSAGE = "No proposals received yet for this RFP"
SINGLE_PROPOSAL_SUMMARY = (
    "This is the only proposal received. Review the terms carefully before making a decision."
)
SINGLE_PROPOSAL_NOTES = "Single proposal - no comparison available."


class SolicitationNotFound(LookupError):
    def __init__(self, solicitation_id: str) -> None:
        super().__init__(f"Solicitation {solicitation_id} not found")
        self.solicitation_id = solicitation_id


class InvalidScore(ValueError):
    """Raised for manual scores outside ``[0, 100]``."""


def deterministic_score(budget: Optional[float], total_price: Optional[float]) -> Optional[float]:
    """Price-ratio score: meeting the budget exactly scores 50.

    Returns ``None`` when either figure is missing or the price is not
    positive; a missing score means "insufficient data", not zero.
    """

    if budget is None or total_price is None:
        return None
    if total_price <= 0:
        return None
    return clamp_score((budget / total_price) * BUDGET_PARITY_SCORE)


def set_score(proposal_id: str, score: Any) -> proposal_repo.ProposalRow:
    """Manually override a proposal score."""

    if isinstance(score, bool):
        raise InvalidScore("Score must be a number between 0 and 100")
    try:
        value = float(score)
    except (TypeError, ValueError) as exc:
        raise InvalidScore("Score must be a number between 0 and 100") from exc
    if not 0 <= value <= 100:
        raise InvalidScore("Score must be between 0 and 100")

    if not proposal_repo.update_score(proposal_id, value):
        raise LookupError(f"Proposal {proposal_id} not found")
    row = proposal_repo.get_proposal(proposal_id)
    logger.info("Score for proposal %s set to %s", proposal_id, value)
    return row


def _proposal_payload(row: proposal_repo.ProposalRow) -> Dict[str, Any]:
    return {
        "proposalId": row.id,
        "vendorName": row.vendor_name,
        "extractedData": row.extracted_terms,
        "summary": row.summary,
    }


def _single_proposal_result(row: proposal_repo.ProposalRow) -> ComparisonResult:
    score = row.score if row.score is not None else SINGLE_PROPOSAL_SCORE
    return ComparisonResult(
        scores=[
            ProposalScore(
                proposal_id=row.id,
                vendor_name=row.vendor_name,
                score=score,
                strengths=["Only proposal received"],
                weaknesses=["No other proposals to compare"],
            )
        ],
        recommended_proposal_id=row.id,
        recommended_vendor_name=row.vendor_name,
        summary=SINGLE_PROPOSAL_SUMMARY,
        comparison_notes=SINGLE_PROPOSAL_NOTES,
    )


def _reconcile(result: ComparisonResult, rows: List[proposal_repo.ProposalRow]) -> ComparisonResult:
    """Drop scores for unknown proposals and unknown recommendations."""

    known = {row.id: row for row in rows}
    scores: List[ProposalScore] = []
    seen = set()
    for entry in result.scores:
        if entry.proposal_id not in known:
            logger.warning("Comparison returned score for unknown proposal %s", entry.proposal_id)
            continue
        if entry.proposal_id in seen:
            continue
        seen.add(entry.proposal_id)
        if not entry.vendor_name:
            entry = entry.model_copy(update={"vendor_name": known[entry.proposal_id].vendor_name})
        scores.append(entry)

    recommended = result.recommended_proposal_id
    recommended_name = result.recommended_vendor_name
    if recommended is not None and recommended not in known:
        logger.warning("Comparison recommended unknown proposal %s; ignoring", recommended)
        recommended = None
    if recommended is None:
        recommended_name = None
    elif not recommended_name:
        recommended_name = known[recommended].vendor_name

    return result.model_copy(
        update={
            "scores": scores,
            "recommended_proposal_id": recommended,
            "recommended_vendor_name": recommended_name,
        }
    )


def compare_solicitation(
    solicitation_id: str, extraction_client: Optional[ExtractionClient] = None
) -> Dict[str, Any]:
    """Rank every proposal received for ``solicitation_id``.

    Zero proposals produce a "no proposals" message, a single proposal is
    recommended without calling the model, and two or more are compared by
    the extraction capability with the returned scores persisted.
    """

    solicitation = solicitation_repo.get_solicitation(solicitation_id)
    if solicitation is None:
        raise SolicitationNotFound(solicitation_id)

    rows = proposal_repo.list_for_solicitation(solicitation_id)
    base: Dict[str, Any] = {
        "solicitation": solicitation.to_dict(),
        "proposals": [row.to_dict() for row in rows],
    }

    if not rows:
        base["comparison"] = None
        base["message"] = NO_PROPOSALS_MESSAGE
        return base

    if len(rows) == 1:
        base["comparison"] = _single_proposal_result(rows[0]).model_dump()
        return base

    client = extraction_client or ExtractionClient()
    result = client.compare(
        title=solicitation.title,
        budget=solicitation.budget,
        requirements=solicitation.requirements,
        proposals=[_proposal_payload(row) for row in rows],
    )
    result = _reconcile(result, rows)

    updates = [(entry.proposal_id, entry.score) for entry in result.scores if entry.score is not None]
    touched = proposal_repo.update_scores(updates)
    logger.info(
        "Compared %d proposals for solicitation %s; %d scores stored",
        len(rows),
        solicitation_id,
        touched,
    )

    refreshed = proposal_repo.list_for_solicitation(solicitation_id)
    base["proposals"] = [row.to_dict() for row in refreshed]
    base["comparison"] = result.model_dump()
    return base


__all__ = [
    "InvalidScore",
    "SolicitationNotFound",
    "compare_solicitation",
    "deterministic_score",
    "set_score",
]
