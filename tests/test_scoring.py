import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import ScriptedLLM
from repositories import proposal_repo, solicitation_repo, vendor_repo
from services.extraction_client import ExtractionClient
from services.scoring import (
    InvalidScore,
    NO_PROPOSALS_MESSAGE,
    SolicitationNotFound,
    compare_solicitation,
    deterministic_score,
    set_score,
)


def test_deterministic_score_examples():
    assert deterministic_score(150000, 100000) == 75
    assert deterministic_score(100, 1000) == 5


def test_deterministic_score_is_clamped():
    assert deterministic_score(1000, 1) == 100


def test_missing_data_leaves_score_unset():
    assert deterministic_score(None, 1000) is None
    assert deterministic_score(1000, None) is None
    assert deterministic_score(1000, 0) is None


def _seed(count):
    solicitation = solicitation_repo.create_solicitation(title="Laptops", budget=50000)
    received = datetime(2024, 5, 1, tzinfo=timezone.utc)
    rows = []
    for index in range(count):
        vendor = vendor_repo.create_vendor(name=f"Vendor {index}", email=f"v{index}@example.com")
        rows.append(
            proposal_repo.insert_proposal(
                solicitation_id=solicitation.id,
                vendor_id=vendor.id,
                email_message_id=f"msg-{index}",
                email_content="body",
                extracted_terms={"total_price": 40000 + index},
                score=None,
                summary="summary",
                received_at=received + timedelta(minutes=index),
            )
        )
    return solicitation, rows


def _never_called():
    def respond(model, prompt, json_mode):
        raise AssertionError("comparison model must not be called")

    llm = ScriptedLLM(respond)
    return llm, ExtractionClient(models=["m"], client=llm)


def test_compare_unknown_solicitation(database):
    _, client = _never_called()
    with pytest.raises(SolicitationNotFound):
        compare_solicitation("missing", client)


def test_compare_without_proposals(database):
    solicitation, _ = _seed(0)
    llm, client = _never_called()

    result = compare_solicitation(solicitation.id, client)

    assert result["comparison"] is None
    assert result["message"] == NO_PROPOSALS_MESSAGE
    assert llm.calls == []


def test_single_proposal_is_recommended_without_model(database):
    solicitation, rows = _seed(1)
    llm, client = _never_called()

    result = compare_solicitation(solicitation.id, client)

    comparison = result["comparison"]
    assert comparison["recommended_proposal_id"] == rows[0].id
    assert comparison["recommended_vendor_name"] == "Vendor 0"
    assert comparison["scores"][0]["score"] == 50
    assert comparison["comparison_notes"] == "Single proposal - no comparison available."
    assert llm.calls == []


def test_multiple_proposals_persist_clamped_scores(database):
    solicitation, rows = _seed(2)
    payload = {
        "scores": [
            {"proposalId": rows[0].id, "vendorName": "Vendor 0", "score": 140},
            {"proposalId": rows[1].id, "vendorName": "Vendor 1", "score": -3},
            {"proposalId": "not-a-proposal", "score": 99},
        ],
        "recommendedProposalId": rows[0].id,
        "summary": "Vendor 0 wins.",
    }
    llm = ScriptedLLM(lambda model, prompt, json_mode: json.dumps(payload))
    client = ExtractionClient(models=["m"], client=llm)

    result = compare_solicitation(solicitation.id, client)

    assert len(llm.calls) == 1
    assert result["comparison"]["recommended_proposal_id"] == rows[0].id
    assert result["comparison"]["recommended_vendor_name"] == "Vendor 0"
    assert [entry["proposal_id"] for entry in result["comparison"]["scores"]] == [rows[0].id, rows[1].id]
    assert proposal_repo.get_proposal(rows[0].id).score == 100
    assert proposal_repo.get_proposal(rows[1].id).score == 0


def test_unknown_recommendation_is_dropped(database):
    solicitation, rows = _seed(2)
    payload = {
        "scores": [{"proposalId": rows[1].id, "score": 70}],
        "recommendedProposalId": "someone-else",
        "recommendedVendorName": "Ghost Ltd",
    }
    llm = ScriptedLLM(lambda model, prompt, json_mode: json.dumps(payload))

    result = compare_solicitation(solicitation.id, ExtractionClient(models=["m"], client=llm))

    assert result["comparison"]["recommended_proposal_id"] is None
    assert result["comparison"]["recommended_vendor_name"] is None
    assert proposal_repo.get_proposal(rows[1].id).score == 70
    assert proposal_repo.get_proposal(rows[0].id).score is None


def test_set_score_validates_range(database):
    _, rows = _seed(1)

    assert set_score(rows[0].id, 88).score == 88
    with pytest.raises(InvalidScore):
        set_score(rows[0].id, 101)
    with pytest.raises(InvalidScore):
        set_score(rows[0].id, "high")
    with pytest.raises(LookupError):
        set_score("missing", 10)
