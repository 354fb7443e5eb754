import sys
import threading
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import FakeGateway, ScriptedLLM, make_message, proposal_responder
from repositories import proposal_repo, solicitation_repo, vendor_repo
from services.extraction_client import ExtractionClient
from services.ingestion_orchestrator import (
    ERROR_EXTRACTION,
    ERROR_NO_SOLICITATION,
    ERROR_UNKNOWN_SENDER,
    NO_MESSAGES,
    IngestionOrchestrator,
)
from services.job_tracker import JobStatus
from services.mailbox_gateway import MailboxConnectionError, MailboxGateway

PLACEHOLDER = "Unable to generate summary."


@pytest.fixture
def records(database):
    solicitation = solicitation_repo.create_solicitation(title="Laptops", budget=150000)
    vendor = vendor_repo.create_vendor(name="Acme", email="Sales@Acme.example")
    return solicitation, vendor


def _orchestrator(gateway, responder=None, models=("m1",)):
    llm = ScriptedLLM(responder or proposal_responder())
    client = ExtractionClient(models=list(models), client=llm)
    return IngestionOrchestrator(gateway, client, summary_placeholder=PLACEHOLDER), llm


def test_creates_proposal_with_deterministic_score(records):
    solicitation, vendor = records
    gateway = FakeGateway([make_message("1", f"Re: RFP: {solicitation.id}", sender="SALES@acme.example")])
    orchestrator, _ = _orchestrator(gateway)

    job = orchestrator.run()

    assert job.status is JobStatus.COMPLETED
    assert job.counters() == {"seen": 1, "processed": 1, "created": 1, "skipped": 0}
    assert job.message.startswith("Processed 1 emails, created 1 proposals")
    assert gateway.marked == [["1"]]

    [row] = proposal_repo.list_for_solicitation(solicitation.id)
    assert row.vendor_id == vendor.id
    assert row.score == 75
    assert row.summary == "Vendor offers the full scope within budget."
    assert row.extracted_terms["total_price"] == 100000


def test_second_run_is_idempotent(records):
    solicitation, _ = records
    gateway = FakeGateway([make_message("1", f"RFP: {solicitation.id}")])
    orchestrator, llm = _orchestrator(gateway)

    orchestrator.run()
    calls_after_first = len(llm.calls)
    second = orchestrator.run()

    assert second.counters()["created"] == 0
    assert second.counters()["skipped"] == 1
    assert len(llm.calls) == calls_after_first
    assert gateway.marked[-1] == ["1"]
    assert len(proposal_repo.list_for_solicitation(solicitation.id)) == 1


def test_per_message_errors_do_not_abort_batch(records):
    solicitation, _ = records
    messages = [
        make_message("1", "Our proposal for your laptops"),
        make_message("2", f"RFP: {solicitation.id}", sender="stranger@elsewhere.example"),
        make_message("3", f"RFP: {solicitation.id}", body="FAIL"),
        make_message("4", f"RFP: {solicitation.id}"),
    ]

    def respond(model, prompt, json_mode):
        if json_mode and "FAIL" in prompt:
            return "not json"
        return proposal_responder()(model, prompt, json_mode)

    gateway = FakeGateway(messages)
    orchestrator, _ = _orchestrator(gateway, respond)

    job = orchestrator.run()

    assert job.status is JobStatus.COMPLETED
    assert job.errors == [
        {"subject": "Our proposal for your laptops", "error": ERROR_NO_SOLICITATION},
        {"subject": f"RFP: {solicitation.id}", "error": ERROR_UNKNOWN_SENDER},
        {"subject": f"RFP: {solicitation.id}", "error": ERROR_EXTRACTION},
    ]
    assert job.counters() == {"seen": 4, "processed": 4, "created": 1, "skipped": 0}
    assert gateway.marked == [["4"]]


def test_unknown_solicitation_id_is_an_item_error(records):
    gateway = FakeGateway([make_message("1", "RFP: 00000000-0000-0000-0000-000000000000")])
    orchestrator, _ = _orchestrator(gateway)

    job = orchestrator.run()

    assert job.errors[0]["error"] == ERROR_NO_SOLICITATION
    assert gateway.marked == []


def test_summary_failure_uses_placeholder(records):
    solicitation, _ = records

    def respond(model, prompt, json_mode):
        if not json_mode:
            raise RuntimeError("summary model offline")
        return proposal_responder()(model, prompt, json_mode)

    gateway = FakeGateway([make_message("1", f"RFP: {solicitation.id}")])
    orchestrator, _ = _orchestrator(gateway, respond)

    job = orchestrator.run()

    assert job.counters()["created"] == 1
    [row] = proposal_repo.list_for_solicitation(solicitation.id)
    assert row.summary == PLACEHOLDER


def test_missing_budget_leaves_score_unset(database):
    solicitation = solicitation_repo.create_solicitation(title="Chairs")
    vendor_repo.create_vendor(name="Acme", email="sales@acme.example")
    gateway = FakeGateway([make_message("1", f"RFP: {solicitation.id}")])
    orchestrator, _ = _orchestrator(gateway)

    orchestrator.run()

    [row] = proposal_repo.list_for_solicitation(solicitation.id)
    assert row.score is None


def test_empty_mailbox_completes_immediately(database):
    gateway = FakeGateway([])
    orchestrator, llm = _orchestrator(gateway)

    job = orchestrator.run()

    assert job.status is JobStatus.COMPLETED
    assert job.message == NO_MESSAGES
    assert gateway.marked == []
    assert llm.calls == []


def test_mailbox_failure_fails_the_run(database):
    class BrokenGateway(MailboxGateway):
        def list_candidates(self, mailbox_filter):
            raise MailboxConnectionError("authentication failed")

        def mark_read(self, transport_ids):
            raise AssertionError("nothing to mark")

    orchestrator, _ = _orchestrator(BrokenGateway())

    job = orchestrator.run()

    assert job.status is JobStatus.FAILED
    assert "authentication failed" in job.message


def test_partial_mark_read_failure_keeps_created_rows(records):
    solicitation, _ = records
    gateway = FakeGateway(
        [
            make_message("1", f"RFP: {solicitation.id}"),
            make_message("2", f"RFP: {solicitation.id}"),
        ],
        fail_ids={"2"},
    )
    orchestrator, _ = _orchestrator(gateway)

    job = orchestrator.run()

    assert job.status is JobStatus.COMPLETED
    assert job.counters()["created"] == 2
    assert len(proposal_repo.list_for_solicitation(solicitation.id)) == 2


def test_concurrent_runs_create_one_proposal(records):
    solicitation, _ = records
    barrier = threading.Barrier(2, timeout=10)
    base = proposal_responder()

    def respond(model, prompt, json_mode):
        if json_mode:
            # both runs have passed the duplicate pre-check before either writes
            barrier.wait()
        return base(model, prompt, json_mode)

    jobs = []

    def run():
        gateway = FakeGateway([make_message("1", f"RFP: {solicitation.id}", message_id="<shared@acme>")])
        orchestrator, _ = _orchestrator(gateway, respond)
        jobs.append(orchestrator.run())

    threads = [threading.Thread(target=run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(proposal_repo.list_for_solicitation(solicitation.id)) == 1
    assert sorted(job.counters()["created"] for job in jobs) == [0, 1]
    assert sorted(job.counters()["skipped"] for job in jobs) == [0, 1]
