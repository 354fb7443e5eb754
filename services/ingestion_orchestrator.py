"""Batch ingestion of vendor proposal emails.

One run fetches candidate messages, then handles them strictly in mailbox
order: dedupe, correlate, extract, summarise, score, persist. Per-message
failures are recorded on the job and never abort the batch; only a mailbox
failure while fetching is fatal.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from config.settings import settings
from repositories import proposal_repo, solicitation_repo
from services.correlator import resolve_counterparty, resolve_solicitation_id
from services.extraction_client import ExtractionClient, ExtractionError
from services.job_tracker import IngestionJob, JobStatus
from services.mailbox_gateway import MailboxError, MailboxFilter, MailboxGateway, RawMessage
from services.scoring import deterministic_score

logger = logging.getLogger(__name__)

NO_MESSAGES = "No new proposal emails found"
ERROR_NO_SOLICITATION = "no matching solicitation"
ERROR_UNKNOWN_SENDER = "unknown sender"
ERROR_EXTRACTION = "extraction failed"


def completion_message(job: IngestionJob) -> str:
    counters = job.counters()
    return (
        f"Processed {counters['processed']} emails, created {counters['created']} proposals"
        f" ({counters['skipped']} skipped, {len(job.errors)} errors)"
    )


class IngestionOrchestrator:
    def __init__(
        self,
        gateway: MailboxGateway,
        extraction_client: ExtractionClient,
        *,
        mailbox_filter: Optional[MailboxFilter] = None,
        summary_placeholder: Optional[str] = None,
        counterparty_lookup: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.gateway = gateway
        self.extraction_client = extraction_client
        self.mailbox_filter = mailbox_filter or MailboxFilter(
            subject_marker=settings.solicitation_marker
        )
        self.summary_placeholder = summary_placeholder or settings.summary_placeholder
        self._counterparty_lookup = counterparty_lookup

    def run(self, job: Optional[IngestionJob] = None) -> IngestionJob:
        """Execute one ingestion pass, reporting into ``job``."""

        job = job or IngestionJob()
        label = job.id or "blocking"
        logger.info("Ingestion run %s starting", label)

        job.advance(JobStatus.FETCHING_MESSAGES)
        try:
            messages = self.gateway.list_candidates(self.mailbox_filter)
        except MailboxError as exc:
            logger.exception("Ingestion run %s could not read the mailbox", label)
            job.fail(f"Mailbox unavailable: {exc}")
            return job

        job.set_total(len(messages))
        logger.info("Ingestion run %s found %d candidate messages", label, len(messages))
        if not messages:
            job.complete(NO_MESSAGES)
            return job

        job.advance(JobStatus.PROCESSING)
        acknowledged: List[str] = []
        for position, message in enumerate(messages, start=1):
            job.begin_message(position)
            try:
                if self._process(message, job):
                    acknowledged.append(message.transport_id)
            except Exception as exc:
                logger.exception(
                    "Unexpected error processing message %s (%s)",
                    message.external_message_id,
                    message.subject,
                )
                job.record_error(message.subject, str(exc) or exc.__class__.__name__)
            finally:
                job.record_processed()

        self._acknowledge(acknowledged)
        job.complete(completion_message(job))
        logger.info("Ingestion run %s completed: %s", label, job.message)
        return job

    def _process(self, message: RawMessage, job: IngestionJob) -> bool:
        """Handle one message; returns ``True`` when it should be marked read."""

        if proposal_repo.exists_message_id(message.external_message_id):
            logger.debug("Skipping already ingested message %s", message.external_message_id)
            job.record_skipped()
            return True

        solicitation_id = resolve_solicitation_id(
            message.subject, marker=self.mailbox_filter.subject_marker
        )
        solicitation = (
            solicitation_repo.get_solicitation(solicitation_id) if solicitation_id else None
        )
        if solicitation is None:
            logger.warning("No solicitation matches message subject %r", message.subject)
            job.record_error(message.subject, ERROR_NO_SOLICITATION)
            return False

        vendor = resolve_counterparty(message.sender_address, self._counterparty_lookup)
        if vendor is None:
            logger.warning("Message from unknown sender %s", message.sender_address)
            job.record_error(message.subject, ERROR_UNKNOWN_SENDER)
            return False

        body = message.body
        try:
            terms = self.extraction_client.extract_terms(body)
        except ExtractionError as exc:
            logger.warning(
                "Extraction failed for message %s: %s",
                message.external_message_id,
                [attempt.to_dict() for attempt in exc.attempts],
            )
            job.record_error(message.subject, ERROR_EXTRACTION)
            return False

        try:
            summary = self.extraction_client.summarize(terms, body)
        except ExtractionError:
            logger.warning("Summary generation failed for message %s", message.external_message_id)
            summary = self.summary_placeholder

        score = deterministic_score(solicitation.budget, terms.total_price)

        created = proposal_repo.insert_proposal(
            solicitation_id=solicitation.id,
            vendor_id=vendor.id,
            email_message_id=message.external_message_id,
            email_content=body,
            extracted_terms=terms.model_dump(),
            score=score,
            summary=summary,
            received_at=message.timestamp,
        )
        if created is None:
            # a concurrent run stored the same message first
            job.record_skipped()
            return True

        logger.info(
            "Created proposal %s for solicitation %s from %s",
            created.id,
            solicitation.id,
            vendor.email,
        )
        job.record_created()
        return True

    def _acknowledge(self, transport_ids: List[str]) -> None:
        if not transport_ids:
            return
        try:
            result = self.gateway.mark_read(transport_ids)
        except MailboxError:
            logger.exception("Failed to mark %d messages read", len(transport_ids))
            return
        if not result.success:
            logger.warning(
                "Could not mark %d of %d messages read: %s",
                len(result.failed),
                len(result.requested),
                sorted(result.failed),
            )


__all__ = [
    "ERROR_EXTRACTION",
    "ERROR_NO_SOLICITATION",
    "ERROR_UNKNOWN_SENDER",
    "IngestionOrchestrator",
    "NO_MESSAGES",
    "completion_message",
]
