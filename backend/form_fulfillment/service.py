"""
High-level service that turns a webhook delivery into applicant emails.

Responsibilities
----------------
* persist each delivery as a batch and de-duplicate repeats
* group records per applicant and stamp one form per record
* upload every stamped form and mark its tracking row
* merge an applicant's forms, build their summary CSV and email both
* keep a per-record / per-applicant outcome report for each batch
"""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .config import Settings
from .jobs import JobStore, idempotency_key_for
from .notifier import Notifier
from .pdf_utils import merge_pdfs, output_filename, stamp_application
from .records import (
    STAMP_FAILED,
    UPLOAD_FAILED,
    UPLOADED,
    ApplicantGroup,
    ApplicationRecord,
    BatchReport,
    GroupOutcome,
    RecordOutcome,
    SummaryRow,
    group_by_email,
    serial_sort_key,
    utc_now,
)
from .storage import StorageUploader
from .summary import generate_summaries, safe_dirname
from .tracker import TrackerClient

logger = logging.getLogger(__name__)

MERGED_FILENAME = "merged_output.pdf"


class FulfillmentError(RuntimeError):
    """Domain-specific exception for service errors."""


class FulfillmentService:
    def __init__(
        self,
        settings: Settings,
        uploader: StorageUploader,
        tracker: TrackerClient,
        notifier: Notifier,
        jobs: Optional[JobStore] = None,
        stamp: Callable[..., Optional[Path]] = stamp_application,
    ):
        self.settings = settings
        self.uploader = uploader
        self.tracker = tracker
        self.notifier = notifier
        self.jobs = jobs or JobStore(settings.jobs_dir, cache_ttl=settings.batch_cache_ttl)
        self.stamp = stamp

        self.work_root = Path(settings.work_root)
        self.work_root.mkdir(parents=True, exist_ok=True)

        if not Path(settings.template_path).exists():
            logger.warning("PDF template %s not found; stamping will fail until it exists", settings.template_path)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FulfillmentService":
        uploader = StorageUploader(
            settings.storage_bucket,
            folder=settings.storage_folder,
            region=settings.aws_region,
            public_base_url=settings.storage_public_base_url,
            public_acl=settings.storage_public_acl,
        )
        tracker = TrackerClient(
            settings.tracker_base_id,
            settings.tracker_table_name,
            settings.tracker_token,
            api_url=settings.tracker_api_url,
            link_field=settings.tracker_link_field,
            status_field=settings.tracker_status_field,
            status_label=settings.tracker_status_label,
            requests_per_second=settings.tracker_requests_per_second,
            max_retries=settings.tracker_max_retries,
        )
        notifier = Notifier(
            settings.smtp_host,
            settings.smtp_port,
            settings.email_user,
            settings.email_password,
            subject=settings.email_subject,
            body_template=settings.email_body,
            sender_name=settings.sender_name,
            sender_team=settings.sender_team,
            applicants_champion=settings.applicants_champion,
            applicants_label=settings.applicants_label,
            email_domain=settings.email_domain,
        )
        return cls(settings, uploader, tracker, notifier)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    def submit(self, payload: Dict, idempotency_key: Optional[str] = None) -> Tuple[BatchReport, bool]:
        key = idempotency_key_for(payload, idempotency_key)
        return self.jobs.create(payload, key)

    def get_batch(self, batch_id: str) -> BatchReport:
        report = self.jobs.get(batch_id)
        if report is None:
            raise FulfillmentError(f"Unknown batch '{batch_id}'")
        return report

    def run_batch(self, batch_id: str, runner_id: Optional[str] = None) -> BatchReport:
        """
        Process a queued batch to completion.

        Only the runner that claims the batch does any work; every other caller
        (a duplicate task, a second worker) gets the current report back.
        """
        runner_id = runner_id or uuid.uuid4().hex
        report = self.jobs.claim(batch_id, runner_id)
        if report is None:
            current = self.get_batch(batch_id)
            logger.info("Batch %s is %s; not processing it again", batch_id, current.status)
            return current

        payload = self.jobs.load_payload(batch_id)
        batch_dir = self.work_root / batch_id

        try:
            report.groups = self.process_records(payload.get("records"), batch_dir)
            report.status = "completed"
        except Exception as exc:
            logger.error("Batch %s failed: %s", batch_id, exc, exc_info=True)
            report.status = "failed"
            report.error = str(exc)
        finally:
            report.finished_at = utc_now()
            self.jobs.save(report)
            if not self.settings.keep_work_files:
                shutil.rmtree(batch_dir, ignore_errors=True)

        logger.info("Batch %s %s (%d applicants)", batch_id, report.status, len(report.groups))
        return report

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def process_records(self, records, batch_dir: Path) -> List[GroupOutcome]:
        groups = group_by_email(records)
        outcomes = []
        for group in groups.values():
            try:
                outcomes.append(self.process_group(group, batch_dir))
            except Exception as exc:
                logger.error("Error processing applicant %s: %s", group.email, exc, exc_info=True)
                outcomes.append(GroupOutcome(email=group.email, skipped_reason=f"processing failed: {exc}"))
        return outcomes

    def process_group(self, group: ApplicantGroup, batch_dir: Path) -> GroupOutcome:
        outcome = GroupOutcome(email=group.email)
        group_dir = Path(batch_dir) / safe_dirname(group.email)

        for record in group.records:
            try:
                outcome.records.append(self.process_record(record, group_dir))
            except Exception as exc:
                logger.error("Error processing record for %s: %s", group.email, exc, exc_info=True)
                outcome.records.append(RecordOutcome(
                    record_id=record.record_id,
                    serial_number=record.serial_number,
                    status=STAMP_FAILED,
                    error=str(exc),
                ))

        documents = [r for r in outcome.records if r.has_document]
        if not documents:
            logger.warning("Skipping email %s - No valid PDFs generated.", group.email)
            outcome.skipped_reason = "no valid PDFs generated"
            return outcome

        documents.sort(key=lambda r: serial_sort_key(r.serial_number))
        merged = merge_pdfs(
            [r.pdf_path for r in documents],
            group_dir / MERGED_FILENAME,
            prefix=self.settings.output_prefix,
        )
        outcome.merged_pdf = str(merged)

        rows = [SummaryRow(serial_number=r.serial_number, link=r.link) for r in documents]
        csv_path = generate_summaries({group.email: rows}, batch_dir).get(group.email)
        if csv_path is None:
            logger.error("Skipping email %s due to CSV generation failure.", group.email)
            outcome.skipped_reason = "summary generation failed"
            return outcome
        outcome.summary_csv = str(csv_path)

        outcome.email_sent = self.notifier.send(group.email, merged, csv_path, group.phone_number)
        return outcome

    def process_record(self, record: ApplicationRecord, group_dir: Path) -> RecordOutcome:
        outcome = RecordOutcome(record_id=record.record_id, serial_number=record.serial_number)

        pdf_path = None
        if record.serial_number and record.qr_code_url:
            pdf_path = self.stamp(
                record.serial_number,
                record.qr_code_url,
                self.settings.template_path,
                group_dir,
                prefix=self.settings.output_prefix,
            )
        if pdf_path is None:
            outcome.status = STAMP_FAILED
            outcome.error = "could not stamp application form"
            return outcome
        outcome.pdf_path = str(pdf_path)

        link = self.uploader.upload(pdf_path, output_filename(record.serial_number, self.settings.output_prefix))
        if link is None:
            outcome.status = UPLOAD_FAILED
            outcome.error = "upload failed"
            return outcome
        outcome.link = link
        outcome.status = UPLOADED

        outcome.tracker_updated = self.tracker.update_record(record.record_id, link)
        return outcome
