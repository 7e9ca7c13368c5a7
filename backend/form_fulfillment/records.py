"""
Record types for a webhook delivery and the per-batch outcome report.

Incoming payload records use camelCase keys (``serialNumber``, ``qrCodeUrl``
...); they are normalised into `ApplicationRecord` once at the edge.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Union

logger = logging.getLogger(__name__)

NO_PHONE = "Not provided"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def serial_sort_key(value) -> int:
    """Numeric value of a serial number; anything unparseable sorts as 0."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class ApplicationRecord:
    email: str
    phone_number: Optional[str] = None
    serial_number: Optional[str] = None
    qr_code_url: Optional[str] = None
    record_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Mapping) -> "ApplicationRecord":
        return cls(
            email=_text(raw.get("email")) or "",
            phone_number=_text(raw.get("phoneNumber")),
            serial_number=_text(raw.get("serialNumber")),
            qr_code_url=_text(raw.get("qrCodeUrl")),
            record_id=_text(raw.get("recordId")),
        )


def _text(value) -> Optional[str]:
    # JSON numbers (phone numbers, serials) arrive as int/float
    if value is None:
        return None
    return str(value).strip() or None


@dataclass
class ApplicantGroup:
    email: str
    phone_number: str
    records: List[ApplicationRecord] = field(default_factory=list)


def group_by_email(records: Iterable[Union[Mapping, ApplicationRecord]]) -> Dict[str, ApplicantGroup]:
    """
    Partition records by applicant email, keeping first-seen order.

    Records without an email are dropped. The phone number of the first record
    seen for an email is kept; later ones are ignored.
    """
    if not isinstance(records, (list, tuple)):
        logger.error("Expected a list of records, but received: %r", records)
        return {}

    groups: Dict[str, ApplicantGroup] = {}
    for raw in records:
        if isinstance(raw, ApplicationRecord):
            record = raw
        elif isinstance(raw, Mapping):
            record = ApplicationRecord.from_payload(raw)
        else:
            logger.warning("Ignoring malformed record: %r", raw)
            continue

        if not record.email:
            continue

        group = groups.get(record.email)
        if group is None:
            group = ApplicantGroup(email=record.email, phone_number=record.phone_number or NO_PHONE)
            groups[record.email] = group
        group.records.append(record)
    return groups


@dataclass
class SummaryRow:
    serial_number: Optional[str]
    link: Optional[str]


# ----------------------------------------------------------------------
# Outcome report
# ----------------------------------------------------------------------

STAMPED = "stamped"
UPLOADED = "uploaded"
STAMP_FAILED = "stamp_failed"
UPLOAD_FAILED = "upload_failed"


@dataclass
class RecordOutcome:
    record_id: Optional[str]
    serial_number: Optional[str]
    status: str = STAMPED
    pdf_path: Optional[str] = None
    link: Optional[str] = None
    tracker_updated: bool = False
    error: Optional[str] = None

    @property
    def has_document(self) -> bool:
        return self.pdf_path is not None


@dataclass
class GroupOutcome:
    email: str
    records: List[RecordOutcome] = field(default_factory=list)
    merged_pdf: Optional[str] = None
    summary_csv: Optional[str] = None
    email_sent: bool = False
    skipped_reason: Optional[str] = None


@dataclass
class BatchReport:
    batch_id: str
    idempotency_key: str
    record_count: int
    status: str = "queued"
    received_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    runner_id: Optional[str] = None
    groups: List[GroupOutcome] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "BatchReport":
        groups = []
        for g in data.get("groups", []):
            g = dict(g)
            g["records"] = [RecordOutcome(**r) for r in g.get("records", [])]
            groups.append(GroupOutcome(**g))
        fields_ = {k: v for k, v in data.items() if k != "groups"}
        return cls(groups=groups, **fields_)
