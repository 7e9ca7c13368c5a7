"""
Environment-driven settings for the fulfillment service.

Values are read from `.env.local` (if present) and then `.env`, so local
overrides win over shared defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_TEMPLATE_FILE = "KCPE-Hatua-Network-Secondary-Application-_-2024.pdf"


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    webhook_api_key: str = ""

    template_path: Path = Path(DEFAULT_TEMPLATE_FILE)
    output_prefix: str = "Hatua_Application_"

    storage_bucket: str = ""
    storage_folder: str = "applications/"
    storage_public_base_url: Optional[str] = None
    storage_public_acl: Optional[bool] = None
    aws_region: str = "eu-central-1"

    tracker_api_url: str = "https://api.airtable.com/v0"
    tracker_base_id: str = ""
    tracker_table_name: str = ""
    tracker_token: str = ""
    tracker_link_field: str = "Application Form PDF"
    tracker_status_field: str = "Status"
    tracker_status_label: str = "Form Shared on Email"
    tracker_requests_per_second: float = 5.0
    tracker_max_retries: int = 3

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    email_user: str = ""
    email_password: str = ""
    email_domain: str = "localhost"
    email_subject: str = ""
    email_body: str = ""
    sender_name: str = ""
    sender_team: str = ""
    applicants_champion: str = ""
    applicants_label: str = ""

    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"

    data_dir: Path = field(default_factory=lambda: Path("fulfillment_data"))
    keep_work_files: bool = False
    batch_cache_ttl: int = 3600
    log_level: str = "INFO"

    @property
    def jobs_dir(self) -> Path:
        return self.data_dir / "jobs"

    @property
    def work_root(self) -> Path:
        return self.data_dir / "work"

    @classmethod
    def from_env(cls, load_files: bool = True) -> "Settings":
        if load_files:
            load_dotenv(".env.local"); load_dotenv()  # also loads .env if present

        return cls(
            webhook_api_key=os.getenv("WEBHOOK_API_KEY", ""),
            template_path=Path(os.getenv("PDF_TEMPLATE_PATH", DEFAULT_TEMPLATE_FILE)),
            output_prefix=os.getenv("OUTPUT_FILE_PREFIX", "Hatua_Application_"),
            storage_bucket=os.getenv("STORAGE_BUCKET", ""),
            storage_folder=os.getenv("STORAGE_FOLDER", "applications/"),
            storage_public_base_url=os.getenv("STORAGE_PUBLIC_BASE_URL") or None,
            storage_public_acl=env_flag("STORAGE_PUBLIC_ACL") if os.getenv("STORAGE_PUBLIC_ACL") else None,
            aws_region=os.getenv("AWS_REGION", "eu-central-1"),
            tracker_api_url=os.getenv("TRACKER_API_URL", "https://api.airtable.com/v0"),
            tracker_base_id=os.getenv("TRACKER_BASE_ID", ""),
            tracker_table_name=os.getenv("TRACKER_TABLE_NAME", ""),
            tracker_token=os.getenv("TRACKER_TOKEN", ""),
            tracker_link_field=os.getenv("TRACKER_LINK_FIELD", "Application Form PDF"),
            tracker_status_field=os.getenv("TRACKER_STATUS_FIELD", "Status"),
            tracker_status_label=os.getenv("TRACKER_STATUS_LABEL", "Form Shared on Email"),
            tracker_requests_per_second=float(os.getenv("TRACKER_REQUESTS_PER_SECOND", "5")),
            tracker_max_retries=int(os.getenv("TRACKER_MAX_RETRIES", "3")),
            smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            email_user=os.getenv("EMAIL_USER", ""),
            email_password=os.getenv("EMAIL_PASSWORD", ""),
            email_domain=os.getenv("EMAIL_DOMAIN", "localhost"),
            email_subject=os.getenv("EMAIL_SUBJECT", ""),
            email_body=os.getenv("EMAIL_BODY", ""),
            sender_name=os.getenv("SENDER_NAME", ""),
            sender_team=os.getenv("SENDER_TEAM", ""),
            applicants_champion=os.getenv("SCHOLARSHIP_APPLICANTS_CHAMPION", ""),
            applicants_label=os.getenv("SCHOLARSHIP_APPLICANTS", ""),
            celery_broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
            celery_result_backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0"),
            data_dir=Path(os.getenv("FULFILLMENT_DATA_DIR", "fulfillment_data")),
            keep_work_files=env_flag("KEEP_WORK_FILES", False),
            batch_cache_ttl=int(os.getenv("BATCH_CACHE_TTL", "3600")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
