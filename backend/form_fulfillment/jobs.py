"""
Durable batch storage.

Each accepted webhook delivery becomes a JSON job file holding the raw payload
and its `BatchReport`. Files are written before the delivery is acknowledged,
so a worker can always reload the batch it was handed. A per-batch claim
file makes sure only one runner ever processes a given batch.
Deliveries are de-duplicated through an idempotency key.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Dict, Optional, Tuple

from cachetools import TTLCache

from .records import BatchReport, utc_now

logger = logging.getLogger(__name__)

FINISHED_STATUSES = ("completed", "failed")


def idempotency_key_for(payload: Dict, header_value: Optional[str] = None) -> str:
    """Caller-supplied key if present, otherwise a hash of the canonical payload."""
    if header_value and header_value.strip():
        return header_value.strip()
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class JobStore:
    def __init__(self, jobs_dir: Path, cache_ttl: int = 3600, cache_size: int = 1000):
        self.jobs_dir = Path(jobs_dir)
        self.keys_dir = self.jobs_dir / "keys"
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        self._cache: TTLCache = TTLCache(maxsize=cache_size, ttl=cache_ttl)
        self._lock = threading.RLock()

    def _job_file(self, batch_id: str) -> Path:
        return self.jobs_dir / f"{batch_id}.json"

    def _claim_file(self, batch_id: str) -> Path:
        return self.jobs_dir / f"{batch_id}.claim"

    def _key_file(self, key: str) -> Path:
        return self.keys_dir / (hashlib.sha256(key.encode("utf-8")).hexdigest() + ".json")

    def _write(self, path: Path, data: Dict) -> None:
        tmp = path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(path)

    def _read_job(self, batch_id: str) -> Optional[Dict]:
        path = self._job_file(batch_id)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def create(self, payload: Dict, idempotency_key: str) -> Tuple[BatchReport, bool]:
        """
        Persist a new batch, or return the existing one for a repeated key.

        Returns (report, created).
        """
        with self._lock:
            existing = self.find_by_key(idempotency_key)
            if existing is not None:
                logger.info("Duplicate delivery for key %s -> batch %s", idempotency_key, existing.batch_id)
                return existing, False

            records = payload.get("records") or []
            report = BatchReport(
                batch_id=uuid.uuid4().hex,
                idempotency_key=idempotency_key,
                record_count=len(records),
            )
            self._write(self._job_file(report.batch_id), {"payload": payload, "report": report.to_dict()})
            self._write(self._key_file(idempotency_key), {"batch_id": report.batch_id})
            self._cache[report.batch_id] = report
            logger.info("Queued batch %s with %d records", report.batch_id, report.record_count)
            return report, True

    def save(self, report: BatchReport) -> None:
        with self._lock:
            job = self._read_job(report.batch_id) or {"payload": {}}
            job["report"] = report.to_dict()
            self._write(self._job_file(report.batch_id), job)
            self._cache[report.batch_id] = report

    def get(self, batch_id: str) -> Optional[BatchReport]:
        report = self._cache.get(batch_id)
        if report is not None:
            return report
        try:
            job = self._read_job(batch_id)
        except (OSError, ValueError) as exc:
            logger.error("Error loading batch %s: %s", batch_id, exc)
            return None
        if not job:
            return None
        report = BatchReport.from_dict(job["report"])
        self._cache[batch_id] = report
        return report

    def load_payload(self, batch_id: str) -> Dict:
        job = self._read_job(batch_id) or {}
        return job.get("payload", {})

    def find_by_key(self, idempotency_key: str) -> Optional[BatchReport]:
        key_file = self._key_file(idempotency_key)
        if not key_file.exists():
            return None
        with key_file.open("r", encoding="utf-8") as f:
            batch_id = json.load(f).get("batch_id")
        return self.get(batch_id) if batch_id else None

    def claim(self, batch_id: str, runner_id: str) -> Optional[BatchReport]:
        """
        Move a batch to "processing" on behalf of `runner_id`.

        The claim file is created with O_EXCL, so across threads and worker
        processes exactly one runner wins. A redelivered task keeps its id and
        may pick its own claim back up. Returns None when the batch is finished,
        unknown or owned by another runner.
        """
        with self._lock:
            job = self._read_job(batch_id)
            if not job:
                return None
            report = BatchReport.from_dict(job["report"])
            if report.status in FINISHED_STATUSES:
                return None

            claim_file = self._claim_file(batch_id)
            try:
                fd = os.open(claim_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                owner = claim_file.read_text(encoding="utf-8").strip()
                if owner != runner_id:
                    logger.info("Batch %s already claimed by %s", batch_id, owner)
                    return None
            else:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(runner_id)

            report.status = "processing"
            report.runner_id = runner_id
            report.started_at = utc_now()
            report.groups = []
            job["report"] = report.to_dict()
            self._write(self._job_file(batch_id), job)
            self._cache[batch_id] = report
            return report
