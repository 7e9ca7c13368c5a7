"""Upload stamped forms to S3 and hand back a public link."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import boto3

logger = logging.getLogger(__name__)


class StorageUploader:
    def __init__(
        self,
        bucket: str,
        folder: str = "",
        region: str = "eu-central-1",
        public_base_url: Optional[str] = None,
        public_acl: Optional[bool] = None,
        s3_client=None,
    ):
        self.bucket = bucket
        self.folder = folder.strip("/") + "/" if folder.strip("/") else ""
        self.region = region
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        # Buckets fronted by a CDN or bucket policy often have ACLs disabled.
        self.public_acl = self.public_base_url is None if public_acl is None else public_acl
        self.s3 = s3_client
        if self.s3 is None:
            self.s3 = boto3.client("s3", region_name=region)

    def object_key(self, file_name: str) -> str:
        return f"{self.folder}{file_name}"

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(key)}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"

    def upload(self, file_path, file_name: str) -> Optional[str]:
        """
        Upload `file_path` as `file_name` into the destination folder, open it
        for public reads (unless access is granted elsewhere) and return the
        shareable link. Returns None on any failure; there is no retry.
        """
        if not file_path:
            logger.error("No file to upload for %s", file_name)
            return None

        key = self.object_key(file_name)
        try:
            logger.info("Uploading %s to s3://%s/%s", file_name, self.bucket, key)
            with Path(file_path).open("rb") as body:
                self.s3.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType="application/pdf")

            if self.public_acl:
                self.s3.put_object_acl(Bucket=self.bucket, Key=key, ACL="public-read")
        except Exception as exc:
            logger.error("Error uploading %s: %s", file_name, exc, exc_info=True)
            return None

        link = self.public_url(key)
        logger.info("Uploaded successfully: %s", link)
        return link
