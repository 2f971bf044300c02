"""
Multipart API backends.

Every backend exposes the same three calls, consumed by the checkpoint store
and the upload driver:

    create_session(bucket, key) -> session_id
    upload_part(session, part_number, data) -> integrity_token
    complete_session(session, parts) -> None   (raises SessionNotFound)

Transport retries and backoff are left to the underlying SDK client.
"""

import base64
import logging
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from azure.core.exceptions import HttpResponseError, ResourceExistsError
from azure.storage.blob import BlobBlock, BlobServiceClient, ContentSettings

from resumable_uploader.config import Config
from resumable_uploader.models import CompletedPart, SessionNotFound, UploadSession


class MultipartClient:
    """Interface for a remote object store speaking the multipart protocol."""

    def create_session(self, bucket: str, key: str) -> str:
        raise NotImplementedError

    def upload_part(self, session: UploadSession, part_number: int, data: bytes) -> str:
        raise NotImplementedError

    def complete_session(self, session: UploadSession, parts: list[CompletedPart]) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# S3
# ---------------------------------------------------------------------------

def is_no_such_upload_error(exc: Exception) -> bool:
    """Return True if the exception reports a missing multipart upload."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code") == "NoSuchUpload"
    return False


class S3MultipartClient(MultipartClient):
    def __init__(self, s3) -> None:
        self.s3 = s3

    @classmethod
    def from_config(cls, cfg: Config) -> "S3MultipartClient":
        s3 = boto3.client(
            "s3",
            endpoint_url=cfg.s3_endpoint_url,
            region_name=cfg.aws_region,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": cfg.s3_max_attempts, "mode": "standard"},
            ),
        )
        return cls(s3)

    def create_session(self, bucket: str, key: str) -> str:
        response = self.s3.create_multipart_upload(
            Bucket=bucket,
            Key=key,
            ContentType=guess_content_type(key),
        )
        return response["UploadId"]

    def upload_part(self, session: UploadSession, part_number: int, data: bytes) -> str:
        response = self.s3.upload_part(
            Bucket=session.bucket,
            Key=session.key,
            UploadId=session.session_id,
            PartNumber=part_number,
            Body=data,
        )
        return response["ETag"]

    def complete_session(self, session: UploadSession, parts: list[CompletedPart]) -> None:
        try:
            self.s3.complete_multipart_upload(
                Bucket=session.bucket,
                Key=session.key,
                UploadId=session.session_id,
                MultipartUpload={
                    "Parts": [
                        {"ETag": p.integrity_token, "PartNumber": p.part_number}
                        for p in parts
                    ]
                },
            )
        except ClientError as exc:
            if is_no_such_upload_error(exc):
                raise SessionNotFound(session.session_id) from exc
            raise


# ---------------------------------------------------------------------------
# Azure Block Blob
# ---------------------------------------------------------------------------

class AzureBlockClient(MultipartClient):
    """Block Blob staging mapped onto the multipart protocol.

    Azure has no explicit session object: the session id is minted locally and
    baked into every block id, so blocks staged under an older session are never
    mixed into a newer commit. Committing a list that references blocks the
    service no longer holds fails with ``InvalidBlockList``, which is the
    equivalent of S3's ``NoSuchUpload``.
    """

    def __init__(self, service: BlobServiceClient, logger: Optional[logging.Logger] = None) -> None:
        self.service = service
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, cfg: Config, logger: Optional[logging.Logger] = None) -> "AzureBlockClient":
        service = BlobServiceClient.from_connection_string(
            cfg.conn_str,
            connection_timeout=30,
            read_timeout=120,
        )
        return cls(service, logger)

    @staticmethod
    def block_id(session_id: str, part_number: int) -> str:
        # Block ids within one blob must all have the same length.
        raw = f"{session_id}-{part_number:06d}".encode("ascii")
        return base64.b64encode(raw).decode("ascii")

    def create_session(self, bucket: str, key: str) -> str:
        container_client = self.service.get_container_client(bucket)
        try:
            container_client.create_container()
            self.logger.info(f"Created container '{bucket}'.")
        except ResourceExistsError:
            self.logger.debug(f"Container '{bucket}' already exists.")
        return uuid.uuid4().hex

    def upload_part(self, session: UploadSession, part_number: int, data: bytes) -> str:
        block_id = self.block_id(session.session_id, part_number)
        blob_client = self.service.get_blob_client(session.bucket, session.key)
        blob_client.stage_block(block_id=block_id, data=data, length=len(data))
        return block_id

    def complete_session(self, session: UploadSession, parts: list[CompletedPart]) -> None:
        blob_client = self.service.get_blob_client(session.bucket, session.key)
        metadata = {
            "uploaded_by": "resumable_uploader",
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "original_filename": PurePosixPath(session.key).name,
            "file_size_bytes": str(sum(p.size for p in parts)),
        }
        try:
            blob_client.commit_block_list(
                [BlobBlock(block_id=p.integrity_token) for p in parts],
                metadata=metadata,
                content_settings=ContentSettings(content_type=guess_content_type(session.key)),
            )
        except HttpResponseError as exc:
            if getattr(exc, "error_code", None) == "InvalidBlockList":
                raise SessionNotFound(session.session_id) from exc
            raise


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def guess_content_type(key: str) -> str:
    suffix = PurePosixPath(key).suffix.lower()
    return {
        ".csv": "text/csv",
        ".json": "application/json",
        ".parquet": "application/octet-stream",
        ".zip": "application/zip",
        ".gz": "application/gzip",
        ".tar": "application/x-tar",
        ".txt": "text/plain",
        ".tsv": "text/tab-separated-values",
    }.get(suffix, "application/octet-stream")


def build_client(cfg: Config, logger: Optional[logging.Logger] = None) -> MultipartClient:
    if cfg.backend == "azure":
        return AzureBlockClient.from_config(cfg, logger)
    return S3MultipartClient.from_config(cfg)
