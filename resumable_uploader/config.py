"""Run configuration, loaded from ``.env`` and the process environment."""

import base64
import binascii
import os
from typing import Optional

from dotenv import load_dotenv

MIB = 1024 * 1024

_DEFAULTS = {
    "STORE_BACKEND": "s3",
    "PART_SIZE_MB": 100,
    "CHECKPOINT_DIR": ".checkpoints",
    "S3_MAX_ATTEMPTS": 5,
}

BACKENDS = ("s3", "azure")

# (min, max) part size per backend, in bytes
_PART_LIMITS = {
    "s3": (5 * MIB, 5 * 1024 * MIB),
    "azure": (1 * MIB, 4000 * MIB),
}

_PORTAL_HINT = "Copy a fresh connection string from Azure Portal → Storage account → Access keys."


class Config:
    def __init__(
        self,
        backend: Optional[str] = None,
        bucket: Optional[str] = None,
        checkpoint_dir: Optional[str] = None,
        part_size_mb: Optional[int] = None,
    ) -> None:
        load_dotenv()

        self.backend: str = (
            backend or os.getenv("STORE_BACKEND", _DEFAULTS["STORE_BACKEND"])
        ).lower()
        self.bucket: str = bucket or os.getenv("BUCKET", "")
        self.checkpoint_dir: str = checkpoint_dir or os.getenv(
            "CHECKPOINT_DIR", _DEFAULTS["CHECKPOINT_DIR"]
        )
        if part_size_mb is None:
            part_size_mb = int(os.getenv("PART_SIZE_MB", _DEFAULTS["PART_SIZE_MB"]))
        self.part_size: int = part_size_mb * MIB
        self.log_path: Optional[str] = os.getenv("LOG_PATH")

        # S3
        self.s3_endpoint_url: Optional[str] = os.getenv("S3_ENDPOINT_URL") or None
        self.aws_region: Optional[str] = os.getenv("AWS_REGION") or None
        self.s3_max_attempts: int = int(
            os.getenv("S3_MAX_ATTEMPTS", _DEFAULTS["S3_MAX_ATTEMPTS"])
        )

        # Azure
        self.conn_str: str = os.getenv("AZURE_CONN_STR", "")

        if self.backend not in BACKENDS:
            raise ValueError(
                f"Unknown STORE_BACKEND '{self.backend}'. Expected one of: {', '.join(BACKENDS)}."
            )

        low, high = _PART_LIMITS[self.backend]
        if self.part_size > high:
            raise ValueError(
                f"PART_SIZE_MB exceeds the {self.backend} maximum ({high // MIB} MB). "
                f"Got {self.part_size // MIB} MB."
            )
        if self.part_size < low:
            raise ValueError(
                f"PART_SIZE_MB must be at least {low // MIB} MB for {self.backend}."
            )

        if self.s3_max_attempts < 1:
            raise ValueError("S3_MAX_ATTEMPTS must be at least 1.")

        if self.backend == "azure":
            if not self.conn_str:
                raise ValueError(
                    "AZURE_CONN_STR not set. Copy .env.template to .env and fill in your credentials."
                )
            self._validate_connection_string()

    def _validate_connection_string(self) -> None:
        """Parse the connection string and validate each component before connecting."""
        cs = self.conn_str.strip()

        parts = {}
        for segment in cs.split(";"):
            segment = segment.strip()
            if not segment:
                continue
            if "=" not in segment:
                raise ValueError(
                    f"Malformed AZURE_CONN_STR: segment '{segment}' has no '=' separator.\n"
                    + _PORTAL_HINT
                )
            key, _, value = segment.partition("=")
            parts[key.strip()] = value.strip()

        for required in ("AccountName", "AccountKey", "DefaultEndpointsProtocol"):
            if required not in parts:
                raise ValueError(
                    f"AZURE_CONN_STR is missing the '{required}' field.\n" + _PORTAL_HINT
                )

        if not parts["AccountName"] or parts["AccountName"] in ("your_account", "your_account_name"):
            raise ValueError(
                "AZURE_CONN_STR has a placeholder AccountName. "
                "Replace it with your real Azure Storage account name."
            )

        # Re-read from the raw string: the key's '=' padding is lost by partition above.
        raw_key = cs.split("AccountKey=", 1)[-1].split(";")[0].strip()
        if not raw_key or raw_key in ("your_account_key", "your_key"):
            raise ValueError("AZURE_CONN_STR has a placeholder AccountKey. " + _PORTAL_HINT)

        padded = raw_key + "=" * (-len(raw_key) % 4)
        try:
            decoded = base64.b64decode(padded, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError(
                "AZURE_CONN_STR AccountKey is not valid base64, it is corrupted or truncated.\n"
                + _PORTAL_HINT
            )

        # Storage account keys decode to exactly 64 bytes
        if len(decoded) != 64:
            raise ValueError(
                f"AZURE_CONN_STR AccountKey decoded to {len(decoded)} bytes (expected 64). "
                "The key appears truncated.\n" + _PORTAL_HINT
            )

        if parts.get("DefaultEndpointsProtocol", "").lower() != "https":
            raise ValueError(
                "AZURE_CONN_STR uses a non-HTTPS protocol. Set DefaultEndpointsProtocol=https."
            )
