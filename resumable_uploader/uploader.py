"""
Part reader, per-file upload driver and the directory orchestrator.

Each file is driven by its own FileUploader on its own thread. Within a file,
parts are read, uploaded and checkpointed strictly in order so that the
checkpoint always describes a contiguous prefix of the source.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from resumable_uploader.checkpoint import CheckpointStore, PathLike
from resumable_uploader.models import CompletedPart
from resumable_uploader.remote import MultipartClient


# ---------------------------------------------------------------------------
# Part reader
# ---------------------------------------------------------------------------

class PartReader:
    """Yield ``part_size`` chunks of ``fh`` starting at ``offset``.

    Every chunk is full-sized except possibly the last. Iteration ends on the
    first empty read, so a file that ends exactly on a part boundary yields no
    trailing empty chunk.
    """

    def __init__(self, fh: BinaryIO, part_size: int, offset: int = 0) -> None:
        if part_size <= 0:
            raise ValueError(f"part_size must be positive, got {part_size}")
        self.fh = fh
        self.part_size = part_size
        self.offset = offset

    def _read_part(self) -> bytes:
        # read() may legally return fewer bytes than asked before EOF.
        chunk = self.fh.read(self.part_size)
        if not chunk or len(chunk) == self.part_size:
            return chunk
        buf = bytearray(chunk)
        while len(buf) < self.part_size:
            more = self.fh.read(self.part_size - len(buf))
            if not more:
                break
            buf += more
        return bytes(buf)

    def __iter__(self) -> Iterator[bytes]:
        self.fh.seek(self.offset)
        while True:
            chunk = self._read_part()
            if not chunk:
                return
            yield chunk


# ---------------------------------------------------------------------------
# Upload driver
# ---------------------------------------------------------------------------

@dataclass
class UploadResult:
    file_path: Path
    key: str
    parts: list[CompletedPart]
    resumed_parts: int
    bytes_sent: int
    finalized: bool


class FileUploader:
    """Uploads one file from its checkpointed resume point to a finished object."""

    def __init__(
        self,
        client: MultipartClient,
        logger: logging.Logger,
        file_path: Path,
        bucket: str,
        key: str,
        checkpoint_dir: PathLike,
        part_size: int,
    ) -> None:
        self.client = client
        self.logger = logger
        self.file_path = file_path
        self.bucket = bucket
        self.key = key
        self.checkpoint_dir = checkpoint_dir
        self.part_size = part_size

    def run(self) -> UploadResult:
        """Execute the upload. Errors propagate; the checkpoint keeps what was done."""
        store = CheckpointStore.open(
            self.client,
            self.bucket,
            self.key,
            self.file_path,
            self.checkpoint_dir,
            self.logger,
        )
        with store:
            offset = store.resume_offset()
            resumed = len(store.parts)
            file_size = self.file_path.stat().st_size

            if resumed:
                self.logger.info(
                    f"Resuming {self.key}: {resumed} part(s) / {offset:,} bytes already done."
                )

            t0 = time.monotonic()
            bytes_sent = 0
            with self.file_path.open("rb") as fh:
                for data in PartReader(fh, self.part_size, offset):
                    part_number = store.session.next_part_number
                    self.logger.debug(f"Uploading part {part_number} of {self.key} ({len(data):,} bytes)")
                    token = self.client.upload_part(store.session, part_number, data)
                    store.save(CompletedPart(token, part_number, len(data)))

                    bytes_sent += len(data)
                    self._log_progress(part_number, store.resume_offset(), file_size, bytes_sent, t0)

            parts = list(store.parts)
            finalized = store.complete(parts)

        return UploadResult(
            file_path=self.file_path,
            key=self.key,
            parts=parts,
            resumed_parts=resumed,
            bytes_sent=bytes_sent,
            finalized=finalized,
        )

    def _log_progress(self, part_number: int, done: int, file_size: int, bytes_sent: int, t0: float) -> None:
        elapsed = max(time.monotonic() - t0, 0.001)
        rate = bytes_sent / elapsed
        pct = done / file_size * 100 if file_size else 100.0
        eta_s = max(file_size - done, 0) / rate if rate else 0
        self.logger.info(
            f"[{pct:5.1f}%] {self.key} part {part_number}  "
            f"speed={rate / (1024 * 1024):.1f} MB/s  eta={fmt_seconds(eta_s)}"
        )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

@dataclass
class RunSummary:
    total: int
    elapsed: float
    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)  # (key, reason)

    @property
    def ok(self) -> bool:
        return not self.failed


def collect_files(source_dir: Path) -> list[Path]:
    """Return the regular files directly inside source_dir, sorted for deterministic order."""
    return sorted(f for f in source_dir.iterdir() if f.is_file())


def make_key(file_path: Path, prefix: str = "") -> str:
    """
    Compute the object key for a source file.

    Example:
        file   = /data/exports/report.csv
        prefix = 2024/q1
        result = 2024/q1/data/exports/report.csv
    """
    key = file_path.as_posix().lstrip("/")
    if prefix:
        key = f"{prefix.strip('/')}/{key}"
    return key


def upload_directory(
    client: MultipartClient,
    logger: logging.Logger,
    source_dir: Path,
    bucket: str,
    checkpoint_dir: PathLike,
    part_size: int,
    key_prefix: str = "",
    files: Optional[list[Path]] = None,
) -> RunSummary:
    """Upload every file in source_dir concurrently, one thread per file.

    One file failing never cancels the others; each failure is logged and
    recorded in the returned summary.
    """
    if files is None:
        files = collect_files(source_dir)

    summary = RunSummary(total=len(files), elapsed=0.0)
    t0 = time.monotonic()
    if not files:
        return summary

    # Concurrency equals file count: every file gets its own worker.
    with ThreadPoolExecutor(max_workers=len(files), thread_name_prefix="upload") as pool:
        futures = {}
        for file_path in files:
            key = make_key(file_path, key_prefix)
            uploader = FileUploader(
                client=client,
                logger=logger,
                file_path=file_path,
                bucket=bucket,
                key=key,
                checkpoint_dir=checkpoint_dir,
                part_size=part_size,
            )
            futures[pool.submit(uploader.run)] = key

        for future in as_completed(futures):
            key = futures[future]
            try:
                future.result()
            except Exception as exc:
                logger.error(f"Upload of {key} failed: {exc}")
                summary.failed.append((key, f"{type(exc).__name__}: {exc}"))
            else:
                summary.succeeded.append(key)

    summary.elapsed = time.monotonic() - t0
    return summary


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def fmt_seconds(s: float) -> str:
    if s <= 0:
        return "--:--"
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"
