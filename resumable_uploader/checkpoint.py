"""
Durable per-file progress for multipart uploads.

A checkpoint is a small text file named after the SHA-256 of the source path:

    <session id>
    <integrity token>,<part number>,<size>
    <integrity token>,<part number>,<size>
    ...

Line 1 is written as soon as the remote session exists; one line is appended
and fsynced per uploaded part. The file is deleted once the session is
finalized, so it only ever describes an unfinished upload.
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import IO, Optional, Union

from resumable_uploader.models import (
    CheckpointCorruptError,
    CompletedPart,
    SessionNotFound,
    UploadSession,
)
from resumable_uploader.remote import MultipartClient

PathLike = Union[str, os.PathLike]


def checkpoint_path(source_path: PathLike, checkpoint_dir: PathLike) -> Path:
    """Map an arbitrary source path to a filesystem-safe checkpoint name."""
    digest = hashlib.sha256(str(source_path).encode("utf-8")).hexdigest()
    return Path(checkpoint_dir) / digest


def ensure_checkpoint_dir(checkpoint_dir: PathLike) -> Path:
    path = Path(checkpoint_dir)
    if path.exists() and not path.is_dir():
        raise NotADirectoryError(f"Checkpoint path is not a directory: {path}")
    path.mkdir(mode=0o755, parents=True, exist_ok=True)
    return path


def parse_checkpoint(text: str) -> tuple[str, list[CompletedPart]]:
    """Parse a checkpoint record into its session id and ordered parts.

    Raises CheckpointCorruptError on anything that would make the resume
    offset unreliable: a blank session line, an unterminated last line (an
    append that never reached the disk in full), fields that are not
    integers, or part numbers that are not exactly 1..N.
    """
    if not text.endswith("\n"):
        raise CheckpointCorruptError("checkpoint ends with an incomplete line")

    lines = text.splitlines()
    session_id = lines[0].strip()
    if not session_id:
        raise CheckpointCorruptError("checkpoint is missing its session id line")

    parts: list[CompletedPart] = []
    for lineno, line in enumerate(lines[1:], start=2):
        fields = line.rsplit(",", 2)
        if len(fields) != 3 or not fields[0]:
            raise CheckpointCorruptError(f"line {lineno}: expected '<token>,<part>,<size>', got {line!r}")
        token, raw_number, raw_size = fields
        try:
            number = int(raw_number)
            size = int(raw_size)
        except ValueError:
            raise CheckpointCorruptError(f"line {lineno}: non-numeric part number or size in {line!r}") from None
        if number != len(parts) + 1:
            raise CheckpointCorruptError(
                f"line {lineno}: part {number} out of sequence (expected {len(parts) + 1})"
            )
        if size < 0:
            raise CheckpointCorruptError(f"line {lineno}: negative part size {size}")
        parts.append(CompletedPart(token, number, size))

    return session_id, parts


def _sync(fh: IO[str]) -> None:
    fh.flush()
    os.fsync(fh.fileno())


def _drop_torn_tail(fh: IO[str], text: str, path: Path, logger: logging.Logger) -> str:
    """Cut an unterminated last line, an append whose save() never returned."""
    kept = text[: text.rfind("\n") + 1]
    logger.warning(
        f"Checkpoint {path.name} ends with an incomplete line {text[len(kept):]!r}; "
        "discarding it and resuming from the last complete part."
    )
    fh.truncate(len(kept.encode("utf-8")))
    _sync(fh)
    return kept


class CheckpointStore:
    """Open checkpoint for one (bucket, key) upload.

    The store owns the checkpoint file handle for the lifetime of one upload
    driver. Nothing locks the file: callers must never run two stores for the
    same source path at the same time.
    """

    def __init__(
        self,
        client: MultipartClient,
        session: UploadSession,
        path: Path,
        fh: IO[str],
        logger: logging.Logger,
    ) -> None:
        self.client = client
        self.session = session
        self.path = path
        self.logger = logger
        self._fh: Optional[IO[str]] = fh

    @classmethod
    def open(
        cls,
        client: MultipartClient,
        bucket: str,
        key: str,
        source_path: PathLike,
        checkpoint_dir: PathLike,
        logger: logging.Logger,
    ) -> "CheckpointStore":
        """Load the checkpoint for ``source_path``, or start a new remote session.

        A missing or empty checkpoint starts a new session whose id is written
        and synced before returning. An unterminated last line is cut off.
        OS errors, remote errors and corrupt records all propagate.
        """
        path = checkpoint_path(source_path, ensure_checkpoint_dir(checkpoint_dir))

        # Append mode: every write lands at the end of the record.
        fh = path.open("a+", encoding="utf-8")
        try:
            fh.seek(0)
            try:
                text = fh.read()
            except UnicodeDecodeError as exc:
                raise CheckpointCorruptError(f"checkpoint {path.name} is not valid UTF-8") from exc
            if text and not text.endswith("\n"):
                text = _drop_torn_tail(fh, text, path, logger)
            if text.strip():
                session_id, parts = parse_checkpoint(text)
                logger.debug(f"Loaded checkpoint {path.name} for {key}: session {session_id}, {len(parts)} part(s)")
            else:
                session_id, parts = client.create_session(bucket, key), []
                fh.truncate(0)
                fh.write(f"{session_id}\n")
                _sync(fh)
                logger.info(f"Started multipart session for {bucket}/{key}")
        except BaseException:
            fh.close()
            raise

        return cls(client, UploadSession(session_id, bucket, key, parts), path, fh, logger)

    @property
    def parts(self) -> list[CompletedPart]:
        return self.session.parts

    def resume_offset(self) -> int:
        return self.session.offset

    def save(self, part: CompletedPart) -> None:
        """Durably record an uploaded part.

        The part only counts toward resume state once this returns.
        """
        if self._fh is None:
            raise ValueError(f"Checkpoint {self.path.name} is closed")
        expected = self.session.next_part_number
        if part.part_number != expected:
            raise ValueError(f"Part {part.part_number} saved out of order (expected {expected})")

        self._fh.write(part.to_line())
        _sync(self._fh)
        self.session.parts.append(part)

    def complete(self, parts: Optional[list[CompletedPart]] = None) -> bool:
        """Finalize the remote object and retire the checkpoint.

        Returns True when the store accepted the completion and False when the
        session was already gone, which is treated as done. Any other error
        propagates and leaves the checkpoint in place for the next run.
        """
        ordered = list(self.session.parts if parts is None else parts)
        try:
            self.client.complete_session(self.session, ordered)
        except SessionNotFound:
            self.logger.warning(
                f"Session for {self.session.bucket}/{self.session.key} no longer exists "
                "(already completed or expired); nothing to finalize."
            )
            finalized = False
        else:
            self.logger.info(
                f"Successfully uploaded {self.session.key} to {self.session.bucket} "
                f"({len(ordered)} part(s))"
            )
            finalized = True

        self.discard()
        return finalized

    def discard(self) -> None:
        self.close()
        self.path.unlink(missing_ok=True)

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def __enter__(self) -> "CheckpointStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
