"""Pytest configuration and fixtures for resumable_uploader tests."""

import hashlib
import logging
import threading
import uuid

import pytest

from resumable_uploader.models import SessionNotFound
from resumable_uploader.remote import MultipartClient


class FakeMultipartStore(MultipartClient):
    """In-memory object store speaking the multipart protocol.

    ``fail_parts`` maps a key to the part number whose upload raises, which is
    how tests simulate a crash after K durable parts.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.sessions = {}  # session_id -> {"bucket", "key", "parts": {n: (token, data)}}
        self.objects = {}  # (bucket, key) -> bytes
        self.created = []
        self.uploaded = []  # (key, part_number, size)
        self.completions = []  # (session_id, [part_number, ...])
        self.fail_parts = {}
        self.fail_create = set()
        self.complete_error = None

    def create_session(self, bucket, key):
        if key in self.fail_create:
            raise ConnectionError(f"cannot create session for {key}")
        session_id = uuid.uuid4().hex
        with self._lock:
            self.sessions[session_id] = {"bucket": bucket, "key": key, "parts": {}}
            self.created.append(key)
        return session_id

    def upload_part(self, session, part_number, data):
        if self.fail_parts.get(session.key) == part_number:
            raise ConnectionError(f"network dropped on part {part_number} of {session.key}")
        token = '"' + hashlib.md5(data).hexdigest() + '"'
        with self._lock:
            self.sessions[session.session_id]["parts"][part_number] = (token, bytes(data))
            self.uploaded.append((session.key, part_number, len(data)))
        return token

    def complete_session(self, session, parts):
        if self.complete_error is not None:
            raise self.complete_error
        with self._lock:
            self.completions.append((session.session_id, [p.part_number for p in parts]))
            state = self.sessions.pop(session.session_id, None)
            if state is None:
                raise SessionNotFound(session.session_id)
            body = b""
            for p in parts:
                token, data = state["parts"][p.part_number]
                assert token == p.integrity_token
                body += data
            self.objects[(state["bucket"], state["key"])] = body


@pytest.fixture
def store():
    return FakeMultipartStore()


@pytest.fixture
def logger():
    log = logging.getLogger("resumable_uploader.tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def checkpoint_dir(tmp_path):
    return tmp_path / ".checkpoints"


@pytest.fixture
def source_dir(tmp_path):
    path = tmp_path / "src"
    path.mkdir()
    return path


@pytest.fixture
def make_file(source_dir):
    def _make(name, size, seed=0):
        data = bytes((i * 7 + seed) % 251 for i in range(size))
        path = source_dir / name
        path.write_bytes(data)
        return path, data

    return _make


ENV_VARS = (
    "STORE_BACKEND",
    "BUCKET",
    "PART_SIZE_MB",
    "CHECKPOINT_DIR",
    "LOG_PATH",
    "S3_ENDPOINT_URL",
    "AWS_REGION",
    "S3_MAX_ATTEMPTS",
    "AZURE_CONN_STR",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
