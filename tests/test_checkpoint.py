import hashlib
import logging
import os

import pytest

from resumable_uploader.checkpoint import (
    CheckpointStore,
    checkpoint_path,
    parse_checkpoint,
)
from resumable_uploader.models import CheckpointCorruptError, CompletedPart, SessionNotFound


def _open(store, logger, checkpoint_dir, source="src/data.bin", key="src/data.bin"):
    return CheckpointStore.open(store, "bucket", key, source, checkpoint_dir, logger)


def test_checkpoint_path_is_sha256_of_source_path(tmp_path):
    path = checkpoint_path("/data/exports/report.csv", tmp_path)

    assert path.parent == tmp_path
    assert path.name == hashlib.sha256(b"/data/exports/report.csv").hexdigest()
    assert len(path.name) == 64


def test_open_creates_session_and_writes_id_line(store, logger, checkpoint_dir):
    with _open(store, logger, checkpoint_dir) as cp:
        session_id = cp.session.session_id
        assert cp.parts == []
        assert cp.resume_offset() == 0

    assert checkpoint_dir.is_dir()
    assert store.created == ["src/data.bin"]
    assert checkpoint_path("src/data.bin", checkpoint_dir).read_text() == f"{session_id}\n"


def test_open_reuses_existing_record(store, logger, checkpoint_dir):
    checkpoint_dir.mkdir()
    checkpoint_path("src/data.bin", checkpoint_dir).write_text('abc123\n"e1",1,100\n"e2",2,100\n')

    with _open(store, logger, checkpoint_dir) as cp:
        assert cp.session.session_id == "abc123"
        assert cp.parts == [CompletedPart('"e1"', 1, 100), CompletedPart('"e2"', 2, 100)]
        assert cp.resume_offset() == 200

    assert store.created == []


def test_empty_record_starts_new_session(store, logger, checkpoint_dir):
    checkpoint_dir.mkdir()
    path = checkpoint_path("src/data.bin", checkpoint_dir)
    path.write_text("")

    with _open(store, logger, checkpoint_dir) as cp:
        session_id = cp.session.session_id

    assert store.created == ["src/data.bin"]
    assert path.read_text() == f"{session_id}\n"


def test_session_creation_error_propagates(store, logger, checkpoint_dir):
    store.fail_create.add("src/data.bin")

    with pytest.raises(ConnectionError):
        _open(store, logger, checkpoint_dir)


def test_checkpoint_dir_that_is_a_file_is_rejected(store, logger, tmp_path):
    not_a_dir = tmp_path / "cp"
    not_a_dir.write_text("x")

    with pytest.raises(NotADirectoryError):
        _open(store, logger, not_a_dir)


@pytest.mark.parametrize(
    "content",
    [
        "\n\"e1\",1,100\n",  # missing session id
        "sid\n\"e1\",1\n",  # too few fields
        "sid\n\"e1\",one,100\n",  # non-numeric part number
        "sid\n\"e1\",1,lots\n",  # non-numeric size
        "sid\n\"e1\",1,-5\n",  # negative size
        "sid\n\"e1\",2,100\n",  # gap at the start
        "sid\n\"e1\",1,100\n\"e2\",1,100\n",  # duplicate
    ],
)
def test_corrupt_records_fail_fast(store, logger, checkpoint_dir, content):
    checkpoint_dir.mkdir()
    checkpoint_path("src/data.bin", checkpoint_dir).write_text(content)

    with pytest.raises(CheckpointCorruptError):
        _open(store, logger, checkpoint_dir)
    assert store.created == []


def test_token_may_contain_commas():
    session_id, parts = parse_checkpoint("sid\na,b,c,1,42\n")

    assert session_id == "sid"
    assert parts == [CompletedPart("a,b,c", 1, 42)]


def test_save_appends_and_is_visible_to_next_open(store, logger, checkpoint_dir):
    with _open(store, logger, checkpoint_dir) as cp:
        session_id = cp.session.session_id
        cp.save(CompletedPart('"e1"', 1, 10))
        cp.save(CompletedPart('"e2"', 2, 4))
        assert cp.resume_offset() == 14

    assert checkpoint_path("src/data.bin", checkpoint_dir).read_text() == (
        f'{session_id}\n"e1",1,10\n"e2",2,4\n'
    )

    with _open(store, logger, checkpoint_dir) as cp:
        assert cp.session.session_id == session_id
        assert [p.part_number for p in cp.parts] == [1, 2]
        assert cp.resume_offset() == 14


def test_save_rejects_out_of_order_part(store, logger, checkpoint_dir):
    with _open(store, logger, checkpoint_dir) as cp:
        with pytest.raises(ValueError):
            cp.save(CompletedPart('"e2"', 2, 10))
        assert cp.parts == []


def test_save_after_close_fails(store, logger, checkpoint_dir):
    cp = _open(store, logger, checkpoint_dir)
    cp.close()
    cp.close()

    with pytest.raises(ValueError):
        cp.save(CompletedPart('"e1"', 1, 10))


def test_save_fsyncs_before_part_counts(store, logger, checkpoint_dir, monkeypatch):
    cp = _open(store, logger, checkpoint_dir)
    synced = []

    def recording_fsync(fd):
        # Disk holds the line, memory does not count it yet.
        synced.append((fd, cp.path.read_text().count("\n"), len(cp.parts)))

    monkeypatch.setattr(os, "fsync", recording_fsync)
    cp.save(CompletedPart('"e1"', 1, 10))

    assert synced == [(cp._fh.fileno(), 2, 0)]
    assert cp.resume_offset() == 10
    cp.close()


def test_failed_fsync_leaves_resume_state_unchanged(store, logger, checkpoint_dir, monkeypatch):
    cp = _open(store, logger, checkpoint_dir)
    cp.save(CompletedPart('"e1"', 1, 10))

    def failing_fsync(fd):
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(os, "fsync", failing_fsync)
    with pytest.raises(OSError):
        cp.save(CompletedPart('"e2"', 2, 10))

    assert [p.part_number for p in cp.parts] == [1]
    assert cp.resume_offset() == 10
    cp.close()


def test_torn_last_line_is_dropped(store, logger, checkpoint_dir, caplog):
    checkpoint_dir.mkdir()
    path = checkpoint_path("src/data.bin", checkpoint_dir)
    path.write_text('sid\n"e1",1,100\n"e2",2,100\n"e3",3')

    with caplog.at_level(logging.WARNING):
        with _open(store, logger, checkpoint_dir) as cp:
            assert [p.part_number for p in cp.parts] == [1, 2]
            assert cp.resume_offset() == 200
            cp.save(CompletedPart('"e3"', 3, 50))

    assert "incomplete line" in caplog.text
    assert path.read_text() == 'sid\n"e1",1,100\n"e2",2,100\n"e3",3,50\n'
    assert store.created == []


def test_torn_session_line_starts_new_session(store, logger, checkpoint_dir):
    checkpoint_dir.mkdir()
    path = checkpoint_path("src/data.bin", checkpoint_dir)
    path.write_text("half-written-sess")

    with _open(store, logger, checkpoint_dir) as cp:
        session_id = cp.session.session_id

    assert store.created == ["src/data.bin"]
    assert path.read_text() == f"{session_id}\n"


def test_parse_rejects_unterminated_record():
    with pytest.raises(CheckpointCorruptError):
        parse_checkpoint('sid\n"e1",1,100\n"e2",2,1')


def test_invalid_utf8_is_corruption(store, logger, checkpoint_dir):
    checkpoint_dir.mkdir()
    checkpoint_path("src/data.bin", checkpoint_dir).write_bytes(b"sid\n\xff\xfe,1,10\n")

    with pytest.raises(CheckpointCorruptError):
        _open(store, logger, checkpoint_dir)
    assert store.created == []


def test_complete_finalizes_and_removes_checkpoint(store, logger, checkpoint_dir):
    cp = _open(store, logger, checkpoint_dir)
    token = store.upload_part(cp.session, 1, b"hello")
    cp.save(CompletedPart(token, 1, 5))

    assert cp.complete() is True
    assert store.objects[("bucket", "src/data.bin")] == b"hello"
    assert not cp.path.exists()


def test_complete_twice_is_benign(store, logger, checkpoint_dir, caplog):
    cp = _open(store, logger, checkpoint_dir)
    session = cp.session
    assert cp.complete() is True

    # A retried driver run referencing the same, already finalized, session.
    replay = CheckpointStore(store, session, cp.path, cp.path.open("a+"), logger)
    with caplog.at_level(logging.WARNING):
        assert replay.complete() is False

    assert "no longer exists" in caplog.text
    assert len(store.completions) == 2


def test_session_not_found_is_benign_and_retires_checkpoint(store, logger, checkpoint_dir, caplog):
    cp = _open(store, logger, checkpoint_dir)
    store.complete_error = SessionNotFound(cp.session.session_id)

    with caplog.at_level(logging.WARNING):
        assert cp.complete() is False

    assert not cp.path.exists()
    assert any(r.levelno == logging.WARNING for r in caplog.records)


def test_other_completion_errors_propagate_and_keep_checkpoint(store, logger, checkpoint_dir):
    cp = _open(store, logger, checkpoint_dir)
    store.complete_error = RuntimeError("InternalError")

    with pytest.raises(RuntimeError):
        cp.complete()

    cp.close()
    assert cp.path.exists()
