"""
Resumable Uploader: command line entry point.

Usage:
    python -m resumable_uploader <source_dir> [bucket] [--backend s3|azure]
        [--checkpoint-dir DIR] [--part-size-mb N] [--key-prefix PREFIX] [--dry-run]

Every file directly inside <source_dir> is uploaded on its own thread with the
multipart protocol. Progress is checkpointed per part; re-run the same command
after an interruption to continue where each file stopped.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from resumable_uploader.config import MIB, Config
from resumable_uploader.remote import build_client
from resumable_uploader.uploader import collect_files, make_key, upload_directory

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def build_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "uploader_process.log"

    logger = logging.getLogger("resumable_uploader")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(console)
    logger.addHandler(fh)
    return logger


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="resumable-uploader",
        description=(
            "Upload every file in a directory to an object store with "
            "concurrent, crash-resumable multipart transfers."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Upload a directory to S3\n"
            "  python -m resumable_uploader ./exports my-bucket\n\n"
            "  # Upload to an Azure container with 64 MB parts\n"
            "  python -m resumable_uploader ./exports my-container --backend azure --part-size-mb 64\n\n"
            "  # Dry run: list files and keys without uploading\n"
            "  python -m resumable_uploader ./exports my-bucket --dry-run\n"
        ),
    )
    parser.add_argument(
        "source_dir",
        help="Directory whose files are uploaded. Subdirectories are skipped.",
    )
    parser.add_argument(
        "bucket",
        nargs="?",
        default=None,
        help="Destination bucket (or Azure container). Overrides BUCKET in .env.",
    )
    parser.add_argument(
        "--backend",
        choices=("s3", "azure"),
        default=None,
        help="Object store backend. Overrides STORE_BACKEND (default: s3).",
    )
    parser.add_argument(
        "--checkpoint-dir",
        default=None,
        metavar="DIR",
        help="Where per-file checkpoints are kept. Overrides CHECKPOINT_DIR (default: .checkpoints).",
    )
    parser.add_argument(
        "--part-size-mb",
        type=int,
        default=None,
        metavar="N",
        help="Part size in MiB. Overrides PART_SIZE_MB (default: 100).",
    )
    parser.add_argument(
        "--key-prefix",
        default="",
        metavar="PREFIX",
        help="Optional prefix prepended to every object key.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate config and list files that would be uploaded, without uploading.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    try:
        cfg = Config(
            backend=args.backend,
            bucket=args.bucket,
            checkpoint_dir=args.checkpoint_dir,
            part_size_mb=args.part_size_mb,
        )
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    logger = build_logger(Path(cfg.log_path) if cfg.log_path else Path.cwd() / "logs")

    logger.info("=" * 60)
    logger.info("  Resumable Uploader")
    logger.info("=" * 60)

    if not cfg.bucket:
        logger.error("No bucket provided. Pass as argument or set BUCKET in .env.")
        return 1

    source_dir = Path(args.source_dir).expanduser()
    if not source_dir.is_dir():
        logger.error(f"Source directory not found: {source_dir}")
        return 1

    files = collect_files(source_dir)
    if not files:
        logger.error(f"Directory is empty (no files found): {source_dir}")
        return 1

    total_bytes = sum(f.stat().st_size for f in files)
    logger.info(f"Backend   : {cfg.backend}")
    logger.info(f"Source    : {source_dir}")
    logger.info(f"Bucket    : {cfg.bucket}")
    logger.info(f"Files     : {len(files):,}  ({total_bytes / (1024**3):.3f} GiB total)")
    logger.info(f"Part size : {cfg.part_size // MIB} MB  |  Checkpoints: {cfg.checkpoint_dir}")

    if args.dry_run:
        logger.info("[DRY RUN] Files that would be uploaded:")
        for i, fp in enumerate(files, 1):
            logger.info(
                f"  [{i:>{len(str(len(files)))}}] {fp.stat().st_size:>14,} bytes  →  {make_key(fp, args.key_prefix)}"
            )
        logger.info("[DRY RUN] No files were uploaded.")
        return 0

    client = build_client(cfg, logger)
    summary = upload_directory(
        client,
        logger,
        source_dir,
        cfg.bucket,
        cfg.checkpoint_dir,
        cfg.part_size,
        key_prefix=args.key_prefix,
        files=files,
    )

    logger.info("")
    logger.info("=" * 60)
    logger.info(
        f"  Summary: {len(summary.succeeded)}/{summary.total} files uploaded successfully "
        f"in {summary.elapsed:.1f}s"
    )
    if summary.failed:
        logger.warning(f"  {len(summary.failed)} file(s) did not complete:")
        for key, reason in sorted(summary.failed):
            logger.warning(f"    - {key}  ({reason})")
        logger.warning("  Re-run the same command to resume failed files.")
    logger.info("=" * 60)

    return 0 if summary.ok else 2
