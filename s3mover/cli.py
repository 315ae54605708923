# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Command line front-end for s3mover.

Usage:
    s3mover copy SRC_PROFILE SRC_BUCKET SRC_KEY DST_PROFILE DST_BUCKET [DST_KEY]
    s3mover upload PROFILE FILE BUCKET [KEY]
    s3mover uploads PROFILE BUCKET [--prefix P]
    s3mover abort PROFILE BUCKET [--key K --upload-id U]
                                 [--prefix P] [--older-than HOURS]
    s3mover parts PROFILE BUCKET KEY UPLOAD_ID

Profiles are read from ``~/.config/s3mover/s3mover.yaml`` (see
:mod:`s3mover.config`).

Exit codes:
    0 - Success
    1 - Error (or some stale uploads could not be aborted)
"""

import argparse
import logging
import signal
import sys
import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

from s3mover.client import S3Client
from s3mover.config import ClientConfig, ConfigError, Settings, TransferConfig
from s3mover.errors import S3Error, TransferAbortedError
from s3mover.logging import configure_logging
from s3mover.transfer import TransferCoordinator, TransferResult


logger = logging.getLogger(__name__)


def _make_client(config: ClientConfig) -> S3Client:
    return S3Client(config)


def _load_settings(args: argparse.Namespace) -> Settings:
    return Settings.from_yaml(args.config)


def _transfer_config(
    args: argparse.Namespace, settings: Settings
) -> TransferConfig:
    try:
        return TransferConfig(
            part_size=args.part_size or settings.transfer.part_size,
            max_workers=args.workers or settings.transfer.max_workers,
        )
    except ValueError as e:
        raise ConfigError(str(e)) from e


def _run_cancellable(
    run: Callable[[threading.Event], TransferResult],
) -> TransferResult:
    """Run a transfer with Ctrl-C mapped to its cancel event."""
    cancel = threading.Event()

    def on_sigint(signum: int, frame: object) -> None:
        logger.warning("Interrupted, aborting transfer")
        cancel.set()

    # Signal handlers can only be installed from the main thread
    if threading.current_thread() is not threading.main_thread():
        return run(cancel)

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        return run(cancel)
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_result(result: TransferResult, bucket: str, key: str) -> None:
    print(f"{bucket}/{key}: {result.size} bytes ({result.strategy.value})")
    if result.upload_id:
        print(f"  upload id: {result.upload_id}")
        print(f"  parts:     {len(result.parts)}")
    if result.etag:
        print(f"  etag:      {result.etag}")


def cmd_copy(args: argparse.Namespace) -> int:
    """Copy an object between profiles.

    Args:
        args: Parsed command line arguments.

    Returns:
        Exit code.
    """
    settings = _load_settings(args)
    source = _make_client(settings.profile(args.src_profile))
    target = _make_client(settings.profile(args.dst_profile))
    dst_key = args.dst_key or args.src_key
    with source, target:
        coordinator = TransferCoordinator(
            target, _transfer_config(args, settings)
        )
        result = _run_cancellable(
            lambda cancel: coordinator.copy_object(
                source,
                args.src_bucket,
                args.src_key,
                args.dst_bucket,
                dst_key,
                cancel_event=cancel,
            )
        )
    _print_result(result, args.dst_bucket, dst_key)
    return 0


def cmd_upload(args: argparse.Namespace) -> int:
    """Upload a local file.

    Args:
        args: Parsed command line arguments.

    Returns:
        Exit code.
    """
    settings = _load_settings(args)
    path = Path(args.file)
    key = args.key or path.name
    with _make_client(settings.profile(args.profile)) as target:
        coordinator = TransferCoordinator(
            target, _transfer_config(args, settings)
        )
        result = _run_cancellable(
            lambda cancel: coordinator.upload_file(
                path, args.bucket, key, cancel_event=cancel
            )
        )
    _print_result(result, args.bucket, key)
    return 0


def cmd_uploads(args: argparse.Namespace) -> int:
    """List in-progress multipart uploads."""
    settings = _load_settings(args)
    with _make_client(settings.profile(args.profile)) as target:
        uploads = TransferCoordinator(target).list_incomplete_uploads(
            args.bucket, prefix=args.prefix
        )
    for upload in uploads:
        initiated = upload.initiated.isoformat() if upload.initiated else "-"
        print(f"{initiated}  {upload.upload_id}  {upload.key}")
    if not uploads:
        print("No incomplete uploads")
    return 0


def cmd_abort(args: argparse.Namespace) -> int:
    """Abort one upload, or every matching stale upload.

    Args:
        args: Parsed command line arguments.

    Returns:
        Exit code (1 if any abort failed).
    """
    if bool(args.key) != bool(args.upload_id):
        raise ConfigError("--key and --upload-id must be given together")

    settings = _load_settings(args)
    with _make_client(settings.profile(args.profile)) as target:
        coordinator = TransferCoordinator(target)
        if args.upload_id:
            coordinator.abort_upload(args.bucket, args.key, args.upload_id)
            print(f"Aborted {args.upload_id} ({args.key})")
            return 0

        older_than = (
            timedelta(hours=args.older_than)
            if args.older_than is not None
            else None
        )
        report = coordinator.abort_incomplete_uploads(
            args.bucket, prefix=args.prefix, older_than=older_than
        )

    for upload in report.aborted:
        print(f"Aborted {upload.upload_id} ({upload.key})")
    for upload, error in report.failed:
        print(
            f"Failed  {upload.upload_id} ({upload.key}): {error}",
            file=sys.stderr,
        )
    print(f"{len(report.aborted)} aborted, {len(report.failed)} failed")
    return 1 if report.failed else 0


def cmd_parts(args: argparse.Namespace) -> int:
    """List the parts uploaded so far for one upload."""
    settings = _load_settings(args)
    with _make_client(settings.profile(args.profile)) as target:
        parts = TransferCoordinator(target).list_uploaded_parts(
            args.bucket, args.key, args.upload_id
        )
    for part in parts:
        print(f"{part.part_number:>5}  {part.size:>12}  {part.etag}")
    print(f"{len(parts)} part(s), {sum(p.size for p in parts)} bytes")
    return 0


_COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
    "copy": cmd_copy,
    "upload": cmd_upload,
    "uploads": cmd_uploads,
    "abort": cmd_abort,
    "parts": cmd_parts,
}


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="s3mover",
        description="Copy and upload objects between S3-compatible stores",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Config file (default: ~/.config/s3mover/s3mover.yaml)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--part-size",
        type=_positive_int,
        help="Multipart part size in bytes (overrides config)",
    )
    parser.add_argument(
        "--workers",
        type=_positive_int,
        help="Parts transferred concurrently (overrides config)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    copy_parser = subparsers.add_parser(
        "copy", help="Copy an object between profiles"
    )
    copy_parser.add_argument("src_profile")
    copy_parser.add_argument("src_bucket")
    copy_parser.add_argument("src_key")
    copy_parser.add_argument("dst_profile")
    copy_parser.add_argument("dst_bucket")
    copy_parser.add_argument(
        "dst_key", nargs="?", help="Target key (default: SRC_KEY)"
    )

    upload_parser = subparsers.add_parser("upload", help="Upload a file")
    upload_parser.add_argument("profile")
    upload_parser.add_argument("file")
    upload_parser.add_argument("bucket")
    upload_parser.add_argument(
        "key", nargs="?", help="Target key (default: file name)"
    )

    uploads_parser = subparsers.add_parser(
        "uploads", help="List in-progress multipart uploads"
    )
    uploads_parser.add_argument("profile")
    uploads_parser.add_argument("bucket")
    uploads_parser.add_argument("--prefix", help="Only keys with this prefix")

    abort_parser = subparsers.add_parser(
        "abort",
        help="Abort multipart uploads",
        description=(
            "Abort one upload (--key and --upload-id) or every in-progress "
            "upload matching --prefix / --older-than"
        ),
    )
    abort_parser.add_argument("profile")
    abort_parser.add_argument("bucket")
    abort_parser.add_argument("--key", help="Key of a specific upload")
    abort_parser.add_argument("--upload-id", help="ID of a specific upload")
    abort_parser.add_argument("--prefix", help="Only keys with this prefix")
    abort_parser.add_argument(
        "--older-than",
        type=float,
        metavar="HOURS",
        help="Only uploads initiated at least this many hours ago",
    )

    parts_parser = subparsers.add_parser(
        "parts", help="List parts of an in-progress upload"
    )
    parts_parser.add_argument("profile")
    parts_parser.add_argument("bucket")
    parts_parser.add_argument("key")
    parts_parser.add_argument("upload_id")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Arguments (default: ``sys.argv[1:]``).

    Returns:
        Exit code.
    """
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.WARNING)

    try:
        return _COMMANDS[args.command](args)
    except TransferAbortedError as e:
        logger.debug("Transfer aborted", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        if e.abort_error is not None:
            print(
                f"error: upload {e.upload_id} may still exist; "
                f"clean up with 's3mover abort'",
                file=sys.stderr,
            )
        return 1
    except (S3Error, ConfigError, OSError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
