#!/usr/bin/env python3
"""
imtools - CLI Entry Point
=========================

Usage:
    imtools flatten ~/Pictures/dump --dry-run
    imtools sort ~/Pictures/dump --confidence 0.6 --workers 4
    imtools convert-to-png ~/Pictures/dump
    imtools download https://example.com/cat.jpg -o ~/Pictures/dump
    imtools help
"""

import argparse
import os
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path

from . import __version__
from .convert import run_convert
from .download import run_download
from .errors import (
    ConversionError,
    DownloadError,
    PipelineCancelled,
    PlanValidationError,
    ScanError,
    ServiceUnavailableError,
)
from .llm import (
    DEFAULT_CATEGORIES,
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_MODEL,
    OllamaClassifier,
    OllamaClient,
    get_host,
)
from .pipeline import DEFAULT_WORKERS, run_flatten, run_sort
from .utils import (
    console,
    print_error,
    print_header,
    print_plan_table,
    print_report,
    print_success,
    print_warning,
    save_json,
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


@contextmanager
def cooperative_interrupt():
    """
    Turn the first Ctrl+C into a cancellation signal instead of an exception.

    The pipeline checks the event between classification dispatches and
    between apply steps. A second Ctrl+C interrupts immediately.
    """
    cancel_event = threading.Event()

    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        console.print("\n[bold yellow]Cancelling after the current step... (Ctrl+C again to force)[/bold yellow]")

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not the main thread, keep default behaviour
        yield cancel_event
        return
    try:
        yield cancel_event
    finally:
        signal.signal(signal.SIGINT, previous)


def _finish(report, root, args) -> int:
    print_report(report, root)
    if getattr(args, "report_out", None):
        save_json(report.to_dict(), args.report_out)
    if report.cancelled:
        return EXIT_CANCELLED
    if not report.dry_run and report.failed == 0:
        print_success("Operation Complete!")
    return EXIT_OK


def _cancelled(e: PipelineCancelled) -> int:
    print_warning(str(e))
    if e.plan is not None:
        print_plan_table(e.plan)
        console.print("[dim]Plan was built but not applied.[/dim]")
    print("\n[ABORT] Operation cancelled by user")
    return EXIT_CANCELLED


# =============================================================================
# Subcommands
# =============================================================================

def cmd_flatten(args) -> int:
    """Flatten command - move every nested image up to the root."""
    root = args.path
    mode = "dry-run" if args.dry_run else "apply"
    print_header("FLATTEN", f"Root: {root.resolve()}\nMode: {mode}")

    with cooperative_interrupt() as cancel_event:
        try:
            result = run_flatten(root, dry_run=args.dry_run, cancel_event=cancel_event)
        except ScanError as e:
            print_error(str(e))
            return EXIT_ERROR
        except PlanValidationError as e:
            print_error(str(e))
            return EXIT_ERROR
        except PipelineCancelled as e:
            return _cancelled(e)
        except KeyboardInterrupt:
            print("\n[ABORT] Operation cancelled by user")
            return EXIT_CANCELLED

    print_plan_table(result.plan)
    return _finish(result.report, result.plan.root, args)


def cmd_sort(args) -> int:
    """Sort command - move images into category folders via the local model."""
    root = args.path
    categories = args.categories or DEFAULT_CATEGORIES
    client = OllamaClient(host=args.host, model=args.model)
    threshold = _resolve_confidence(args.confidence)
    classifier = OllamaClassifier(client, categories=categories, threshold=threshold)

    mode = "dry-run" if args.dry_run else "apply"
    print_header(
        "SORT",
        f"Root: {root.resolve()}\nMode: {mode}\nModel: {client.model} @ {client.host}\n"
        f"Confidence threshold: {classifier.threshold}",
    )

    with cooperative_interrupt() as cancel_event:
        try:
            result = run_sort(
                root,
                classifier,
                dry_run=args.dry_run,
                workers=args.workers,
                cancel_event=cancel_event,
            )
        except ServiceUnavailableError as e:
            print_error(str(e))
            console.print("       Start it with: ollama serve")
            return EXIT_ERROR
        except ScanError as e:
            print_error(str(e))
            return EXIT_ERROR
        except PlanValidationError as e:
            print_error(str(e))
            return EXIT_ERROR
        except PipelineCancelled as e:
            return _cancelled(e)
        except KeyboardInterrupt:
            print("\n[ABORT] Operation cancelled by user")
            return EXIT_CANCELLED

    print_plan_table(result.plan)
    return _finish(result.report, result.plan.root, args)


def cmd_convert(args) -> int:
    """Convert command - convert images to PNG with ffmpeg."""
    root = args.path
    print_header("CONVERT TO PNG", f"Root: {root.resolve()}")

    with cooperative_interrupt() as cancel_event:
        try:
            plan, report = run_convert(
                root,
                dry_run=args.dry_run,
                delete_originals=args.delete_originals,
                cancel_event=cancel_event,
            )
        except (ScanError, ConversionError) as e:
            print_error(str(e))
            return EXIT_ERROR
        except KeyboardInterrupt:
            print("\n[ABORT] Operation cancelled by user")
            return EXIT_CANCELLED

    return _finish(report, plan.root, args)


def cmd_download(args) -> int:
    """Download command - fetch images into a directory."""
    print_header("DOWNLOAD", f"Source: {args.source}")

    with cooperative_interrupt() as cancel_event:
        try:
            plan, report = run_download(
                args.source,
                output_dir=args.output,
                dry_run=args.dry_run,
                cancel_event=cancel_event,
            )
        except DownloadError as e:
            print_error(str(e))
            return EXIT_ERROR
        except KeyboardInterrupt:
            print("\n[ABORT] Operation cancelled by user")
            return EXIT_CANCELLED

    return _finish(report, plan.root, args)


# =============================================================================
# Main
# =============================================================================

def _confidence(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value}")
    if not 0.0 <= number <= 1.0:
        raise argparse.ArgumentTypeError(f"must be between 0 and 1, got {value}")
    return number


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def _categories(value: str) -> list[str]:
    labels = [c.strip() for c in value.split(",") if c.strip()]
    if not labels:
        raise argparse.ArgumentTypeError("at least one category is required")
    return labels


def _resolve_confidence(value: float | None) -> float:
    """--confidence if given, else IMTOOLS_CONFIDENCE, else the default."""
    if value is not None:
        return value
    raw = os.environ.get("IMTOOLS_CONFIDENCE")
    if not raw:
        return DEFAULT_CONFIDENCE_THRESHOLD
    try:
        return _confidence(raw)
    except argparse.ArgumentTypeError as e:
        print_warning(f"Ignoring IMTOOLS_CONFIDENCE ({e})")
        return DEFAULT_CONFIDENCE_THRESHOLD


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imtools",
        description="imtools - organize image folders: flatten, AI sort, convert, download",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"imtools {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- FLATTEN command ---
    flatten_parser = subparsers.add_parser("flatten", help="Move all nested images into the root folder")
    flatten_parser.add_argument("path", type=Path, nargs="?", default=Path("."),
                                help="Directory to flatten (default: current directory)")
    flatten_parser.add_argument("--dry-run", action="store_true",
                                help="Simulate changes without modifying files")
    flatten_parser.add_argument("--report-out", type=Path,
                                help="Write the execution report as JSON")
    flatten_parser.set_defaults(func=cmd_flatten)

    # --- SORT command ---
    sort_parser = subparsers.add_parser("sort", help="Sort images into category folders with a local AI model")
    sort_parser.add_argument("path", type=Path, nargs="?", default=Path("."),
                             help="Directory to sort (default: current directory)")
    sort_parser.add_argument("--dry-run", action="store_true",
                             help="Simulate changes without modifying files")
    sort_parser.add_argument("--confidence", type=_confidence, default=None,
                             help=f"Minimum confidence, lower goes to 'unsorted' (default: $IMTOOLS_CONFIDENCE or {DEFAULT_CONFIDENCE_THRESHOLD})")
    sort_parser.add_argument("--model", type=str, default=os.environ.get("IMTOOLS_MODEL", DEFAULT_MODEL),
                             help=f"Ollama vision model (default: {DEFAULT_MODEL})")
    sort_parser.add_argument("--host", type=str, default=None,
                             help=f"Ollama server address (default: $OLLAMA_HOST or {get_host()})")
    sort_parser.add_argument("--workers", type=_positive_int, default=DEFAULT_WORKERS,
                             help=f"Concurrent classification requests (default: {DEFAULT_WORKERS})")
    sort_parser.add_argument("--categories", type=_categories, default=None,
                             help="Comma-separated category list")
    sort_parser.add_argument("--report-out", type=Path,
                             help="Write the execution report as JSON")
    sort_parser.set_defaults(func=cmd_sort)

    # --- CONVERT-TO-PNG command ---
    convert_parser = subparsers.add_parser("convert-to-png", help="Convert images to PNG using ffmpeg")
    convert_parser.add_argument("path", type=Path, nargs="?", default=Path("."),
                                help="Directory to convert (default: current directory)")
    convert_parser.add_argument("--dry-run", action="store_true",
                                help="List conversions without running ffmpeg")
    convert_parser.add_argument("--delete-originals", action="store_true",
                                help="Remove each original after a successful conversion")
    convert_parser.add_argument("--report-out", type=Path,
                                help="Write the execution report as JSON")
    convert_parser.set_defaults(func=cmd_convert)

    # --- DOWNLOAD command ---
    download_parser = subparsers.add_parser("download", help="Download images from a URL or a list of URLs")
    download_parser.add_argument("source", type=str,
                                 help="URL, or text file with one URL per line")
    download_parser.add_argument("-o", "--output", type=Path, default=None,
                                 help="Output directory (default: current directory)")
    download_parser.add_argument("--dry-run", action="store_true",
                                 help="Show target names without downloading")
    download_parser.add_argument("--report-out", type=Path,
                                 help="Write the execution report as JSON")
    download_parser.set_defaults(func=cmd_download)

    # --- HELP command ---
    help_parser = subparsers.add_parser("help", help="Show this help message")
    help_parser.set_defaults(func=None)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None or args.func is None:
        parser.print_help()
        return EXIT_OK

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
