"""
Plan execution for imtools.

Applies (or simulates) a plan one operation at a time. A failing operation
is recorded in the report and execution moves on to the next one.
"""

import os
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from tqdm import tqdm

from .errors import ApplyError, ImtoolsError
from .planning.models import CreateDirectory, Move, Plan, PlanOperation, Skip


@dataclass(frozen=True)
class ExecutionReport:
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    failures: tuple[tuple[PlanOperation, str], ...] = ()
    skips: tuple[Skip, ...] = ()
    dry_run: bool = True
    directories_created: int = 0
    removed_dirs: tuple[str, ...] = ()
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "applied": self.applied,
            "skipped": self.skipped,
            "failed": self.failed,
            "directories_created": self.directories_created,
            "removed_dirs": list(self.removed_dirs),
            "skips": [{"source": str(s.source), "reason": s.reason} for s in self.skips],
            "failures": [
                {"operation": op.kind, "target": op.describe(), "reason": reason}
                for op, reason in self.failures
            ],
        }


def _create_directory(path: Path) -> bool:
    """Create a directory if missing. Returns True if it was created."""
    if path.is_dir():
        return False
    # Raises FileExistsError when a non-directory occupies the path
    path.mkdir(parents=True, exist_ok=True)
    return True


def _move_file(src: Path, dst: Path) -> None:
    """Move a single file, refusing to overwrite anything at the destination."""
    if not src.exists():
        raise ApplyError("Source not found")
    if dst.exists() or dst.is_symlink():
        raise ApplyError("Destination exists")
    if not dst.parent.is_dir():
        raise ApplyError("Destination directory missing")

    try:
        # Handles cross-device moves by copying
        shutil.move(str(src), str(dst))
    except FileExistsError:
        raise ApplyError("Destination exists (race condition)")


def _apply_move(op: Move) -> None:
    _move_file(op.source, op.destination)


def apply_plan(
    plan: Plan,
    dry_run: bool = True,
    cleanup: bool = False,
    cancel_event: threading.Event | None = None,
    show_progress: bool = True,
    handlers: dict[type, Callable[[PlanOperation], None]] | None = None,
) -> ExecutionReport:
    """
    Apply (or simulate) a plan.

    Moves, directory creation and skips are handled here. Other operation
    kinds (conversions, downloads) are carried out by `handlers`, keyed by
    operation type; a handler raises ImtoolsError or OSError on failure.
    Every such operation, like a Move, needs a `source` and a `destination`.

    Args:
        plan: The plan to execute, in order.
        dry_run: If True, only simulate; the filesystem is never touched.
        cleanup: If True, remove source directories left empty by the moves.
        cancel_event: Checked between operations; once set, the remaining
            operations are not attempted.
        show_progress: Show a progress bar while applying.
        handlers: Executors for operation types other than Move.

    Returns:
        ExecutionReport with applied/skipped/failed counts.
    """
    handlers = dict(handlers or {})
    handlers[Move] = _apply_move

    applied = 0
    failed = 0
    directories_created = 0
    failures: list[tuple[PlanOperation, str]] = []
    skips: list[Skip] = []
    failed_dirs: set[Path] = set()
    vacated: set[Path] = set()
    cancelled = False

    mode = "DRY-RUN" if dry_run else "APPLY"
    print(f"\n[{mode}] Starting plan execution...")

    operations = plan.operations
    actions = [op for op in operations if type(op) in handlers]
    pbar = None
    if not dry_run and show_progress and actions:
        pbar = tqdm(total=len(actions), unit="file")

    try:
        shown = 0
        for index, op in enumerate(operations):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                for remaining in operations[index:]:
                    if isinstance(remaining, Skip):
                        skips.append(remaining)
                    elif type(remaining) in handlers:
                        skips.append(Skip(remaining.source, "cancelled"))
                break

            if isinstance(op, Skip):
                skips.append(op)
                continue

            if isinstance(op, CreateDirectory):
                if dry_run:
                    continue
                try:
                    if _create_directory(op.path):
                        directories_created += 1
                except OSError as e:
                    failed += 1
                    failed_dirs.add(op.path)
                    failures.append((op, f"Failed to create directory: {e}"))
                    _log_failure(pbar, f"[ERROR] Failed to create directory {op.path}: {e}")
                continue

            handler = handlers.get(type(op))
            if handler is None:
                continue

            if op.destination.parent in failed_dirs:
                failed += 1
                failures.append((op, "parent directory could not be created"))
                if pbar:
                    pbar.update(1)
                continue

            if dry_run:
                applied += 1
                shown += 1
                if shown <= 10:
                    print(f"  [WOULD {op.kind}] {op.describe()}")
                continue

            try:
                handler(op)
                applied += 1
                if isinstance(op, Move):
                    vacated.add(op.source.parent)
            except (ImtoolsError, OSError) as e:
                failed += 1
                failures.append((op, str(e)))
                _log_failure(pbar, f"[ERROR] {e}: {op.source}")
            if pbar:
                pbar.update(1)

        if dry_run and shown > 10:
            print(f"  ... and {shown - 10} more")
    finally:
        if pbar:
            pbar.close()

    removed: list[str] = []
    if cleanup and not dry_run and not cancelled and vacated:
        removed = cleanup_empty_dirs(Path(plan.root), vacated)
        print(f"  [CLEANUP] Removed {len(removed)} empty folders")

    report = ExecutionReport(
        applied=applied,
        skipped=len(skips),
        failed=failed,
        failures=tuple(failures),
        skips=tuple(skips),
        dry_run=dry_run,
        directories_created=directories_created,
        removed_dirs=tuple(removed),
        cancelled=cancelled,
    )

    print(f"\n[{mode}] Complete: {applied} applied, {len(skips)} skipped, {failed} failed")
    return report


def _log_failure(pbar, message: str) -> None:
    if pbar:
        tqdm.write(message)
    else:
        print(message)


def cleanup_empty_dirs(root: Path, candidates: set[Path]) -> list[str]:
    """
    Remove directories emptied by a run, starting from the deepest.

    Only `candidates` and their ancestors below `root` are considered, so
    directories that were already empty before the run are left alone unless
    they lie on the path of a vacated folder. Hidden files keep a directory
    alive.

    Args:
        root: The root directory (never removed).
        candidates: Directories that files were moved out of.

    Returns:
        List of removed folder paths (relative to root).
    """
    root = Path(root)
    removed = []

    # Deepest first so children go before their parents
    for directory in sorted(candidates, key=lambda p: len(p.parts), reverse=True):
        current = directory
        while current != root and root in current.parents:
            try:
                # os.rmdir only works if the directory is empty
                os.rmdir(current)
            except OSError:
                break
            removed.append(current.relative_to(root).as_posix())
            current = current.parent

    return removed
