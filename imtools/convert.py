"""
PNG conversion through ffmpeg.

Every non-PNG image under the root gets a PNG sibling. Output names go
through the ConflictResolver so an existing PNG is never overwritten.
"""

import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path

from tqdm import tqdm

from .errors import ConflictResolutionExhausted, ConversionError
from .executor import ExecutionReport, apply_plan
from .planning.models import Plan, PlanOperation, Skip
from .planning.resolver import ConflictResolver
from .scanner import scan_directory

FFMPEG_TIMEOUT = 300


@dataclass(frozen=True)
class Convert(PlanOperation):
    source: Path
    destination: Path
    kind: str = field(default="CONVERT", init=False)

    def describe(self) -> str:
        return f"{self.source} -> {self.destination}"


def find_ffmpeg() -> str:
    """Return the ffmpeg executable path or raise ConversionError."""
    path = shutil.which("ffmpeg")
    if not path:
        raise ConversionError("ffmpeg not found. Install it first (e.g. brew install ffmpeg)")
    return path


def build_convert_plan(root: Path, extensions: set[str] | None = None) -> Plan:
    """Plan one Convert per non-PNG image under root."""
    root = Path(root)
    entries = scan_directory(root, extensions)
    resolver = ConflictResolver()
    plan = Plan(root.resolve())

    for entry in entries:
        if entry.ext == ".png":
            continue
        try:
            destination = resolver.resolve(entry.path.with_suffix(".png"))
        except ConflictResolutionExhausted as e:
            plan.add(Skip(entry.path, str(e)))
            continue
        plan.add(Convert(entry.path, destination))

    return plan


def convert_file(ffmpeg: str, src: Path, dst: Path) -> None:
    """
    Convert one image; raises ConversionError on failure.

    A partial output left behind by a failed ffmpeg run is removed, unless
    the file was already there before the call.
    """
    cmd = [
        ffmpeg, "-nostdin", "-hide_banner", "-loglevel", "error",
        "-n",                # never overwrite
        "-i", str(src),
        "-frames:v", "1",    # first frame of animated inputs
        str(dst),
    ]
    existed = dst.exists() or dst.is_symlink()
    try:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=FFMPEG_TIMEOUT)
        except subprocess.TimeoutExpired:
            raise ConversionError(f"ffmpeg timed out after {FFMPEG_TIMEOUT}s")
        except OSError as e:
            raise ConversionError(f"Could not run ffmpeg: {e}")

        if result.returncode != 0:
            lines = (result.stderr or "").strip().splitlines()
            raise ConversionError(lines[-1] if lines else f"ffmpeg exited with {result.returncode}")
    except ConversionError:
        if not existed:
            dst.unlink(missing_ok=True)
        raise


def _converter(ffmpeg: str | None, delete_originals: bool):
    def convert(op: Convert) -> None:
        convert_file(ffmpeg, op.source, op.destination)
        if delete_originals:
            try:
                op.source.unlink()
            except OSError as e:
                tqdm.write(f"[WARN] Converted but could not remove {op.source}: {e}")
    return convert


def run_convert(
    root: Path,
    dry_run: bool = True,
    delete_originals: bool = False,
    extensions: set[str] | None = None,
    cancel_event: threading.Event | None = None,
    show_progress: bool = True,
) -> tuple[Plan, ExecutionReport]:
    """
    Convert images under `root` to PNG.

    Raises:
        ScanError: If the root cannot be scanned.
        ConversionError: If ffmpeg is not installed (apply mode only).
    """
    plan = build_convert_plan(root, extensions)
    ffmpeg = None if dry_run else find_ffmpeg()

    report = apply_plan(
        plan,
        dry_run=dry_run,
        cancel_event=cancel_event,
        show_progress=show_progress,
        handlers={Convert: _converter(ffmpeg, delete_originals)},
    )
    return plan, report
