"""
Image download.

Fetches one URL, or every URL listed in a text file, into an output
directory. File names come from the URL path and go through the
ConflictResolver, so nothing already on disk is overwritten.
"""

import threading
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests
from tqdm import tqdm

from .errors import ConflictResolutionExhausted, DownloadError
from .executor import ExecutionReport, apply_plan
from .planning.models import CreateDirectory, Plan, PlanOperation, Skip
from .planning.resolver import ConflictResolver

DOWNLOAD_TIMEOUT = 60
CHUNK_SIZE = 64 * 1024
DEFAULT_NAME = "download"


@dataclass(frozen=True)
class Download(PlanOperation):
    url: str
    destination: Path
    kind: str = field(default="DOWNLOAD", init=False)

    @property
    def source(self) -> str:
        return self.url

    def describe(self) -> str:
        return f"{self.url} -> {self.destination}"


def is_url(value: str) -> bool:
    return urlparse(value).scheme in ("http", "https")


def read_sources(source: str) -> list[str]:
    """
    Expand a download argument into a list of URLs.

    Args:
        source: A URL, or a path to a text file with one URL per line
            (blank lines and lines starting with # are ignored).

    Raises:
        DownloadError: If the argument is neither, or the list cannot be
            read as UTF-8 text.
    """
    if is_url(source):
        return [source]

    path = Path(source).expanduser()
    if not path.is_file():
        raise DownloadError(f"Not a URL or readable file: {source}")

    urls = []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                urls.append(line)
    except (OSError, UnicodeDecodeError) as e:
        raise DownloadError(f"Cannot read URL list {source}: {e}")
    return urls


def filename_from_url(url: str) -> str:
    """Last path segment of a URL, or a generic name if there is none."""
    name = unquote(Path(urlparse(url).path).name).strip()
    # Never let a crafted URL escape the output directory
    name = name.replace("/", "_").replace("\\", "_")
    if not name or name in (".", ".."):
        return DEFAULT_NAME
    return name


def build_download_plan(urls: list[str], output_dir: Path) -> Plan:
    """
    Plan one Download per URL, invalid URLs become Skips.

    The plan starts with CreateDirectory(output_dir), so nothing is created
    before apply.
    """
    output_dir = Path(output_dir).expanduser().resolve()
    resolver = ConflictResolver()
    plan = Plan(output_dir)
    plan.add(CreateDirectory(output_dir))

    for url in urls:
        if not is_url(url):
            plan.add(Skip(url, "not an http(s) URL"))
            continue
        try:
            destination = resolver.resolve(output_dir / filename_from_url(url))
        except ConflictResolutionExhausted as e:
            plan.add(Skip(url, str(e)))
            continue
        plan.add(Download(url, destination))

    return plan


def content_length(headers) -> int | None:
    """Declared body size, or None when missing or not a number."""
    try:
        return int(headers.get("Content-Length") or 0) or None
    except (TypeError, ValueError):
        return None


def download_file(session: requests.Session, url: str, destination: Path, show_progress: bool = True) -> None:
    """
    Stream one URL to `destination`, which must not exist yet.

    A partially written file is removed on failure.

    Raises:
        DownloadError: On HTTP or filesystem failure.
    """
    created = False
    try:
        with session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
            resp.raise_for_status()
            content_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
            if content_type and not content_type.startswith("image/"):
                tqdm.write(f"[WARN] {url} is {content_type}, not an image")

            total = content_length(resp.headers)
            # "xb" refuses to overwrite a file that appeared since planning
            with open(destination, 'xb') as f:
                created = True
                with tqdm(total=total, unit="B", unit_scale=True, desc=destination.name,
                          disable=not show_progress, leave=False) as pbar:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
                        pbar.update(len(chunk))
    except FileExistsError:
        raise DownloadError("Destination exists")
    except (requests.exceptions.RequestException, OSError) as e:
        if created:
            destination.unlink(missing_ok=True)
        raise DownloadError(str(e))


def run_download(
    source: str,
    output_dir: Path | None = None,
    dry_run: bool = True,
    session: requests.Session | None = None,
    cancel_event: threading.Event | None = None,
    show_progress: bool = True,
) -> tuple[Plan, ExecutionReport]:
    """
    Download images into `output_dir` (current directory by default).

    An output directory that cannot be created fails every download into it;
    the run itself still completes with a report.

    Raises:
        DownloadError: If `source` is neither a URL nor a readable URL list.
    """
    urls = read_sources(source)
    plan = build_download_plan(urls, Path(output_dir) if output_dir else Path.cwd())
    session = session or requests.Session()

    def fetch(op: Download) -> None:
        download_file(session, op.url, op.destination, show_progress)

    report = apply_plan(
        plan,
        dry_run=dry_run,
        cancel_event=cancel_event,
        show_progress=show_progress,
        handlers={Download: fetch},
    )
    return plan, report
