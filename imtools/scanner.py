"""
Directory scanning.

Walks a root directory and yields an Entry for every recognized image file,
in a stable order so that plans built from an unchanged tree are identical
across runs.
"""

import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator

from .errors import ScanError

IMAGE_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp",
    ".tiff", ".tif", ".heic", ".heif", ".avif",
}

# Folders to completely ignore
IGNORE_FOLDERS = {
    'System Volume Information', '$RECYCLE.BIN', '.fseventsd', '.Spotlight-V100',
    '.Trashes', '@eaDir', '__MACOSX',
}


@dataclass(frozen=True)
class Entry:
    """One scanned candidate file."""
    path: Path
    name: str
    ext: str
    size: int
    mtime: datetime
    rel_path: str = ""

    @property
    def parent(self) -> Path:
        return self.path.parent


def normalize_extensions(exts) -> set[str]:
    """Normalize an iterable of extensions to lower-case with a leading dot."""
    normalized = set()
    for e in exts:
        e = e.strip().lower()
        if not e:
            continue
        normalized.add(e if e.startswith('.') else f'.{e}')
    return normalized


def is_hidden(name: str) -> bool:
    return name.startswith('.') or name in IGNORE_FOLDERS


def scan_directory(root: Path, extensions: set[str] | None = None) -> Iterator[Entry]:
    """
    Validate the root and return a lazy iterator over its image entries.

    Entries come out in lexicographic order of their full paths. Symlinks
    are never followed, hidden and system entries are ignored.

    Args:
        root: The directory to scan.
        extensions: Recognized extensions (defaults to IMAGE_EXTENSIONS).

    Returns:
        Iterator of Entry values.

    Raises:
        ScanError: If the root is missing, not a directory or not readable.
    """
    root = Path(root).expanduser()
    if not root.exists():
        raise ScanError(f"Directory not found: {root}")
    root = root.resolve()
    if not root.is_dir():
        raise ScanError(f"Not a directory: {root}")
    if not os.access(root, os.R_OK | os.X_OK):
        raise ScanError(f"Directory not readable: {root}")

    exts = IMAGE_EXTENSIONS if extensions is None else normalize_extensions(extensions)
    return _walk(root, root, exts)


def _sort_key(child: os.DirEntry) -> str:
    # "b/" sorts after "b.jpg" exactly like the full paths "b/x.jpg" and "b.jpg"
    try:
        if child.is_dir(follow_symlinks=False):
            return child.name + "/"
    except OSError:
        pass
    return child.name


def _walk(root: Path, directory: Path, exts: set[str]) -> Iterator[Entry]:
    try:
        with os.scandir(directory) as it:
            children = sorted(it, key=_sort_key)
    except OSError:
        if directory == root:
            raise ScanError(f"Directory not readable: {root}")
        # Unreadable subfolder, nothing to organize there
        return

    for child in children:
        if is_hidden(child.name):
            continue
        try:
            if child.is_symlink():
                continue
            if child.is_dir(follow_symlinks=False):
                yield from _walk(root, Path(child.path), exts)
                continue
            if not child.is_file(follow_symlinks=False):
                continue

            filepath = Path(child.path)
            ext = filepath.suffix.lower()
            if ext not in exts:
                continue

            stat = child.stat(follow_symlinks=False)
        except OSError:
            continue

        yield Entry(
            path=filepath,
            name=child.name,
            ext=ext,
            size=stat.st_size,
            mtime=datetime.fromtimestamp(stat.st_mtime),
            rel_path=filepath.relative_to(root).as_posix(),
        )
