"""
Destination conflict resolution.

Finds a free destination path for a move, never overwriting existing content
and never handing out the same path twice within one plan build.
"""

from pathlib import Path

from ..errors import ConflictResolutionExhausted

DEFAULT_MAX_ATTEMPTS = 10000
SEPARATOR = "-"


def candidate_name(path: Path, counter: int) -> Path:
    """name.png -> name-<counter>.png"""
    return path.with_name(f"{path.stem}{SEPARATOR}{counter}{path.suffix}")


def resolve_conflict(
    desired: Path,
    claimed: set[Path],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Path:
    """
    Return the first free path for `desired`.

    A path is free when it neither exists on disk nor is in `claimed`.
    The returned path is added to `claimed`.

    Raises:
        ConflictResolutionExhausted: If no free path is found within
            `max_attempts` numbered candidates.
    """
    desired = Path(desired)
    if _is_free(desired, claimed):
        claimed.add(desired)
        return desired

    for counter in range(1, max_attempts + 1):
        candidate = candidate_name(desired, counter)
        if _is_free(candidate, claimed):
            claimed.add(candidate)
            return candidate

    raise ConflictResolutionExhausted(
        f"No free name for {desired.name} after {max_attempts} attempts"
    )


def _is_free(path: Path, claimed: set[Path]) -> bool:
    # A dangling symlink still occupies the name
    return path not in claimed and not path.is_symlink() and not path.exists()


class ConflictResolver:
    """
    Run-scoped resolver holding the set of paths already claimed by the plan.

    One instance belongs to one plan build; it is not shared across threads.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self.claimed: set[Path] = set()

    def claim(self, path: Path) -> None:
        """Mark a path as taken without resolving (e.g. a file that stays put)."""
        self.claimed.add(Path(path))

    def resolve(self, desired: Path) -> Path:
        return resolve_conflict(desired, self.claimed, self.max_attempts)
