"""
Plan building for flatten and sort.

Builders only look at the filesystem through existence checks made by the
ConflictResolver; nothing is created or moved here.
"""

from pathlib import Path
from typing import Iterable

from ..errors import ClassificationError, ConflictResolutionExhausted
from ..scanner import Entry
from .models import CreateDirectory, Move, Plan, Skip
from .resolver import ConflictResolver


def build_flatten_plan(
    root: Path,
    entries: Iterable[Entry],
    resolver: ConflictResolver | None = None,
) -> Plan:
    """
    Plan moving every nested entry up to the root directory.

    Files that are already direct children of root stay where they are and
    keep their names; nested files get `root/<name>`, numbered on conflict.

    Args:
        root: Root directory being flattened.
        entries: Scanned entries, in scan order.
        resolver: Run-scoped resolver (a fresh one by default).

    Returns:
        The plan, starting with CreateDirectory(root).
    """
    root = Path(root).resolve()
    resolver = resolver or ConflictResolver()
    entries = list(entries)

    plan = Plan(root)
    plan.add(CreateDirectory(root))

    # Top-level files own their names before any nested file is placed
    for entry in entries:
        if entry.parent == root:
            resolver.claim(entry.path)

    for entry in entries:
        if entry.parent == root:
            continue
        try:
            destination = resolver.resolve(root / entry.name)
        except ConflictResolutionExhausted as e:
            plan.add(Skip(entry.path, str(e)))
            continue
        plan.add(Move(entry.path, destination))

    return plan


def build_sort_plan(
    root: Path,
    outcomes: Iterable[tuple[Entry, object]],
    resolver: ConflictResolver | None = None,
) -> Plan:
    """
    Plan moving each classified entry into `root/<category>/`.

    Args:
        root: Root directory being sorted.
        outcomes: (entry, ClassificationResult or ClassificationError) pairs,
            in scan order.
        resolver: Run-scoped resolver (a fresh one by default).

    Returns:
        The plan. Each category directory is created once, before the first
        move into it. Failed classifications become Skip operations.
    """
    root = Path(root).resolve()
    resolver = resolver or ConflictResolver()
    plan = Plan(root)
    created: set[Path] = set()

    for entry, outcome in outcomes:
        if isinstance(outcome, ClassificationError):
            plan.add(Skip(entry.path, f"classification failed: {outcome}"))
            continue

        target_dir = root / outcome.category
        if entry.parent == target_dir:
            resolver.claim(entry.path)
            plan.add(Skip(entry.path, f"already in {outcome.category}"))
            continue

        try:
            destination = resolver.resolve(target_dir / entry.name)
        except ConflictResolutionExhausted as e:
            plan.add(Skip(entry.path, str(e)))
            continue

        if target_dir not in created:
            plan.add(CreateDirectory(target_dir))
            created.add(target_dir)
        plan.add(Move(entry.path, destination))

    return plan
