"""
Plan validation.

Checks a built plan against its structural invariants before anything is
applied.
"""

from pathlib import Path

from ..errors import PlanValidationError
from .models import CreateDirectory, Move, Plan


def validate_plan(plan: Plan) -> list[str]:
    """
    Validate the plan before applying.

    Checks for:
    - Destination collisions (two moves targeting the same path)
    - Destinations outside the root
    - No-op moves (same source and destination)
    - Moves into a directory that is neither planned earlier nor the root

    Args:
        plan: The plan to check.

    Returns:
        A list of non-fatal warnings.

    Raises:
        PlanValidationError: If any invariant is violated.
    """
    root = Path(plan.root)
    errors = []
    warnings = []

    destinations: dict[Path, Path] = {}  # destination -> source
    directories: set[Path] = {root}

    for op in plan:
        if isinstance(op, CreateDirectory):
            if not _within(op.path, root):
                errors.append(f"Directory outside root: {op.path}")
            directories.add(op.path)
            continue

        if not isinstance(op, Move):
            continue

        if op.source == op.destination:
            errors.append(f"No-op move: {op.source}")
            continue

        if not _within(op.destination, root):
            errors.append(f"Destination outside root: {op.destination}")

        if op.destination in destinations:
            errors.append(
                f"Collision: '{destinations[op.destination]}' and '{op.source}' "
                f"both target '{op.destination}'"
            )
            continue
        destinations[op.destination] = op.source

        if op.destination.parent not in directories:
            if op.destination.parent.is_dir():
                warnings.append(f"Moving into unplanned directory: {op.destination.parent}")
            else:
                errors.append(f"Missing CreateDirectory before move into {op.destination.parent}")

    if errors:
        raise PlanValidationError(
            "Plan is invalid:\n" + "\n".join(f"  - {e}" for e in errors)
        )

    return warnings


def _within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents
