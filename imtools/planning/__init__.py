"""
Planning module for imtools.

Provides:
- Plan operations and the Plan container
- Conflict resolution for destination paths
- Plan builders for flatten and sort
- Plan validation
"""

from .models import PlanOperation, Move, CreateDirectory, Skip, Plan
from .resolver import ConflictResolver, resolve_conflict
from .builder import build_flatten_plan, build_sort_plan
from .validator import validate_plan

__all__ = [
    "PlanOperation",
    "Move",
    "CreateDirectory",
    "Skip",
    "Plan",
    "ConflictResolver",
    "resolve_conflict",
    "build_flatten_plan",
    "build_sort_plan",
    "validate_plan",
]
