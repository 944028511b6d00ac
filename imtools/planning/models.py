"""
Plan data structures.

A plan is an ordered list of operations derived before anything on disk is
touched. Order matters: a CreateDirectory always precedes the moves into it.
"""

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class PlanOperation:
    """Base class for all plan operations."""
    kind: str = field(default="", init=False)


@dataclass(frozen=True)
class Move(PlanOperation):
    source: Path
    destination: Path
    kind: str = field(default="MOVE", init=False)

    def describe(self) -> str:
        return f"{self.source} -> {self.destination}"


@dataclass(frozen=True)
class CreateDirectory(PlanOperation):
    path: Path
    kind: str = field(default="CREATE_DIRECTORY", init=False)

    def describe(self) -> str:
        return f"mkdir {self.path}"


@dataclass(frozen=True)
class Skip(PlanOperation):
    source: Path
    reason: str
    kind: str = field(default="SKIP", init=False)

    def describe(self) -> str:
        return f"{self.source} ({self.reason})"


@dataclass
class Plan:
    root: Path
    operations: list[PlanOperation] = field(default_factory=list)

    def add(self, op: PlanOperation) -> None:
        self.operations.append(op)

    @property
    def moves(self) -> list[Move]:
        return [op for op in self.operations if isinstance(op, Move)]

    @property
    def directories(self) -> list[CreateDirectory]:
        return [op for op in self.operations if isinstance(op, CreateDirectory)]

    @property
    def skips(self) -> list[Skip]:
        return [op for op in self.operations if isinstance(op, Skip)]

    @property
    def planned(self) -> int:
        return len(self.moves)

    @property
    def skipped(self) -> int:
        return len(self.skips)

    def __len__(self) -> int:
        return len(self.operations)

    def __iter__(self):
        return iter(self.operations)
