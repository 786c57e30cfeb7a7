"""Per-fact mastery state for the 12x12 multiplication grid.

Cells are immutable value objects: :func:`apply_answer` returns a new cell and
never touches the one it was given, which lets the session engine keep its
own running per-fact state without aliasing the persisted grid.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Literal, Mapping, Optional, Sequence, Tuple

from engines.classifier import (
    DEFAULT_THRESHOLDS,
    MAX_FACTOR,
    SpeedBucket,
    TimeThresholds,
    classify_time,
    round_half_up,
)

CellState = Literal["mastered", "recently-failed", "not-mastered"]
Guardrail = Literal["1-5", "1-9", "1-12"]
Fact = Tuple[int, int]

MASTERY_THRESHOLD = 3
GRID_SIZE = MAX_FACTOR
GUARDRAIL_LEVELS: tuple[Guardrail, ...] = ("1-5", "1-9", "1-12")
DEFAULT_GUARDRAIL: Guardrail = "1-12"

_GUARDRAIL_RANGES: dict[str, int] = {"1-5": 5, "1-9": 9, "1-12": 12}


class GuardrailError(ValueError):
    """Raised when a guardrail label is not one of the supported levels."""


def guardrail_range(level: str) -> int:
    try:
        return _GUARDRAIL_RANGES[level]
    except KeyError as exc:
        raise GuardrailError(f"Unknown guardrail level: {level!r}") from exc


def lower_guardrail(level: str) -> Optional[Guardrail]:
    """Return the next level down, or ``None`` when already at the lowest."""

    index = GUARDRAIL_LEVELS.index(level) if level in GUARDRAIL_LEVELS else -1
    if index <= 0:
        return None
    return GUARDRAIL_LEVELS[index - 1]


def is_locked(multiplicand: int, multiplier: int, level: str) -> bool:
    limit = guardrail_range(level)
    return (multiplicand - 1) >= limit or (multiplier - 1) >= limit


@dataclass(frozen=True)
class GridCell:
    multiplicand: int
    multiplier: int
    consecutive_correct: int = 0
    # None until the fact has been attempted at least once.
    last_attempt_correct: Optional[bool] = None
    attempts: int = 0
    is_locked: bool = False
    average_time_seconds: float = 0.0
    total_time_spent: float = 0.0
    last_attempt_time_classification: Optional[SpeedBucket] = None
    mastery_achieved_at: Optional[datetime] = None

    @property
    def fact(self) -> Fact:
        return (self.multiplicand, self.multiplier)

    @property
    def is_mastered(self) -> bool:
        return self.consecutive_correct >= MASTERY_THRESHOLD

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.mastery_achieved_at is not None:
            payload["mastery_achieved_at"] = self.mastery_achieved_at.isoformat()
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GridCell":
        achieved = data.get("mastery_achieved_at")
        if isinstance(achieved, str) and achieved:
            achieved = datetime.fromisoformat(achieved)
        elif not isinstance(achieved, datetime):
            achieved = None
        last_correct = data.get("last_attempt_correct")
        return cls(
            multiplicand=int(data["multiplicand"]),
            multiplier=int(data["multiplier"]),
            consecutive_correct=int(data.get("consecutive_correct") or 0),
            last_attempt_correct=None if last_correct is None else bool(last_correct),
            attempts=int(data.get("attempts") or 0),
            is_locked=bool(data.get("is_locked") or False),
            average_time_seconds=float(data.get("average_time_seconds") or 0.0),
            total_time_spent=float(data.get("total_time_spent") or 0.0),
            last_attempt_time_classification=data.get("last_attempt_time_classification"),
            mastery_achieved_at=achieved,
        )


def empty_cell(multiplicand: int, multiplier: int, *, locked: bool = False) -> GridCell:
    return GridCell(multiplicand=multiplicand, multiplier=multiplier, is_locked=locked)


def apply_answer(
    cell: GridCell,
    correct: bool,
    elapsed_seconds: float,
    thresholds: TimeThresholds = DEFAULT_THRESHOLDS,
    now: Optional[datetime] = None,
) -> GridCell:
    """Fold one answer into ``cell`` and return the updated copy."""

    streak = cell.consecutive_correct + 1 if correct else 0
    previous = cell.attempts
    average = (cell.average_time_seconds * previous + elapsed_seconds) / (previous + 1)

    achieved_at = cell.mastery_achieved_at
    if achieved_at is None and streak == MASTERY_THRESHOLD:
        achieved_at = now or datetime.now(timezone.utc)

    return replace(
        cell,
        consecutive_correct=streak,
        last_attempt_correct=bool(correct),
        attempts=previous + 1,
        average_time_seconds=average,
        total_time_spent=cell.total_time_spent + elapsed_seconds,
        last_attempt_time_classification=classify_time(elapsed_seconds, thresholds),
        mastery_achieved_at=achieved_at,
    )


def derive_state(cell: GridCell) -> CellState:
    if cell.is_locked:
        return "not-mastered"
    if cell.consecutive_correct >= MASTERY_THRESHOLD:
        return "mastered"
    if cell.last_attempt_correct is False:
        return "recently-failed"
    return "not-mastered"


def mastery_percentage(grid: "MasteryGrid", region_range: Optional[int] = None) -> int:
    cells = list(grid.region(region_range)) if region_range is not None else list(grid.cells())
    if not cells:
        return 0
    mastered = sum(1 for cell in cells if cell.is_mastered)
    return round_half_up(100 * mastered / len(cells))


class MasteryGrid:
    """Fully populated 12x12 matrix of :class:`GridCell` values."""

    def __init__(self, rows: Sequence[Sequence[GridCell]]) -> None:
        self._rows: List[List[GridCell]] = [list(row) for row in rows]

    # ------------------------------------------------------------------
    # constructors
    # ------------------------------------------------------------------
    @classmethod
    def empty(cls, guardrail: Optional[str] = None) -> "MasteryGrid":
        rows = [
            [
                empty_cell(m, n, locked=bool(guardrail) and is_locked(m, n, guardrail))
                for n in range(1, GRID_SIZE + 1)
            ]
            for m in range(1, GRID_SIZE + 1)
        ]
        return cls(rows)

    @classmethod
    def from_cells(cls, cells: Iterable[GridCell], guardrail: Optional[str] = None) -> "MasteryGrid":
        """Build a complete grid, synthesising zero cells for facts not provided."""

        grid = cls.empty(guardrail)
        for cell in cells:
            grid._put(cell)
        if guardrail:
            grid = grid.with_guardrail(guardrail)
        return grid

    @classmethod
    def from_rows(cls, rows: Sequence[Sequence[Any]], guardrail: Optional[str] = None) -> "MasteryGrid":
        cells: List[GridCell] = []
        for row in rows or []:
            for entry in row or []:
                if entry is None:
                    continue
                cells.append(entry if isinstance(entry, GridCell) else GridCell.from_mapping(entry))
        return cls.from_cells(cells, guardrail)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    @property
    def rows(self) -> List[List[GridCell]]:
        return [list(row) for row in self._rows]

    def cell(self, multiplicand: int, multiplier: int) -> GridCell:
        row, col = multiplicand - 1, multiplier - 1
        if 0 <= row < len(self._rows) and 0 <= col < len(self._rows[row]):
            found = self._rows[row][col]
            if found is not None:
                return found
        return empty_cell(multiplicand, multiplier)

    def cells(self) -> Iterator[GridCell]:
        for row in self._rows:
            yield from row

    def region(self, size: int) -> Iterator[GridCell]:
        for row in self._rows[:size]:
            yield from row[:size]

    def mastery_percentage(self) -> int:
        return mastery_percentage(self)

    def guardrail_mastery_percentage(self, level: str) -> int:
        return mastery_percentage(self, guardrail_range(level))

    def states(self) -> List[List[CellState]]:
        return [[derive_state(cell) for cell in row] for row in self._rows]

    def to_rows(self) -> List[List[Dict[str, Any]]]:
        return [[cell.to_dict() for cell in row] for row in self._rows]

    # ------------------------------------------------------------------
    # updates (always return a new grid)
    # ------------------------------------------------------------------
    def with_guardrail(self, level: str) -> "MasteryGrid":
        return MasteryGrid(
            [
                [replace(cell, is_locked=is_locked(cell.multiplicand, cell.multiplier, level)) for cell in row]
                for row in self._rows
            ]
        )

    def merge(self, updates: Iterable[GridCell]) -> "MasteryGrid":
        """Replace cells by fact; lock flags of the existing grid are kept."""

        merged = MasteryGrid(self._rows)
        for update in updates:
            current = merged.cell(update.multiplicand, update.multiplier)
            merged._put(replace(update, is_locked=current.is_locked))
        return merged

    def _put(self, cell: GridCell) -> None:
        row, col = cell.multiplicand - 1, cell.multiplier - 1
        if 0 <= row < GRID_SIZE and 0 <= col < GRID_SIZE:
            self._rows[row][col] = cell
