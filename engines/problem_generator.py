"""Problem queues for placement tests and adaptive practice sessions."""

from __future__ import annotations

import math
import random
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from engines.classifier import DIFFICULTY_BANDS, DifficultyBand, difficulty_band, is_valid_fact
from engines.mastery_grid import MASTERY_THRESHOLD, MasteryGrid, guardrail_range

PLACEMENT_QUESTIONS_BY_GRADE: Dict[str, int] = {
    "1": 20,
    "2": 20,
    "3": 20,
    "4": 20,
    "5": 20,
}
DEFAULT_PLACEMENT_QUESTIONS = 20
PLACEMENT_BASIC_SHARE = 0.9
PLACEMENT_BASIC_RANGE = (1, 9)
PLACEMENT_ADVANCED_RANGE = (9, 12)

PRACTICE_SESSION_SIZE = 30
PRACTICE_BAND_SHARES: Dict[str, float] = {
    "basic": 0.5,
    "intermediate": 0.35,
    "advanced": 0.15,
}
PERSONALIZED_FALLBACK_COUNT = 10

_FACT_LABEL = re.compile(r"(\d+) × (\d+)")


@dataclass(frozen=True)
class Problem:
    id: str
    multiplicand: int
    multiplier: int
    answer: int
    difficulty: DifficultyBand

    @property
    def fact(self) -> Tuple[int, int]:
        return (self.multiplicand, self.multiplier)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Problem":
        multiplicand = int(data["multiplicand"])
        multiplier = int(data["multiplier"])
        if not is_valid_fact(multiplicand, multiplier):
            raise ValueError(f"fact {multiplicand}x{multiplier} is outside the 12x12 grid")
        return cls(
            id=str(data.get("id") or f"problem-{multiplicand}-{multiplier}"),
            multiplicand=multiplicand,
            multiplier=multiplier,
            answer=int(data.get("answer", multiplicand * multiplier)),
            difficulty=data.get("difficulty") or difficulty_band(multiplicand, multiplier),
        )


def make_problem(multiplicand: int, multiplier: int, problem_id: Optional[str] = None) -> Problem:
    return Problem(
        id=problem_id or f"problem-{multiplicand}-{multiplier}",
        multiplicand=multiplicand,
        multiplier=multiplier,
        answer=multiplicand * multiplier,
        difficulty=difficulty_band(multiplicand, multiplier),
    )


def placement_question_count(grade_level: Optional[str]) -> int:
    return PLACEMENT_QUESTIONS_BY_GRADE.get(str(grade_level), DEFAULT_PLACEMENT_QUESTIONS)


def _sample_region(
    low: int,
    high: int,
    count: int,
    used: Set[Tuple[int, int]],
    rng: random.Random,
) -> List[Tuple[int, int]]:
    """Draw ``count`` pairs from ``[low, high]^2`` without repeating ``used`` pairs.

    Once the region runs out of unused pairs the remainder is filled with
    random pairs that may repeat.
    """

    pool = [(m, n) for m in range(low, high + 1) for n in range(low, high + 1) if (m, n) not in used]
    rng.shuffle(pool)
    picked = pool[:count]
    used.update(picked)
    while len(picked) < count:
        picked.append((rng.randint(low, high), rng.randint(low, high)))
    return picked


def generate_placement_problems(
    grade_level: Optional[str],
    rng: Optional[random.Random] = None,
) -> List[Problem]:
    rng = rng or random.Random()
    total = placement_question_count(grade_level)
    basic_count = math.floor(total * PLACEMENT_BASIC_SHARE)
    advanced_count = total - basic_count

    used: Set[Tuple[int, int]] = set()
    pairs = _sample_region(*PLACEMENT_BASIC_RANGE, basic_count, used, rng)
    pairs += _sample_region(*PLACEMENT_ADVANCED_RANGE, advanced_count, used, rng)
    rng.shuffle(pairs)
    return [make_problem(m, n, f"problem-{index}") for index, (m, n) in enumerate(pairs)]


def practice_candidates(grid: MasteryGrid) -> Dict[str, List[Problem]]:
    """Group unlocked, unmastered facts by difficulty band."""

    bands: Dict[str, List[Problem]] = {band: [] for band in DIFFICULTY_BANDS}
    for cell in grid.cells():
        if cell.is_locked or cell.consecutive_correct >= MASTERY_THRESHOLD:
            continue
        problem = make_problem(cell.multiplicand, cell.multiplier)
        bands[problem.difficulty].append(problem)
    return bands


def generate_practice_problems(
    grid: MasteryGrid,
    rng: Optional[random.Random] = None,
    *,
    session_size: int = PRACTICE_SESSION_SIZE,
) -> List[Problem]:
    rng = rng or random.Random()
    bands = practice_candidates(grid)
    for problems in bands.values():
        rng.shuffle(problems)

    available = sum(len(problems) for problems in bands.values())
    total = min(session_size, available)

    queue: List[Problem] = []
    for band in DIFFICULTY_BANDS:
        # A band short of candidates shrinks the session; nothing is borrowed.
        # Every non-empty band contributes at least one fact so tiny grids still get practice.
        share = max(math.floor(total * PRACTICE_BAND_SHARES[band]), 1)
        count = min(share, len(bands[band]))
        queue.extend(bands[band][:count])
    rng.shuffle(queue)
    return queue


def parse_fact_label(label: str) -> Optional[Tuple[int, int]]:
    match = _FACT_LABEL.search(label)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def generate_personalized_problems(
    struggling_areas: Iterable[str],
    guardrail: str,
    rng: Optional[random.Random] = None,
) -> List[Problem]:
    """Problems for the facts named in advisor labels, or random ones inside the guardrail."""

    problems: List[Problem] = []
    for area in struggling_areas:
        fact = parse_fact_label(area)
        if fact:
            problems.append(make_problem(fact[0], fact[1], f"personalized-{fact[0]}-{fact[1]}"))

    if problems:
        return problems

    rng = rng or random.Random()
    limit = guardrail_range(guardrail)
    for index in range(PERSONALIZED_FALLBACK_COUNT):
        problems.append(make_problem(rng.randint(1, limit), rng.randint(1, limit), f"personalized-{index}"))
    return problems


def problems_to_payload(problems: Sequence[Problem]) -> List[Dict[str, Any]]:
    return [problem.to_dict() for problem in problems]
