from datetime import datetime, timezone

import pytest

from engines.classifier import TimeThresholds
from engines.mastery_grid import (
    GridCell,
    GuardrailError,
    MasteryGrid,
    apply_answer,
    derive_state,
    empty_cell,
    guardrail_range,
    is_locked,
    lower_guardrail,
    mastery_percentage,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def test_apply_answer_does_not_mutate_input():
    cell = empty_cell(3, 4)
    updated = apply_answer(cell, True, 4.0)
    assert cell.attempts == 0
    assert cell.consecutive_correct == 0
    assert updated.attempts == 1
    assert updated.consecutive_correct == 1


def test_apply_answer_running_mean_and_totals():
    cell = GridCell(3, 4, attempts=2, average_time_seconds=6.0, total_time_spent=12.0)
    updated = apply_answer(cell, False, 9.0)
    assert updated.average_time_seconds == pytest.approx(7.0)
    assert updated.total_time_spent == pytest.approx(21.0)
    assert updated.consecutive_correct == 0
    assert updated.last_attempt_correct is False
    assert updated.last_attempt_time_classification == "medium"


def test_apply_answer_uses_given_thresholds():
    updated = apply_answer(empty_cell(2, 2), True, 3.0, TimeThresholds(fast=2, medium=2.5))
    assert updated.last_attempt_time_classification == "slow"


def test_mastery_timestamp_set_once_on_third_correct():
    cell = empty_cell(7, 8)
    cell = apply_answer(cell, True, 2.0, now=T0)
    cell = apply_answer(cell, True, 2.0, now=T0)
    assert cell.mastery_achieved_at is None
    cell = apply_answer(cell, True, 2.0, now=T0)
    assert cell.consecutive_correct == 3
    assert cell.mastery_achieved_at == T0

    cell = apply_answer(cell, True, 2.0, now=T1)
    assert cell.mastery_achieved_at == T0


def test_mastery_timestamp_survives_a_broken_streak():
    cell = GridCell(7, 8, consecutive_correct=3, attempts=3, mastery_achieved_at=T0)
    cell = apply_answer(cell, False, 2.0, now=T1)
    assert cell.consecutive_correct == 0
    assert cell.mastery_achieved_at == T0
    for _ in range(3):
        cell = apply_answer(cell, True, 2.0, now=T1)
    assert cell.mastery_achieved_at == T0


def test_derive_state_priority():
    assert derive_state(GridCell(1, 1, consecutive_correct=5, is_locked=True)) == "not-mastered"
    assert derive_state(GridCell(1, 1, consecutive_correct=3, last_attempt_correct=False)) == "mastered"
    assert derive_state(GridCell(1, 1, consecutive_correct=1, last_attempt_correct=False)) == "recently-failed"
    assert derive_state(GridCell(1, 1, consecutive_correct=2, last_attempt_correct=True)) == "not-mastered"


def test_never_attempted_cell_is_not_mastered():
    assert derive_state(empty_cell(6, 6)) == "not-mastered"


def test_guardrail_ranges_and_locks():
    assert guardrail_range("1-5") == 5
    assert guardrail_range("1-9") == 9
    assert guardrail_range("1-12") == 12
    assert not is_locked(5, 5, "1-5")
    assert is_locked(6, 1, "1-5")
    assert is_locked(1, 10, "1-9")
    assert not is_locked(12, 12, "1-12")
    with pytest.raises(GuardrailError):
        guardrail_range("1-20")


def test_lower_guardrail_steps_down_one_level():
    assert lower_guardrail("1-12") == "1-9"
    assert lower_guardrail("1-9") == "1-5"
    assert lower_guardrail("1-5") is None


def test_grid_is_fully_populated_with_zero_cells():
    grid = MasteryGrid.from_cells([GridCell(2, 3, attempts=4)], guardrail="1-9")
    rows = grid.rows
    assert len(rows) == 12
    assert all(len(row) == 12 for row in rows)
    assert grid.cell(2, 3).attempts == 4
    assert grid.cell(11, 11).attempts == 0
    assert grid.cell(11, 11).is_locked
    assert not grid.cell(9, 9).is_locked


def test_from_rows_accepts_mappings():
    rows = [[{"multiplicand": 1, "multiplier": 1, "consecutive_correct": 3, "last_attempt_correct": 1}]]
    grid = MasteryGrid.from_rows(rows, "1-12")
    assert grid.cell(1, 1).is_mastered
    assert grid.cell(1, 1).last_attempt_correct is True


def test_mastery_percentage_full_grid_and_region():
    mastered = [GridCell(m, n, consecutive_correct=3) for m in range(1, 6) for n in range(1, 6)]
    grid = MasteryGrid.from_cells(mastered)
    assert grid.guardrail_mastery_percentage("1-5") == 100
    assert mastery_percentage(grid, 9) == 31
    assert grid.mastery_percentage() == 17


def test_mastery_percentage_of_empty_region_is_zero():
    assert mastery_percentage(MasteryGrid.empty(), 0) == 0


def test_merge_replaces_by_fact_and_keeps_locks():
    grid = MasteryGrid.empty("1-5")
    merged = grid.merge([GridCell(6, 6, consecutive_correct=2, attempts=2), GridCell(2, 2, attempts=1)])
    assert merged.cell(6, 6).attempts == 2
    assert merged.cell(6, 6).is_locked
    assert merged.cell(2, 2).attempts == 1
    assert grid.cell(2, 2).attempts == 0


def test_with_guardrail_recomputes_locks():
    grid = MasteryGrid.empty("1-5").with_guardrail("1-12")
    assert not any(cell.is_locked for cell in grid.cells())


def test_cell_round_trips_through_dict():
    cell = GridCell(4, 4, consecutive_correct=3, last_attempt_correct=True, attempts=3, mastery_achieved_at=T0)
    assert GridCell.from_mapping(cell.to_dict()) == cell
