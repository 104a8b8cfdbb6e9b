from __future__ import annotations

from datetime import date

import pytest

from useai_daemon.frameworks import get_framework
from useai_daemon.scoring import (
    compute_aps_components,
    compute_local_aps,
    compute_streak,
    complexity_weight,
    round_half_away,
)


EVALUATION = {"prompt_quality": 5, "context_provided": 3, "independence_level": 2, "scope_quality": 4}


def _session(day: str, **overrides):  # type: ignore[no-untyped-def]
    payload = {
        "session_id": f"s-{day}",
        "started_at": f"{day}T09:00:00.000Z",
        "ended_at": f"{day}T10:00:00.000Z",
        "duration_seconds": 3600,
        "files_touched": 0,
        "languages": [],
    }
    payload.update(overrides)
    return payload


@pytest.mark.parametrize(
    ("value", "expected"),
    [(2.5, 3), (-2.5, -3), (0.5, 1), (1.4999, 1), (70.99999999999999, 71), (0.0, 0)],
)
def test_round_half_away(value: float, expected: int) -> None:
    assert round_half_away(value) == expected


def test_complexity_weights_and_default() -> None:
    assert complexity_weight("trivial") == 1
    assert complexity_weight("moderate") == 2
    assert complexity_weight("difficult") == 4
    assert complexity_weight("unheard-of") == 2
    assert complexity_weight(None) == 2


def test_empty_history_scores_zero() -> None:
    result = compute_local_aps([], [], 0)
    assert result.score == 0
    assert set(result.components.to_dict().values()) == {0.0}
    assert result.session_count == 0
    assert result.to_dict()["window"] == {"start": None, "end": None}


def test_output_saturates_at_one() -> None:
    milestones = [{"complexity": "complex"}] * 3
    assert compute_aps_components([], milestones, 0).output == 1.0
    assert compute_aps_components([], [{"complexity": "simple"}], 0).output == pytest.approx(0.1)


def test_session_score_for_perfect_ratings_is_100_under_both_frameworks() -> None:
    perfect = {dimension: 5 for dimension in EVALUATION}
    assert round_half_away(get_framework("space").compute_session_score(perfect)) == 100
    assert round_half_away(get_framework("raw").compute_session_score(perfect)) == 100


def test_weighted_session_score_differs_by_framework() -> None:
    assert round_half_away(get_framework("space").compute_session_score(EVALUATION)) == 71
    assert round_half_away(get_framework("raw").compute_session_score(EVALUATION)) == 70


def test_components_combine_into_weighted_aps() -> None:
    sessions = [
        _session("2026-02-08", files_touched=10, languages=["python", "sql"], evaluation=EVALUATION),
        _session("2026-02-09", files_touched=10, languages=["python", "go", "rust"]),
    ]
    milestones = [{"complexity": "complex"}, {"complexity": "medium"}]
    components = compute_aps_components(sessions, milestones, 7, get_framework("raw"))
    assert components.output == pytest.approx(0.6)
    assert components.efficiency == pytest.approx(0.5)
    assert components.prompt_quality == pytest.approx(0.7)
    assert components.consistency == pytest.approx(0.5)
    assert components.breadth == pytest.approx(0.8)

    result = compute_local_aps(sessions, milestones, 7, get_framework("raw"))
    # 0.6*0.25 + 0.5*0.25 + 0.7*0.20 + 0.5*0.15 + 0.8*0.15 = 0.61
    assert result.score == 610
    assert result.framework == "raw"
    assert result.window_start == "2026-02-08T09:00:00.000Z"
    assert result.window_end == "2026-02-09T10:00:00.000Z"


def test_streak_counts_consecutive_days_ending_today_or_yesterday() -> None:
    sessions = [_session("2026-02-07"), _session("2026-02-08"), _session("2026-02-09"), _session("2026-02-01")]
    assert compute_streak(sessions, today=date(2026, 2, 9)) == 3
    assert compute_streak(sessions, today=date(2026, 2, 10)) == 3
    assert compute_streak(sessions, today=date(2026, 2, 11)) == 0
    assert compute_streak([], today=date(2026, 2, 9)) == 0
    assert compute_streak([{"started_at": "garbage"}], today=date(2026, 2, 9)) == 0
