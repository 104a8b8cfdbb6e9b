"""AI Proficiency Score (APS) composed from sealed sessions and milestones."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from .frameworks import EvaluationFramework, get_framework


APS_WEIGHTS = {
    "output": 0.25,
    "efficiency": 0.25,
    "prompt_quality": 0.20,
    "consistency": 0.15,
    "breadth": 0.15,
}

COMPLEXITY_WEIGHTS = {
    "simple": 1,
    "trivial": 1,
    "easy": 1,
    "low": 1,
    "medium": 2,
    "moderate": 2,
    "complex": 4,
    "hard": 4,
    "difficult": 4,
    "high": 4,
}
DEFAULT_COMPLEXITY_WEIGHT = 2


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""

    rounded = Decimal(repr(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(rounded)


def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def complexity_weight(complexity: Any) -> int:
    if not isinstance(complexity, str):
        return DEFAULT_COMPLEXITY_WEIGHT
    return COMPLEXITY_WEIGHTS.get(complexity, DEFAULT_COMPLEXITY_WEIGHT)


@dataclass(frozen=True)
class APSComponents:
    output: float = 0.0
    efficiency: float = 0.0
    prompt_quality: float = 0.0
    consistency: float = 0.0
    breadth: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class APSResult:
    score: int
    components: APSComponents
    session_count: int
    framework: str
    window_start: str | None = None
    window_end: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "components": self.components.to_dict(),
            "session_count": self.session_count,
            "framework": self.framework,
            "window": {"start": self.window_start, "end": self.window_end},
        }


def compute_aps_components(
    sessions: Iterable[Any],
    milestones: Iterable[Any],
    streak: int,
    framework: EvaluationFramework | None = None,
) -> APSComponents:
    """Normalize each APS term to [0, 1]."""

    fw = framework or get_framework()
    session_rows = list(sessions)

    weighted = sum(complexity_weight(_field(item, "complexity")) for item in milestones)
    output = min(1.0, weighted / 10)

    total_files = sum(int(_field(item, "files_touched", 0) or 0) for item in session_rows)
    total_hours = sum(int(_field(item, "duration_seconds", 0) or 0) for item in session_rows) / 3600
    efficiency = min(1.0, total_files / max(total_hours, 1) / 20)

    evaluated = [item for item in session_rows if _field(item, "evaluation") is not None]
    prompt_quality = 0.0
    if evaluated:
        total_score = sum(fw.compute_session_score(_field(item, "evaluation")) for item in evaluated)
        prompt_quality = total_score / len(evaluated) / 100

    consistency = min(1.0, streak / 14)

    languages = {language for item in session_rows for language in (_field(item, "languages") or [])}
    breadth = min(1.0, len(languages) / 5)

    return APSComponents(
        output=output,
        efficiency=efficiency,
        prompt_quality=prompt_quality,
        consistency=consistency,
        breadth=breadth,
    )


def compute_local_aps(
    sessions: Iterable[Any],
    milestones: Iterable[Any],
    streak: int,
    framework: EvaluationFramework | None = None,
) -> APSResult:
    """Score 0-1000 from the weighted APS components. Pure and deterministic."""

    fw = framework or get_framework()
    session_rows = list(sessions)
    components = compute_aps_components(session_rows, milestones, streak, fw)
    weighted_sum = (
        components.output * APS_WEIGHTS["output"]
        + components.efficiency * APS_WEIGHTS["efficiency"]
        + components.prompt_quality * APS_WEIGHTS["prompt_quality"]
        + components.consistency * APS_WEIGHTS["consistency"]
        + components.breadth * APS_WEIGHTS["breadth"]
    )

    window_start = window_end = None
    if session_rows:
        ordered = sorted(session_rows, key=lambda item: str(_field(item, "started_at", "")))
        window_start = _field(ordered[0], "started_at")
        window_end = _field(ordered[-1], "ended_at")

    return APSResult(
        score=round_half_away(weighted_sum * 1000),
        components=components,
        session_count=len(session_rows),
        framework=fw.id,
        window_start=window_start,
        window_end=window_end,
    )


def _session_day(started_at: Any) -> date | None:
    if not isinstance(started_at, str) or not started_at:
        return None
    try:
        parsed = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).date()


def compute_streak(sessions: Iterable[Any], today: date | None = None) -> int:
    """Consecutive active days ending today or yesterday."""

    days = {day for day in (_session_day(_field(item, "started_at")) for item in sessions) if day is not None}
    if not days:
        return 0
    current_day = today or datetime.now(tz=UTC).date()
    latest = max(days)
    if latest < current_day - timedelta(days=1):
        return 0
    streak = 0
    cursor = latest
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak
