"""Evaluation frameworks that turn a 1-5 self-assessment into a 0-100 session score."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator


DEFAULT_FRAMEWORK_ID = "space"
RUBRIC_DIMENSIONS = ("prompt_quality", "context_provided", "independence_level", "scope_quality")


def _rubric_dir() -> Path:
    return Path(__file__).resolve().parent / "rubrics"


def _rating(evaluation: Any, dimension: str) -> float:
    if isinstance(evaluation, dict):
        value = evaluation.get(dimension)
    else:
        value = getattr(evaluation, dimension, None)
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"Evaluation is missing a numeric {dimension} rating.")
    return float(value)


@dataclass(frozen=True)
class DimensionRubric:
    dimension: str
    label: str
    weight: float
    levels: tuple[str, ...]
    space_mapping: str | None = None


@dataclass(frozen=True)
class EvaluationFramework:
    """A weighted rubric over the four scored dimensions of a session."""

    id: str
    name: str
    description: str
    version: str
    rubrics: tuple[DimensionRubric, ...]

    def compute_session_score(self, evaluation: Any) -> float:
        """Return `sum(rating / 5 * weight) * 100`, in rubric order."""

        total = 0.0
        for rubric in self.rubrics:
            total += (_rating(evaluation, rubric.dimension) / 5) * rubric.weight
        return total * 100

    def instruction_text(self, evaluation_reasons: str = "all") -> str:
        lines = [
            f"- **Evaluation rubric ({self.name} framework):** Score each metric 1-5 using these criteria:",
        ]
        for rubric in self.rubrics:
            mapping = f"{rubric.space_mapping}, " if rubric.space_mapping else ""
            lines.append(
                f"  - **{rubric.dimension}** ({mapping}weight {rubric.weight:.2f}): "
                f"1={rubric.levels[0]}, 3={rubric.levels[2]}, 5={rubric.levels[4]}"
            )
        lines.append("- Also include: task_outcome (completed/partial/abandoned/blocked), iteration_count, tools_leveraged count.")
        if evaluation_reasons == "all":
            lines.append("- For EVERY scored metric, provide a *_reason field explaining the score.")
        elif evaluation_reasons == "below_perfect":
            lines.append("- For any scored metric < 5, provide a *_reason field with what was lacking and a tip to improve.")
        return "\n".join(lines)


def _framework_from_payload(payload: dict[str, Any], source: Path) -> EvaluationFramework:
    rubrics = tuple(
        DimensionRubric(
            dimension=item["dimension"],
            label=item["label"],
            weight=float(item["weight"]),
            levels=tuple(item["levels"]),
            space_mapping=item.get("space_mapping"),
        )
        for item in payload["rubrics"]
    )
    dimensions = sorted(rubric.dimension for rubric in rubrics)
    if dimensions != sorted(RUBRIC_DIMENSIONS):
        raise ValueError(f"Framework {source} must score each rubric dimension exactly once.")
    if not math.isclose(sum(rubric.weight for rubric in rubrics), 1.0, abs_tol=1e-9):
        raise ValueError(f"Framework weights must sum to 1: {source}")
    return EvaluationFramework(
        id=payload["framework_id"],
        name=payload["name"],
        description=payload["description"],
        version=str(payload["version"]),
        rubrics=rubrics,
    )


def load_frameworks(rubric_dir: Path | None = None) -> dict[str, EvaluationFramework]:
    """Load and validate every `*.rubric.yaml` file."""

    directory = rubric_dir or _rubric_dir()
    schema_path = directory / "rubric.schema.json"
    try:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Rubric schema is missing or invalid: {schema_path}") from exc
    validator = Draft202012Validator(schema)

    loaded: dict[str, EvaluationFramework] = {}
    for rubric_path in sorted(directory.glob("*.rubric.yaml")):
        payload = yaml.safe_load(rubric_path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Rubric file must be a mapping: {rubric_path}")
        errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.path))
        if errors:
            first = errors[0]
            where = ".".join(str(part) for part in first.path) or "<root>"
            raise ValueError(f"Rubric schema validation failed for {rubric_path} at {where}: {first.message}")
        framework = _framework_from_payload(payload, rubric_path)
        if framework.id in loaded:
            raise ValueError(f"Duplicate framework_id detected: {framework.id}")
        loaded[framework.id] = framework

    if DEFAULT_FRAMEWORK_ID not in loaded:
        raise ValueError(f"No {DEFAULT_FRAMEWORK_ID} framework found under {directory}")
    return loaded


@lru_cache(maxsize=1)
def _packaged_frameworks() -> dict[str, EvaluationFramework]:
    return load_frameworks()


def framework_ids() -> list[str]:
    return sorted(_packaged_frameworks())


def get_framework(framework_id: str | None = None) -> EvaluationFramework:
    """Return the named framework, falling back to SPACE for unknown ids."""

    frameworks = _packaged_frameworks()
    return frameworks.get(framework_id or DEFAULT_FRAMEWORK_ID, frameworks[DEFAULT_FRAMEWORK_ID])
