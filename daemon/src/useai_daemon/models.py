"""Pydantic models for persisted seals, milestones and tool-supplied evaluations."""

from __future__ import annotations

from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field


TaskType = Literal[
    "coding",
    "debugging",
    "testing",
    "planning",
    "reviewing",
    "documenting",
    "learning",
    "deployment",
    "devops",
    "research",
    "migration",
    "design",
    "data",
    "security",
    "configuration",
    "code_review",
    "code-review",
    "investigation",
    "infrastructure",
    "analysis",
    "ops",
    "setup",
    "refactoring",
    "other",
]

MilestoneCategory = Literal[
    "feature",
    "bugfix",
    "refactor",
    "test",
    "docs",
    "setup",
    "deployment",
    "fix",
    "bug_fix",
    "testing",
    "documentation",
    "config",
    "configuration",
    "analysis",
    "research",
    "investigation",
    "performance",
    "cleanup",
    "chore",
    "security",
    "migration",
    "design",
    "devops",
    "other",
]

Complexity = Literal["simple", "medium", "complex", "low", "high", "trivial", "easy", "moderate", "hard", "difficult"]
TaskOutcome = Literal["completed", "partial", "abandoned", "blocked"]

TASK_TYPES: tuple[str, ...] = get_args(TaskType)
MILESTONE_CATEGORIES: tuple[str, ...] = get_args(MilestoneCategory)
COMPLEXITIES: tuple[str, ...] = get_args(Complexity)


class SessionEvaluation(BaseModel):
    """Self-assessment attached to `useai_end`, rated 1-5 per rubric dimension."""

    model_config = ConfigDict(extra="ignore")

    prompt_quality: int = Field(ge=1, le=5)
    prompt_quality_reason: str | None = None
    prompt_quality_ideal: str | None = None
    context_provided: int = Field(ge=1, le=5)
    context_provided_reason: str | None = None
    context_provided_ideal: str | None = None
    independence_level: int = Field(ge=1, le=5)
    independence_level_reason: str | None = None
    independence_level_ideal: str | None = None
    scope_quality: int = Field(ge=1, le=5)
    scope_quality_reason: str | None = None
    scope_quality_ideal: str | None = None
    task_outcome: TaskOutcome = "completed"
    task_outcome_reason: str | None = None
    iteration_count: int = Field(default=1, ge=1)
    tools_leveraged: int = Field(default=0, ge=0)


class MilestoneInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=500)
    private_title: str | None = Field(default=None, max_length=500)
    category: MilestoneCategory
    complexity: Complexity | None = None


class Milestone(BaseModel):
    """One accomplishment persisted to `milestones.json`."""

    id: str
    session_id: str
    title: str
    private_title: str | None = None
    project: str | None = None
    category: str
    complexity: str = "medium"
    duration_minutes: int = 0
    languages: list[str] = Field(default_factory=list)
    client: str = "unknown"
    created_at: str
    published: bool = False
    published_at: str | None = None
    chain_hash: str = ""


class SessionSeal(BaseModel):
    """Closing summary of a session as stored in `sessions.json`."""

    model_config = ConfigDict(extra="allow")

    session_id: str
    conversation_id: str | None = None
    conversation_index: int | None = None
    client: str
    task_type: str
    languages: list[str] = Field(default_factory=list)
    files_touched: int = 0
    project: str | None = None
    title: str | None = None
    private_title: str | None = None
    model: str | None = None
    evaluation: SessionEvaluation | None = None
    session_score: int | None = None
    evaluation_framework: str | None = None
    started_at: str
    ended_at: str
    duration_seconds: int
    heartbeat_count: int = 0
    record_count: int = 0
    chain_start_hash: str
    chain_end_hash: str
    seal_signature: str
    auto_sealed: bool | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
