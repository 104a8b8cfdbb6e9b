"""MCP tool definitions and dispatch onto a connection's `SessionState`."""

from __future__ import annotations

import json
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import milestone_tracking_enabled
from .frameworks import get_framework
from .keystore import UNSIGNED
from .models import COMPLEXITIES, MILESTONE_CATEGORIES, TASK_TYPES, MilestoneInput, SessionEvaluation, TaskType
from .privacy import is_path_like_text, is_secret_like_text, payload_contains_secrets
from .scoring import round_half_away
from .session_state import SessionState


RATING_SCHEMA = {"type": "integer", "minimum": 1, "maximum": 5}

TOOL_SCHEMAS: list[dict[str, Any]] = [
    {
        "name": "useai_start",
        "description": (
            "Start tracking an AI coding session. Call at the beginning of every response. "
            "Pass conversation_id from the previous response to stay in the same conversation."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_type": {"type": "string", "enum": list(TASK_TYPES)},
                "title": {"type": "string", "description": "Generic public title, no project or file names."},
                "private_title": {"type": "string", "description": "Detailed title for private records."},
                "project": {"type": "string"},
                "model": {"type": "string"},
                "conversation_id": {"type": "string"},
                "nested": {"type": "boolean", "description": "Keep the current session open and start a child."},
            },
            "additionalProperties": False,
        },
    },
    {
        "name": "useai_heartbeat",
        "description": "Record a heartbeat during long sessions to keep duration accurate.",
        "inputSchema": {"type": "object", "properties": {}, "additionalProperties": False},
    },
    {
        "name": "useai_end",
        "description": (
            "End the current session, recording languages, files touched, milestones and a self-evaluation. "
            "Each milestone needs a generic public title and may carry a detailed private_title."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_type": {"type": "string", "enum": list(TASK_TYPES)},
                "languages": {"type": "array", "items": {"type": "string"}},
                "files_touched_count": {"type": "integer", "minimum": 0},
                "milestones": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "title": {"type": "string"},
                            "private_title": {"type": "string"},
                            "category": {"type": "string", "enum": list(MILESTONE_CATEGORIES)},
                            "complexity": {"type": "string", "enum": list(COMPLEXITIES)},
                        },
                        "required": ["title", "category"],
                    },
                },
                "evaluation": {
                    "type": "object",
                    "properties": {
                        "prompt_quality": RATING_SCHEMA,
                        "context_provided": RATING_SCHEMA,
                        "independence_level": RATING_SCHEMA,
                        "scope_quality": RATING_SCHEMA,
                        "task_outcome": {"type": "string", "enum": ["completed", "partial", "abandoned", "blocked"]},
                        "iteration_count": {"type": "integer", "minimum": 1},
                        "tools_leveraged": {"type": "integer", "minimum": 0},
                    },
                    "required": ["prompt_quality", "context_provided", "independence_level", "scope_quality"],
                },
            },
            "additionalProperties": False,
        },
    },
]


class ToolCallError(ValueError):
    """Structured tool argument error returned to the MCP client."""

    def __init__(self, code: str, message: str, *, hint: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.hint:
            payload["hint"] = self.hint
        for key, value in self.context.items():
            if value is not None:
                payload[key] = value
        return payload


def _coerce_json_string(value: Any) -> Any:
    # Some clients send arrays and objects as JSON-encoded strings.
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


class StartArguments(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_type: TaskType | None = None
    title: str | None = Field(default=None, max_length=500)
    private_title: str | None = Field(default=None, max_length=500)
    project: str | None = Field(default=None, max_length=200)
    model: str | None = Field(default=None, max_length=200)
    conversation_id: str | None = Field(default=None, max_length=200)
    nested: bool = False


class HeartbeatArguments(BaseModel):
    model_config = ConfigDict(extra="forbid")


class EndArguments(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_type: TaskType | None = None
    languages: list[str] | None = None
    files_touched_count: int | None = Field(default=None, ge=0)
    milestones: list[MilestoneInput] | None = None
    evaluation: SessionEvaluation | None = None

    @field_validator("languages", "milestones", "evaluation", mode="before")
    @classmethod
    def _decode_json_strings(cls, value: Any) -> Any:
        return _coerce_json_string(value)


ARGUMENT_MODELS: dict[str, type[BaseModel]] = {
    "useai_start": StartArguments,
    "useai_heartbeat": HeartbeatArguments,
    "useai_end": EndArguments,
}


def _check_titles(*, public: list[str | None], private: list[str | None]) -> None:
    for value in [*public, *private]:
        if value and is_secret_like_text(value):
            raise ToolCallError(
                "TITLE_SECRET_LIKE",
                "Titles must not contain secret-like tokens.",
                hint="Describe the work without pasting credentials.",
            )
    for value in public:
        if value and is_path_like_text(value):
            raise ToolCallError(
                "TITLE_NOT_GENERIC",
                "Public titles must not contain file paths or file names.",
                hint="Move specifics into private_title; keep title generic.",
            )


def validate_tool_arguments(name: str, arguments: Mapping[str, Any] | None) -> BaseModel:
    """Parse raw tool arguments; malformed input never reaches the chain."""

    model = ARGUMENT_MODELS.get(name)
    if model is None:
        raise ToolCallError("TOOL_UNKNOWN", f"Unknown tool: {name}")
    try:
        parsed = model.model_validate(dict(arguments or {}))
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first["loc"]) or "<root>"
        raise ToolCallError("TOOL_ARGUMENTS_INVALID", f"{name} argument {where}: {first['msg']}", field=where) from exc

    if isinstance(parsed, StartArguments):
        _check_titles(public=[parsed.title], private=[parsed.private_title])
    elif isinstance(parsed, EndArguments):
        milestones = parsed.milestones or []
        _check_titles(
            public=[item.title for item in milestones],
            private=[item.private_title for item in milestones],
        )
        if parsed.evaluation is not None and payload_contains_secrets(parsed.evaluation.model_dump(exclude_none=True)):
            raise ToolCallError(
                "EVALUATION_SECRET_LIKE",
                "Evaluation reasons must not contain secret-like tokens.",
                hint="Summarize what was lacking without quoting credentials.",
            )
    return parsed


def build_instructions(config: Mapping[str, Any]) -> str:
    """Usage guidance sent to the client in the `initialize` result."""

    framework = get_framework(config.get("evaluation_framework"))
    lines = [
        "## UseAI Session Tracking",
        "- At the START of every response, call `useai_start` with the task_type and a generic title.",
        "- Pass the conversation_id from the previous `useai_start` result to stay in the same conversation.",
        "- For long sessions, call `useai_heartbeat` periodically.",
        "- At the END of every response, call `useai_end` with languages, files_touched_count, milestones and an evaluation.",
        f"  - **task_type values**: {', '.join(TASK_TYPES)}",
        f"  - **milestone category values**: {', '.join(MILESTONE_CATEGORIES)}",
        framework.instruction_text(str(config.get("evaluation_reasons", "all"))),
    ]
    return "\n".join(lines)


def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{round_half_away(seconds / 60)}m"
    return f"{seconds // 3600}h {(seconds // 60) % 60}m"


def call_tool(
    session: SessionState,
    name: str,
    arguments: Mapping[str, Any] | None = None,
    *,
    client_info: Mapping[str, Any] | None = None,
) -> str:
    """Run one tool against `session` and return the text shown to the model."""

    parsed = validate_tool_arguments(name, arguments)

    if isinstance(parsed, StartArguments):
        if parsed.nested and session.state == "active":
            session.save_parent_state()
            session.reset()
        session.start(
            parsed.task_type,
            title=parsed.title,
            private_title=parsed.private_title,
            project=parsed.project,
            model=parsed.model,
            conversation_id=parsed.conversation_id,
            client_info=client_info,
        )
        signed = "unsigned" if session.signing_key is None else "signed"
        return (
            f"useai session started: {session.task_type} on {session.client_name} · "
            f"{session.session_id[:8]} · conversation_id={session.conversation_id} "
            f"#{session.conversation_index} · {signed}"
        )

    if isinstance(parsed, HeartbeatArguments):
        record = session.heartbeat()
        if record is None:
            return "No active session. Call useai_start first."
        return f"Heartbeat recorded. Session active for {format_duration(session.duration_seconds())}."

    if not isinstance(parsed, EndArguments):
        raise ToolCallError("TOOL_UNKNOWN", f"Unknown tool: {name}")
    seal = session.end(
        parsed.task_type,
        languages=parsed.languages,
        files_touched_count=parsed.files_touched_count,
        milestones=parsed.milestones,
        evaluation=parsed.evaluation,
    )
    if seal is None:
        return "No active session to end."
    resumed = session.restore_parent_state()

    parts = [f"Session ended: {format_duration(seal.duration_seconds)} {seal.task_type}"]
    if seal.languages:
        parts.append(f"({', '.join(seal.languages)})")
    milestone_count = len(parsed.milestones or [])
    if milestone_count and milestone_tracking_enabled(session.store.load_config()):
        parts.append(f"· {milestone_count} milestone{'s' if milestone_count > 1 else ''} recorded")
    if seal.session_score is not None:
        framework = get_framework(seal.evaluation_framework)
        parts.append(f"· {framework.name} score {seal.session_score}")
    if seal.seal_signature == UNSIGNED:
        parts.append("· unsigned")
    if resumed:
        parts.append(f"· resumed session {session.session_id[:8]}")
    return " ".join(parts)
