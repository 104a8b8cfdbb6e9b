from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from useai_daemon.clients import AI_CLIENT_ENV_VARS
from useai_daemon.session_state import SessionState
from useai_daemon.store import SessionStore
from useai_daemon.tools import (
    TOOL_SCHEMAS,
    ToolCallError,
    build_instructions,
    call_tool,
    format_duration,
    validate_tool_arguments,
)


EVALUATION = {"prompt_quality": 5, "context_provided": 3, "independence_level": 2, "scope_quality": 4}


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 2, 9, 10, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def _clean_client_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for variable, _ in AI_CLIENT_ENV_VARS:
        monkeypatch.delenv(variable, raising=False)
    monkeypatch.delenv("MCP_CLIENT_NAME", raising=False)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def session(tmp_path: Path, clock: FakeClock) -> SessionState:
    return SessionState(SessionStore(tmp_path), clock=clock, version="0.1.0")


def test_tool_schemas_cover_lifecycle() -> None:
    assert [tool["name"] for tool in TOOL_SCHEMAS] == ["useai_start", "useai_heartbeat", "useai_end"]
    assert all(tool["inputSchema"]["type"] == "object" for tool in TOOL_SCHEMAS)


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(0, "0s"), (45, "45s"), (90, "2m"), (150, "3m"), (3599, "60m"), (3725, "1h 2m"), (7200, "2h 0m")],
)
def test_format_duration(seconds: int, expected: str) -> None:
    assert format_duration(seconds) == expected


def test_unknown_tool_is_rejected() -> None:
    with pytest.raises(ToolCallError) as excinfo:
        validate_tool_arguments("useai_delete_everything", {})
    assert excinfo.value.code == "TOOL_UNKNOWN"


def test_invalid_arguments_report_field() -> None:
    with pytest.raises(ToolCallError) as excinfo:
        validate_tool_arguments("useai_start", {"task_type": "juggling"})
    payload = excinfo.value.to_dict()
    assert payload["code"] == "TOOL_ARGUMENTS_INVALID"
    assert payload["field"] == "task_type"

    with pytest.raises(ToolCallError):
        validate_tool_arguments("useai_heartbeat", {"unexpected": 1})


def test_public_titles_must_stay_generic() -> None:
    with pytest.raises(ToolCallError) as excinfo:
        validate_tool_arguments("useai_start", {"title": "Edited src/auth/login.py"})
    assert excinfo.value.code == "TITLE_NOT_GENERIC"
    parsed = validate_tool_arguments(
        "useai_start", {"title": "Improved login flow", "private_title": "Edited src/auth/login.py"}
    )
    assert parsed.private_title == "Edited src/auth/login.py"  # type: ignore[attr-defined]


def test_secret_like_text_is_rejected() -> None:
    token = "sk-" + "a1B2c3D4e5F6g7H8i9J0"
    with pytest.raises(ToolCallError) as excinfo:
        validate_tool_arguments("useai_start", {"private_title": f"Rotated {token}"})
    assert excinfo.value.code == "TITLE_SECRET_LIKE"
    with pytest.raises(ToolCallError) as excinfo:
        validate_tool_arguments(
            "useai_end", {"evaluation": {**EVALUATION, "prompt_quality_reason": f"pasted {token}"}}
        )
    assert excinfo.value.code == "EVALUATION_SECRET_LIKE"


def test_end_accepts_json_encoded_arrays() -> None:
    parsed = validate_tool_arguments(
        "useai_end",
        {
            "languages": '["python", "sql"]',
            "milestones": json.dumps([{"title": "Added caching layer", "category": "feature"}]),
            "evaluation": json.dumps(EVALUATION),
        },
    )
    assert parsed.languages == ["python", "sql"]  # type: ignore[attr-defined]
    assert parsed.milestones[0].category == "feature"  # type: ignore[attr-defined]
    assert parsed.evaluation.scope_quality == 4  # type: ignore[attr-defined]


def test_start_reports_session_and_conversation(session: SessionState) -> None:
    text = call_tool(session, "useai_start", {"task_type": "debugging"}, client_info={"name": "Cursor"})
    assert text == (
        f"useai session started: debugging on cursor · {session.session_id[:8]} · "
        f"conversation_id={session.conversation_id} #0 · unsigned"
    )


def test_heartbeat_without_session_after_end(session: SessionState) -> None:
    call_tool(session, "useai_start", {})
    assert call_tool(session, "useai_heartbeat", {}).startswith("Heartbeat recorded. Session active for ")
    call_tool(session, "useai_end", {})
    assert call_tool(session, "useai_heartbeat", {}) == "No active session. Call useai_start first."


def test_end_summarizes_sealed_session(session: SessionState, clock: FakeClock) -> None:
    call_tool(session, "useai_start", {"task_type": "coding"})
    clock.now += timedelta(seconds=150)
    text = call_tool(
        session,
        "useai_end",
        {
            "languages": ["python"],
            "files_touched_count": 2,
            "milestones": [{"title": "Added caching layer", "category": "feature", "complexity": "complex"}],
            "evaluation": EVALUATION,
        },
    )
    assert text == "Session ended: 3m coding (python) · 1 milestone recorded · SPACE score 71 · unsigned"
    assert call_tool(session, "useai_end", {}) == "No active session to end."


def test_nested_start_resumes_parent_on_end(session: SessionState) -> None:
    call_tool(session, "useai_start", {"task_type": "coding"})
    outer_id = session.session_id
    call_tool(session, "useai_start", {"task_type": "research", "nested": True})
    assert session.session_id != outer_id
    text = call_tool(session, "useai_end", {})
    assert text.endswith(f"· resumed session {outer_id[:8]}")
    assert session.session_id == outer_id
    assert session.store.find_seal(outer_id) is None


def test_instructions_mention_tools_and_rubric() -> None:
    text = build_instructions({"evaluation_framework": "raw", "evaluation_reasons": "below_perfect"})
    assert "useai_start" in text
    assert "useai_end" in text
    assert "Basic framework" in text
    assert "< 5" in text
