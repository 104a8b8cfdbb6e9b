"""Daemon constants and `config.json` loading with schema validation."""

from __future__ import annotations

import json
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator


DAEMON_PORT = 19200
IDLE_TIMEOUT_SECONDS = 30 * 60
ORPHAN_SWEEP_INTERVAL_SECONDS = 15 * 60
EVALUATION_REASONS = ("all", "below_perfect", "none")

DEFAULT_CONFIG: dict[str, Any] = {
    "milestone_tracking": True,
    "evaluation_tracking": True,
    "evaluation_framework": "space",
    "evaluation_reasons": "all",
}

CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "milestone_tracking": {"type": "boolean"},
        "evaluation_tracking": {"type": "boolean"},
        "evaluation_framework": {"type": "string", "minLength": 1},
        "evaluation_reasons": {"enum": list(EVALUATION_REASONS)},
        "capture": {
            "type": "object",
            "properties": {
                "milestones": {"type": "boolean"},
                "evaluation": {"type": "boolean"},
                "evaluation_reasons": {"enum": list(EVALUATION_REASONS)},
            },
        },
    },
}


def detect_version() -> str:
    """Resolve installed package version with local fallback."""

    try:
        return package_version("useai-daemon")
    except PackageNotFoundError:
        return "0.1.0"


def load_config(path: Path) -> dict[str, Any]:
    """Load `config.json` merged over defaults; a missing file yields defaults."""

    if not path.exists():
        return dict(DEFAULT_CONFIG)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Config file is not valid JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Config file must be a JSON object: {path}")

    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ValueError(f"Config validation failed for {path} at {where}: {first.message}")

    merged = dict(DEFAULT_CONFIG)
    merged.update(payload)
    capture = payload.get("capture")
    if isinstance(capture, dict):
        if "milestones" in capture:
            merged["milestone_tracking"] = capture["milestones"]
        if "evaluation" in capture:
            merged["evaluation_tracking"] = capture["evaluation"]
        if "evaluation_reasons" in capture:
            merged["evaluation_reasons"] = capture["evaluation_reasons"]
    return merged


def milestone_tracking_enabled(config: dict[str, Any]) -> bool:
    return bool(config.get("milestone_tracking", True))


def evaluation_tracking_enabled(config: dict[str, Any]) -> bool:
    return bool(config.get("evaluation_tracking", True))
