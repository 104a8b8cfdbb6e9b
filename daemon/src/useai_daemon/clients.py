from __future__ import annotations

import os
from typing import Any, Mapping


AI_CLIENT_ENV_VARS = (
    ("CURSOR_EDITOR", "cursor"),
    ("WINDSURF_EDITOR", "windsurf"),
    ("CLAUDE_CODE", "claude-code"),
    ("VSCODE_PID", "vscode"),
    ("CODEX_CLI", "codex"),
    ("GEMINI_CLI", "gemini-cli"),
    ("JETBRAINS_IDE", "jetbrains"),
    ("ZED_EDITOR", "zed"),
)

MCP_CLIENT_NAME_MAP = {
    "claude-code": "claude-code",
    "claude code": "claude-code",
    "claude-desktop": "claude-desktop",
    "claude desktop": "claude-desktop",
    "cursor": "cursor",
    "windsurf": "windsurf",
    "codeium": "windsurf",
    "vscode": "vscode",
    "visual studio code": "vscode",
    "vscode-insiders": "vscode-insiders",
    "codex": "codex",
    "codex-cli": "codex",
    "gemini-cli": "gemini-cli",
    "gemini cli": "gemini-cli",
    "zed": "zed",
    "cline": "cline",
    "roo-code": "roo-code",
    "roo-cline": "roo-code",
    "amazon-q": "amazon-q",
    "opencode": "opencode",
    "goose": "goose",
    "junie": "junie",
}


def normalize_mcp_client_name(name: str) -> str:
    lowered = name.strip().lower()
    return MCP_CLIENT_NAME_MAP.get(lowered, lowered)


def detect_client(env: Mapping[str, str] | None = None) -> str:
    """Guess the calling editor from its environment markers."""

    source = os.environ if env is None else env
    for variable, client in AI_CLIENT_ENV_VARS:
        if source.get(variable):
            return client
    return source.get("MCP_CLIENT_NAME") or "unknown"


def resolve_client(client_info: Mapping[str, Any] | None, env: Mapping[str, str] | None = None) -> str:
    """Prefer the name announced during the MCP handshake over environment hints."""

    if client_info:
        name = client_info.get("name")
        if isinstance(name, str) and name.strip():
            return normalize_mcp_client_name(name)
    return detect_client(env)
