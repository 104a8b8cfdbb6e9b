#!/usr/bin/env python3
"""Local smoke test for the UseAI daemon + MCP stdio bridge."""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from urllib.error import URLError
from urllib.request import urlopen


def _get_json(url: str) -> object:
    with urlopen(url, timeout=2) as response:  # nosec B310
        return json.loads(response.read().decode("utf-8"))


def _wait_for_health(daemon_url: str, timeout_seconds: float = 15.0) -> None:
    deadline = time.time() + timeout_seconds
    while time.time() < deadline:
        try:
            payload = _get_json(f"{daemon_url}/health")
            if isinstance(payload, dict) and payload.get("status") == "ok":
                return
        except URLError:
            pass
        time.sleep(0.25)
    raise RuntimeError("Daemon did not become healthy in time.")


def _send(proc: subprocess.Popen[str], message: dict) -> None:
    if proc.stdin is None:
        raise RuntimeError("MCP process stdin is unavailable.")
    proc.stdin.write(json.dumps({"jsonrpc": "2.0", **message}) + "\n")
    proc.stdin.flush()


def _rpc(proc: subprocess.Popen[str], request_id: int, method: str, params: dict | None = None) -> dict:
    message: dict = {"id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    _send(proc, message)

    line = proc.stdout.readline() if proc.stdout else ""
    if not line:
        stderr_output = proc.stderr.read() if proc.stderr else ""
        raise RuntimeError(f"No response from MCP process. stderr: {stderr_output}")
    payload = json.loads(line)
    if payload.get("error"):
        raise RuntimeError(payload["error"].get("message", "Unknown MCP error"))
    result = payload.get("result", {})
    if result.get("isError"):
        raise RuntimeError(f"{method} failed: {result.get('content')}")
    return result


def _tool_text(result: dict) -> str:
    content = result.get("content") or [{}]
    return str(content[0].get("text", ""))


def _stop(proc: subprocess.Popen[str] | None) -> None:
    if proc is None or proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        proc.kill()


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test the UseAI daemon + MCP bridge")
    parser.add_argument("--port", type=int, default=19211)
    args = parser.parse_args()

    repo_root = Path(__file__).resolve().parents[1]
    daemon_url = f"http://127.0.0.1:{args.port}"

    with tempfile.TemporaryDirectory(prefix="useai-smoke-") as tmp_home:
        env = os.environ.copy()
        env["USEAI_HOME"] = tmp_home
        source_dirs = [str(repo_root / "daemon" / "src"), str(repo_root / "mcp-server" / "src")]
        env["PYTHONPATH"] = os.pathsep.join([*source_dirs, env.get("PYTHONPATH", "")]).rstrip(os.pathsep)

        daemon_proc = subprocess.Popen(  # noqa: S603
            [sys.executable, "-m", "useai_daemon.cli", "daemon", "--port", str(args.port), "--log-level", "warning"],
            cwd=repo_root,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        mcp_proc: subprocess.Popen[str] | None = None
        try:
            _wait_for_health(daemon_url)
            mcp_proc = subprocess.Popen(  # noqa: S603
                [sys.executable, "-m", "useai_mcp.server", "--daemon-url", daemon_url],
                cwd=repo_root,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )

            _rpc(mcp_proc, 1, "initialize", {"clientInfo": {"name": "useai-smoke"}})
            _send(mcp_proc, {"method": "notifications/initialized"})
            started = _rpc(
                mcp_proc,
                2,
                "tools/call",
                {"name": "useai_start", "arguments": {"task_type": "testing", "title": "Smoke test run"}},
            )
            if not _tool_text(started).startswith("useai session started"):
                raise RuntimeError(f"Unexpected useai_start reply: {_tool_text(started)}")

            ended = _rpc(
                mcp_proc,
                3,
                "tools/call",
                {
                    "name": "useai_end",
                    "arguments": {
                        "languages": ["python"],
                        "files_touched_count": 1,
                        "milestones": [{"title": "Ran end-to-end smoke test", "category": "test"}],
                    },
                },
            )
            if not _tool_text(ended).startswith("Session ended"):
                raise RuntimeError(f"Unexpected useai_end reply: {_tool_text(ended)}")

            sessions = _get_json(f"{daemon_url}/api/local/sessions")
            if not isinstance(sessions, list) or len(sessions) != 1:
                raise RuntimeError(f"Expected one sealed session, got: {sessions}")
            print("MCP smoke test passed.")
            return 0
        finally:
            _stop(mcp_proc)
            _stop(daemon_proc)


if __name__ == "__main__":
    raise SystemExit(main())
