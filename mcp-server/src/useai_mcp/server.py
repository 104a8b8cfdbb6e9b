"""Stdio MCP bridge that forwards JSON-RPC messages to the local UseAI daemon."""

from __future__ import annotations

import argparse
import ipaddress
import json
import sys
from typing import Any, TextIO
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit
from urllib.request import Request, urlopen

from useai_daemon.config import DAEMON_PORT


SESSION_HEADER = "Mcp-Session-Id"
DEFAULT_DAEMON_URL = f"http://127.0.0.1:{DAEMON_PORT}"


class DaemonSessionExpired(RuntimeError):
    """The daemon no longer knows this bridge's session (for example after a restart)."""


def is_local_host(hostname: str) -> bool:
    normalized = hostname.strip().lower().rstrip(".")
    if normalized == "localhost":
        return True
    try:
        return ipaddress.ip_address(normalized).is_loopback
    except ValueError:
        return False


def validate_daemon_url(daemon_url: str, *, allow_nonlocal: bool = False) -> str:
    """Validate daemon base URL with localhost-only default safety guard."""

    parsed = urlsplit(daemon_url)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("daemon-url must use http or https scheme.")
    if parsed.username or parsed.password:
        raise ValueError("daemon-url must not include userinfo.")
    if not parsed.hostname:
        raise ValueError("daemon-url must include a host.")
    if not allow_nonlocal and not is_local_host(parsed.hostname):
        raise ValueError("daemon-url must target localhost by default. Use --allow-nonlocal to override.")
    return daemon_url.rstrip("/")


class MCPBridge:
    """Relays MCP messages to `/mcp`, carrying the daemon-issued session id."""

    def __init__(self, daemon_url: str, *, allow_nonlocal: bool = False, timeout: float = 10.0) -> None:
        self.daemon_url = validate_daemon_url(daemon_url, allow_nonlocal=allow_nonlocal)
        self.timeout = timeout
        self.session_id: str | None = None
        self._initialize_message: dict[str, Any] | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    def _post(self, message: dict[str, Any]) -> dict[str, Any] | None:
        request = Request(
            url=f"{self.daemon_url}/mcp",
            method="POST",
            headers=self._headers(),
            data=json.dumps(message).encode("utf-8"),
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:  # nosec B310
                issued = response.headers.get(SESSION_HEADER)
                if issued:
                    self.session_id = issued
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8")
            if exc.code == 404 and self.session_id:
                raise DaemonSessionExpired(detail) from exc
            raise RuntimeError(f"Daemon HTTP error {exc.code}: {detail}") from exc
        except URLError as exc:
            raise RuntimeError(f"Daemon request failed: {exc}") from exc
        if not raw.strip():
            return None
        return json.loads(raw)

    def forward(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Send one message; re-initialize once if the daemon lost the session."""

        if message.get("method") == "initialize":
            self._initialize_message = message
            self.session_id = None
        try:
            return self._post(message)
        except DaemonSessionExpired:
            if self._initialize_message is None:
                raise
            self.session_id = None
            self._post(self._initialize_message)
            return self._post(message)

    def close(self) -> None:
        if not self.session_id:
            return
        request = Request(url=f"{self.daemon_url}/mcp", method="DELETE", headers=self._headers())
        try:
            with urlopen(request, timeout=self.timeout):  # nosec B310
                pass
        except (HTTPError, URLError) as exc:
            print(f"[useai-mcp] failed to close daemon session: {exc}", file=sys.stderr)
        self.session_id = None


def _write_message(stream: TextIO, payload: dict[str, Any]) -> None:
    stream.write(json.dumps(payload) + "\n")
    stream.flush()


def _error(response_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": response_id, "error": {"code": code, "message": message}}


def serve_stdio(bridge: MCPBridge, stdin: TextIO | None = None, stdout: TextIO | None = None) -> int:
    """Serve newline-delimited JSON-RPC over stdio until EOF, then close the session."""

    source = stdin or sys.stdin
    sink = stdout or sys.stdout
    try:
        for line in source:
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                _write_message(sink, _error(None, -32700, "Parse error"))
                continue
            if not isinstance(message, dict):
                _write_message(sink, _error(None, -32600, "Invalid request"))
                continue
            try:
                response = bridge.forward(message)
            except RuntimeError as exc:
                if "id" in message:
                    _write_message(sink, _error(message.get("id"), -32603, str(exc)))
                continue
            if response is not None:
                _write_message(sink, response)
    finally:
        bridge.close()
    return 0


def main() -> int:
    """CLI entrypoint for the stdio bridge."""

    parser = argparse.ArgumentParser(description="UseAI MCP bridge over the local daemon.")
    parser.add_argument("--daemon-url", default=DEFAULT_DAEMON_URL, help="Local daemon base URL.")
    parser.add_argument(
        "--allow-nonlocal",
        action="store_true",
        help="Allow non-local daemon hosts (off by default for safety).",
    )
    parser.add_argument("--timeout", type=float, default=10.0, help="Per-request timeout in seconds.")
    args = parser.parse_args()

    try:
        bridge = MCPBridge(args.daemon_url, allow_nonlocal=args.allow_nonlocal, timeout=args.timeout)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    return serve_stdio(bridge)


if __name__ == "__main__":
    raise SystemExit(main())
