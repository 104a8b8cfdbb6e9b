"""HTTP surface of the daemon: health, MCP over HTTP and local stats."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from .frameworks import get_framework
from .manager import ActiveConnection, HttpTransport, SessionManager
from .scoring import compute_local_aps, compute_streak
from .tools import TOOL_SCHEMAS, ToolCallError, build_instructions, call_tool


logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2025-03-26"
SESSION_HEADER = "Mcp-Session-Id"
TRACE_HEADER = "X-Useai-Trace-Id"


def _rpc_result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _dispatch(connection: ActiveConnection, body: dict[str, Any]) -> Response:
    """Answer one JSON-RPC message on an established connection."""

    if "id" not in body:
        return Response(status_code=202)
    request_id = body.get("id")
    method = body.get("method")
    params = body.get("params") or {}

    if method == "ping":
        return JSONResponse(_rpc_result(request_id, {}))
    if method == "tools/list":
        return JSONResponse(_rpc_result(request_id, {"tools": TOOL_SCHEMAS}))
    if method == "tools/call":
        if not isinstance(params, dict):
            return JSONResponse(_rpc_error(request_id, -32602, "params must be an object"))
        transport = connection.transport
        client_info = transport.client_info if isinstance(transport, HttpTransport) else None
        try:
            text = call_tool(
                connection.session,
                str(params.get("name")),
                params.get("arguments"),
                client_info=client_info,
            )
        except ToolCallError as exc:
            content = [{"type": "text", "text": json.dumps(exc.to_dict())}]
            return JSONResponse(_rpc_result(request_id, {"content": content, "isError": True}))
        return JSONResponse(_rpc_result(request_id, {"content": [{"type": "text", "text": text}]}))
    if method == "initialize":
        return JSONResponse(_rpc_error(request_id, -32600, "Session already initialized"), status_code=400)
    return JSONResponse(_rpc_error(request_id, -32601, f"Method not found: {method}"))


def create_app(manager: SessionManager) -> FastAPI:
    """Create daemon routes backed by one `SessionManager` for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await manager.start()
        try:
            yield
        finally:
            await manager.shutdown()

    app = FastAPI(title="UseAI Daemon", version=manager.version, lifespan=lifespan)

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get(TRACE_HEADER) or "").strip()
        trace_id = incoming[:200] if incoming else f"daemon:{uuid4()}"
        try:
            response = await call_next(request)
        except Exception:  # noqa: BLE001
            logger.exception("Unhandled error on %s %s (trace %s)", request.method, request.url.path, trace_id)
            response = JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "Internal server error",
                    "trace_id": trace_id,
                },
            )
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.get("/health")
    def health() -> dict[str, Any]:
        return manager.health()

    @app.post("/mcp")
    async def mcp_post(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(_rpc_error(None, -32700, "Parse error"), status_code=400)
        if not isinstance(body, dict):
            return JSONResponse(_rpc_error(None, -32600, "Batch requests are not supported"), status_code=400)

        session_id = request.headers.get(SESSION_HEADER)
        if session_id:
            connection = manager.get(session_id)
            if connection is None:
                return JSONResponse(_rpc_error(None, -32000, "Session not found"), status_code=404)
            manager.touch(session_id)
            return _dispatch(connection, body)

        if body.get("method") != "initialize":
            return JSONResponse(
                _rpc_error(body.get("id"), -32000, "Bad Request: No valid session ID provided"),
                status_code=400,
            )
        params = body.get("params") if isinstance(body.get("params"), dict) else {}
        client_info = params.get("clientInfo") if isinstance(params.get("clientInfo"), dict) else None
        new_session_id = str(uuid4())
        manager.open(HttpTransport(new_session_id, client_info), client_info)
        result = {
            "protocolVersion": params.get("protocolVersion") or MCP_PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "UseAI", "version": manager.version},
            "instructions": build_instructions(manager.store.load_config()),
        }
        return JSONResponse(_rpc_result(body.get("id"), result), headers={SESSION_HEADER: new_session_id})

    @app.delete("/mcp")
    async def mcp_delete(request: Request) -> dict[str, Any]:
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            raise HTTPException(status_code=400, detail="Missing session ID")
        if not await manager.cleanup(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"closed": session_id}

    @app.post("/api/seal-active")
    async def seal_active() -> dict[str, Any]:
        return {"sealed": manager.seal_active()}

    @app.get("/api/local/aps")
    def local_aps(framework: str | None = None) -> dict[str, Any]:
        sessions = manager.store.load_sessions()
        milestones = manager.store.load_milestones()
        streak = compute_streak(sessions)
        framework_id = framework or manager.store.load_config().get("evaluation_framework")
        payload = compute_local_aps(sessions, milestones, streak, get_framework(framework_id)).to_dict()
        payload["streak_days"] = streak
        return payload

    @app.get("/api/local/sessions")
    def local_sessions() -> list[dict[str, Any]]:
        return [seal.to_json_dict() for seal in manager.store.load_sessions()]

    @app.get("/api/local/milestones")
    def local_milestones() -> list[dict[str, Any]]:
        return [milestone.model_dump(mode="json") for milestone in manager.store.load_milestones()]

    return app
