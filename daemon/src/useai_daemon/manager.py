"""Registry of live MCP connections, their sessions and idle timers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Protocol

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .config import IDLE_TIMEOUT_SECONDS, ORPHAN_SWEEP_INTERVAL_SECONDS, detect_version
from .keystore import load_or_create_signing_key
from .models import SessionSeal
from .paths import useai_home
from .recovery import seal_orphaned_chains
from .session_state import SessionState
from .store import SessionStore


logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class Transport(Protocol):
    session_id: str
    on_close: Callable[[], None] | None

    async def close(self) -> None: ...


class HttpTransport:
    """Server side of one streamable-HTTP MCP connection."""

    def __init__(self, session_id: str, client_info: Mapping[str, Any] | None = None) -> None:
        self.session_id = session_id
        self.client_info = dict(client_info) if client_info else None
        self.closed = False
        self.on_close: Callable[[], None] | None = None

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.on_close is not None:
            self.on_close()


@dataclass
class ActiveConnection:
    transport: Transport
    session: SessionState
    idle_task: asyncio.Task[None] | None = None


class SessionManager:
    """Owns every `(transport, session, idle timer)` entry of the daemon.

    All methods run on the daemon's event loop; sessions are never shared
    between connections, so only the index files need serialization, which
    `SessionStore` provides.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        signing_key: Ed25519PrivateKey | None = None,
        version: str | None = None,
        idle_timeout: float = IDLE_TIMEOUT_SECONDS,
        sweep_interval: float = ORPHAN_SWEEP_INTERVAL_SECONDS,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.store = store
        self.signing_key = signing_key
        self.version = version or detect_version()
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._sleep = sleep
        self.connections: dict[str, ActiveConnection] = {}
        self._started_at = time.monotonic()
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def create(cls, base: Path | None = None, **kwargs: Any) -> SessionManager:
        store = SessionStore(base or useai_home())
        signing_key = load_or_create_signing_key(store.keystore_path)
        return cls(store, signing_key=signing_key, **kwargs)

    async def start(self) -> None:
        """Repair the index, recover orphaned logs, then sweep periodically."""

        self._started_at = time.monotonic()
        self.store.deduplicate()
        seal_orphaned_chains(self.store, self.signing_key)
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        for connection_id in list(self.connections):
            await self.cleanup(connection_id)

    async def _sweep_loop(self) -> None:
        while True:
            await self._sleep(self.sweep_interval)
            try:
                seal_orphaned_chains(self.store, self.signing_key, exclude=self.live_session_ids())
            except Exception:  # noqa: BLE001
                logger.exception("Orphan sweep failed")

    def live_session_ids(self) -> set[str]:
        ids: set[str] = set()
        for connection in self.connections.values():
            ids.update(connection.session.live_session_ids())
        return ids

    def open(self, transport: Transport, client_info: Mapping[str, Any] | None = None) -> ActiveConnection:
        """Register a new connection with a fresh idle session and arm its timer."""

        connection_id = transport.session_id
        session = SessionState(
            self.store,
            signing_key=self.signing_key,
            client_info=client_info,
            version=self.version,
        )
        connection = ActiveConnection(transport=transport, session=session)
        transport.on_close = lambda: self._detach(connection_id)
        self.connections[connection_id] = connection
        self.touch(connection_id)
        logger.info("Opened connection %s", connection_id)
        return connection

    def get(self, connection_id: str) -> ActiveConnection | None:
        return self.connections.get(connection_id)

    def touch(self, connection_id: str) -> None:
        """Restart the full idle countdown for one connection."""

        connection = self.connections.get(connection_id)
        if connection is None:
            return
        if connection.idle_task is not None:
            connection.idle_task.cancel()
        connection.idle_task = asyncio.create_task(self._idle_countdown(connection_id, connection))

    async def _idle_countdown(self, connection_id: str, connection: ActiveConnection) -> None:
        await self._sleep(self.idle_timeout)
        if self.connections.get(connection_id) is not connection:
            return
        connection.idle_task = None
        try:
            sealed = self.auto_seal(connection)
        except Exception:  # noqa: BLE001
            logger.exception("Idle auto-seal failed for connection %s", connection_id)
            return
        if sealed:
            # The transport stays open; the next tool call lands in a fresh session.
            connection.session.reset()
            logger.info(
                "Idle timeout sealed %s on %s",
                ", ".join(seal.session_id for seal in sealed),
                connection_id,
            )

    def auto_seal(self, connection: ActiveConnection) -> list[SessionSeal]:
        """Seal the connection's session and any nested parents still open."""

        return connection.session.seal_all()

    def _detach(self, connection_id: str) -> ActiveConnection | None:
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return None
        if connection.idle_task is not None:
            connection.idle_task.cancel()
            connection.idle_task = None
        self.auto_seal(connection)
        return connection

    async def cleanup(self, connection_id: str) -> bool:
        """Seal and drop one connection. Returns False when it was already gone."""

        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        try:
            self._detach(connection_id)
        finally:
            self.connections.pop(connection_id, None)
            try:
                await connection.transport.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Closing transport %s failed: %s", connection_id, exc)
        logger.info("Closed connection %s", connection_id)
        return True

    def seal_active(self) -> int:
        """Seal every live session holding data and reset it in place."""

        sealed = 0
        for connection in list(self.connections.values()):
            seals = self.auto_seal(connection)
            if seals:
                connection.session.reset()
                sealed += len(seals)
        return sealed

    def count_active_chain_files(self) -> int:
        return sum(1 for _ in self.store.active_dir.glob("*.jsonl"))

    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self._started_at)

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "version": self.version,
            "active_sessions": self.count_active_chain_files(),
            "mcp_connections": len(self.connections),
            "uptime_seconds": self.uptime_seconds(),
        }
