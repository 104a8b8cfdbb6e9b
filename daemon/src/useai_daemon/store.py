"""Session and milestone indexes shared by every live session."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from .config import load_config
from .models import Milestone, SessionSeal
from .paths import ensure_home_dirs


logger = logging.getLogger(__name__)

PLACEHOLDER_PROJECTS = {"untitled", "mcp", "unknown"}


class IndexCorruptedError(ValueError):
    """Raised when an index file cannot be parsed; never repaired silently."""


def _load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise IndexCorruptedError(f"Index file is not valid JSON: {path}") from exc


def _save_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    payload = json.dumps(value, indent=2)
    for attempt in range(5):
        temp_path.write_text(payload, encoding="utf-8")
        try:
            temp_path.replace(path)
            return
        except PermissionError:
            if attempt == 4:
                raise
            # On Windows, AV/indexers can briefly lock newly-written temp files.
            time.sleep(0.02 * (attempt + 1))


def seal_richness(seal: SessionSeal) -> int:
    score = 0
    if seal.title:
        score += 10
    if seal.private_title:
        score += 10
    if seal.conversation_id:
        score += 20
    if seal.evaluation is not None:
        score += 20
    if seal.languages:
        score += 5
    if seal.files_touched > 0:
        score += 5
    if seal.project and seal.project not in PLACEHOLDER_PROJECTS:
        score += 5
    return score


class SessionStore:
    """Owns `sessions.json` and `milestones.json`.

    Every read-modify-write goes through `self._lock`, so an idle auto-seal
    for one session cannot drop a concurrent `end` written for another.
    """

    def __init__(self, base: Path) -> None:
        dirs = ensure_home_dirs(base)
        self.base = base
        self.data_dir = dirs["data"]
        self.active_dir = dirs["active"]
        self.sealed_dir = dirs["sealed"]
        self._lock = threading.Lock()

    @property
    def sessions_path(self) -> Path:
        return self.data_dir / "sessions.json"

    @property
    def milestones_path(self) -> Path:
        return self.data_dir / "milestones.json"

    @property
    def keystore_path(self) -> Path:
        return self.base / "keystore.json"

    @property
    def config_path(self) -> Path:
        return self.base / "config.json"

    def load_config(self) -> dict[str, Any]:
        return load_config(self.config_path)

    def _read_sessions(self) -> list[SessionSeal]:
        payload = _load_json(self.sessions_path, [])
        if not isinstance(payload, list):
            raise IndexCorruptedError(f"Session index must be a JSON array: {self.sessions_path}")
        try:
            return [SessionSeal.model_validate(item) for item in payload]
        except ValidationError as exc:
            raise IndexCorruptedError(f"Session index holds an invalid seal: {self.sessions_path}") from exc

    def _read_milestones(self) -> list[Milestone]:
        payload = _load_json(self.milestones_path, [])
        if not isinstance(payload, list):
            raise IndexCorruptedError(f"Milestone index must be a JSON array: {self.milestones_path}")
        try:
            return [Milestone.model_validate(item) for item in payload]
        except ValidationError as exc:
            raise IndexCorruptedError(f"Milestone index holds an invalid entry: {self.milestones_path}") from exc

    def _write_sessions(self, seals: list[SessionSeal]) -> None:
        _save_json(self.sessions_path, [seal.to_json_dict() for seal in seals])

    def load_sessions(self) -> list[SessionSeal]:
        with self._lock:
            return self._read_sessions()

    def load_milestones(self) -> list[Milestone]:
        with self._lock:
            return self._read_milestones()

    def find_seal(self, session_id: str) -> SessionSeal | None:
        for seal in self.load_sessions():
            if seal.session_id == session_id:
                return seal
        return None

    def upsert_seal(self, seal: SessionSeal, *, prefer_richer: bool = False) -> None:
        """Insert `seal`, replacing any entry with the same session id.

        With `prefer_richer`, an existing entry that carries more detail wins.
        """

        with self._lock:
            seals = self._read_sessions()
            for index, existing in enumerate(seals):
                if existing.session_id != seal.session_id:
                    continue
                if prefer_richer and seal_richness(existing) > seal_richness(seal):
                    return
                seals[index] = seal
                break
            else:
                seals.append(seal)
            self._write_sessions(seals)

    def update_seal(self, session_id: str, **changes: Any) -> SessionSeal | None:
        with self._lock:
            seals = self._read_sessions()
            for index, existing in enumerate(seals):
                if existing.session_id == session_id:
                    updated = existing.model_copy(update=changes)
                    seals[index] = updated
                    self._write_sessions(seals)
                    return updated
        return None

    def append_milestones(self, milestones: Iterable[Milestone]) -> None:
        rows = list(milestones)
        if not rows:
            return
        with self._lock:
            existing = self._read_milestones()
            existing.extend(rows)
            _save_json(self.milestones_path, [row.model_dump(mode="json") for row in existing])

    def deduplicate(self) -> int:
        """Collapse duplicate session ids, keeping the richest entry. Returns entries removed."""

        with self._lock:
            seals = self._read_sessions()
            kept: dict[str, SessionSeal] = {}
            for seal in seals:
                current = kept.get(seal.session_id)
                if current is None or seal_richness(seal) > seal_richness(current):
                    kept[seal.session_id] = seal
            removed = len(seals) - len(kept)
            if removed:
                logger.info("Deduplicated session index: %d -> %d entries", len(seals), len(kept))
                self._write_sessions(list(kept.values()))
            return removed
