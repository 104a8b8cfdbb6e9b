"""Per-connection session context: start, heartbeat, end/seal and nested resume."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .chain import (
    ChainRecord,
    HashChain,
    Heartbeat,
    MilestoneRecord,
    SessionEnd,
    SessionSealRecord,
    SessionStart,
    seal_summary,
)
from .clients import resolve_client
from .config import detect_version, evaluation_tracking_enabled, milestone_tracking_enabled
from .frameworks import get_framework
from .models import Milestone, MilestoneInput, SessionEvaluation, SessionSeal
from .scoring import round_half_away
from .store import SessionStore


logger = logging.getLogger(__name__)

DEFAULT_TASK_TYPE = "coding"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def detect_project() -> str:
    return Path.cwd().name or "untitled"


@dataclass(frozen=True)
class ParentSnapshot:
    """Everything needed to resume an outer session after a nested one."""

    session_id: str
    conversation_id: str
    conversation_index: int
    client_name: str
    task_type: str
    title: str | None
    private_title: str | None
    project: str | None
    model: str | None
    started_at: datetime
    heartbeat_count: int
    chain: HashChain
    sealed: bool
    auto_sealed_session_id: str | None


class SessionState:
    """Mutable context of the session currently open on one connection.

    Idle until the first record is appended, Active afterwards, Ended once
    sealed. A sealed state is reused for the next session via `reset()`.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        signing_key: Ed25519PrivateKey | None = None,
        client_info: Mapping[str, Any] | None = None,
        version: str | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.signing_key = signing_key
        self.client_info = dict(client_info) if client_info else None
        self.version = version or detect_version()
        self._clock = clock
        self.client_name = "unknown"
        self.conversation_id = str(uuid.uuid4())
        self.conversation_index = 0
        self.auto_sealed_session_id: str | None = None
        self._parents: list[ParentSnapshot] = []
        self._begin_session()

    def _begin_session(self) -> None:
        self.session_id = str(uuid.uuid4())
        self.started_at = self._clock()
        self.heartbeat_count = 0
        self.task_type = DEFAULT_TASK_TYPE
        self.title: str | None = None
        self.private_title: str | None = None
        self.project: str | None = detect_project()
        self.model: str | None = None
        self.chain = HashChain(self.session_id, self.store.active_dir, self.signing_key)
        self.sealed = False

    @property
    def record_count(self) -> int:
        return self.chain.record_count

    @property
    def chain_tip_hash(self) -> str:
        return self.chain.tip_hash

    @property
    def state(self) -> str:
        if self.sealed:
            return "ended"
        return "active" if self.record_count > 0 else "idle"

    @property
    def parent_depth(self) -> int:
        return len(self._parents)

    def live_session_ids(self) -> set[str]:
        """Ids whose logs this state may still append to."""

        return {self.session_id, *(snapshot.session_id for snapshot in self._parents)}

    def duration_seconds(self) -> int:
        return max(0, round_half_away((self._clock() - self.started_at).total_seconds()))

    def reset(self) -> None:
        """Start a fresh session in the same conversation."""

        self._begin_session()
        self.conversation_index += 1

    def start(
        self,
        task_type: str | None = None,
        *,
        title: str | None = None,
        private_title: str | None = None,
        project: str | None = None,
        model: str | None = None,
        conversation_id: str | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> ChainRecord:
        if self.record_count > 0 and not self.sealed:
            self.seal(auto_sealed=True)

        previous_conversation = self.conversation_id
        self.reset()
        self.auto_sealed_session_id = None
        if conversation_id is None or conversation_id != previous_conversation:
            self.conversation_id = conversation_id or str(uuid.uuid4())
            self.conversation_index = 0

        self.client_name = resolve_client(client_info or self.client_info)
        self.task_type = task_type or DEFAULT_TASK_TYPE
        self.title = title
        self.private_title = private_title
        self.model = model
        if project:
            self.project = project

        return self.chain.append(
            SessionStart(
                client=self.client_name,
                task_type=self.task_type,
                version=self.version,
                conversation_id=self.conversation_id,
                conversation_index=self.conversation_index,
                project=self.project,
                title=self.title,
                private_title=self.private_title,
                model=self.model,
            )
        )

    def heartbeat(self) -> ChainRecord | None:
        if self.sealed:
            return None
        if self.record_count == 0:
            # A session begun by heartbeat is no longer the auto-sealed one.
            self.auto_sealed_session_id = None
        self.heartbeat_count += 1
        return self.chain.append(
            Heartbeat(heartbeat_number=self.heartbeat_count, cumulative_seconds=self.duration_seconds())
        )

    def end(
        self,
        task_type: str | None = None,
        *,
        languages: Iterable[str] | None = None,
        files_touched_count: int | None = None,
        milestones: Iterable[MilestoneInput] | None = None,
        evaluation: SessionEvaluation | None = None,
    ) -> SessionSeal | None:
        """Seal the current session, or enrich a session the idle timer already sealed."""

        if self.sealed or self.record_count == 0:
            if self.auto_sealed_session_id is not None:
                return self._enrich_auto_sealed(
                    task_type=task_type,
                    languages=languages,
                    files_touched_count=files_touched_count,
                    milestones=milestones,
                    evaluation=evaluation,
                )
            return None
        return self.seal(
            task_type=task_type,
            languages=languages,
            files_touched_count=files_touched_count,
            milestones=milestones,
            evaluation=evaluation,
        )

    def seal(
        self,
        *,
        task_type: str | None = None,
        languages: Iterable[str] | None = None,
        files_touched_count: int | None = None,
        milestones: Iterable[MilestoneInput] | None = None,
        evaluation: SessionEvaluation | None = None,
        auto_sealed: bool = False,
    ) -> SessionSeal | None:
        """Close the chain with `session_end` and a signed `session_seal`, then index it."""

        if self.sealed:
            return None
        if not auto_sealed:
            self.auto_sealed_session_id = None
        config = self.store.load_config()
        duration = self.duration_seconds()
        ended_at = _iso(self._clock())
        final_task_type = task_type or self.task_type
        language_list = list(languages or [])
        files_touched = files_touched_count or 0

        milestone_rows: list[Milestone] = []
        if milestones and milestone_tracking_enabled(config):
            milestone_rows = self._append_milestones(milestones, duration, language_list, ended_at)

        session_score = framework_id = None
        evaluation_payload = None
        if evaluation is not None and evaluation_tracking_enabled(config):
            framework = get_framework(config.get("evaluation_framework"))
            session_score = round_half_away(framework.compute_session_score(evaluation))
            framework_id = framework.id
            evaluation_payload = evaluation.model_dump(mode="json", exclude_none=True)

        chain_start_hash = self.chain_tip_hash
        end_record = self.chain.append(
            SessionEnd(
                duration_seconds=duration,
                task_type=final_task_type,
                heartbeat_count=self.heartbeat_count,
                languages=language_list,
                files_touched=files_touched,
                auto_sealed=auto_sealed,
                evaluation=evaluation_payload,
                session_score=session_score,
                evaluation_framework=framework_id,
            )
        )

        summary: dict[str, Any] = {
            "session_id": self.session_id,
            "conversation_id": self.conversation_id,
            "conversation_index": self.conversation_index,
            "client": self.client_name,
            "task_type": final_task_type,
            "languages": language_list,
            "files_touched": files_touched,
            "project": self.project,
            "title": self.title,
            "private_title": self.private_title,
            "model": self.model,
            "evaluation": evaluation_payload,
            "session_score": session_score,
            "evaluation_framework": framework_id,
            "started_at": _iso(self.started_at),
            "ended_at": ended_at,
            "duration_seconds": duration,
            "heartbeat_count": self.heartbeat_count,
            "record_count": self.record_count,
            "chain_end_hash": end_record.hash,
        }
        seal_json, signature = seal_summary(summary, self.signing_key)
        self.chain.append(SessionSealRecord(seal=seal_json, seal_signature=signature, auto_sealed=auto_sealed))
        self.sealed = True
        self.chain.relocate(self.store.sealed_dir)

        seal = SessionSeal.model_validate(
            {
                **{key: value for key, value in summary.items() if value is not None},
                "chain_start_hash": chain_start_hash,
                "seal_signature": signature,
                "auto_sealed": True if auto_sealed else None,
            }
        )
        self.store.upsert_seal(seal)
        self.store.append_milestones(milestone_rows)
        if auto_sealed:
            self.auto_sealed_session_id = self.session_id
        logger.info(
            "Sealed session %s (%d records, %s)",
            self.session_id,
            self.record_count,
            "auto" if auto_sealed else "explicit",
        )
        return seal

    def _append_milestones(
        self,
        milestones: Iterable[MilestoneInput],
        duration: int,
        languages: list[str],
        created_at: str,
    ) -> list[Milestone]:
        rows: list[Milestone] = []
        duration_minutes = round_half_away(duration / 60)
        for item in milestones:
            complexity = item.complexity or "medium"
            record = self.chain.append(
                MilestoneRecord(
                    title=item.title,
                    category=item.category,
                    complexity=complexity,
                    duration_minutes=duration_minutes,
                    languages=languages,
                    private_title=item.private_title,
                )
            )
            rows.append(
                self._milestone(item, complexity, duration_minutes, languages, created_at, record.hash, self.session_id)
            )
        return rows

    def _milestone(
        self,
        item: MilestoneInput,
        complexity: str,
        duration_minutes: int,
        languages: list[str],
        created_at: str,
        chain_hash: str,
        session_id: str,
    ) -> Milestone:
        return Milestone(
            id=f"m_{uuid.uuid4().hex[:8]}",
            session_id=session_id,
            title=item.title,
            private_title=item.private_title,
            project=self.project,
            category=item.category,
            complexity=complexity,
            duration_minutes=duration_minutes,
            languages=languages,
            client=self.client_name,
            created_at=created_at,
            chain_hash=chain_hash,
        )

    def _enrich_auto_sealed(
        self,
        *,
        task_type: str | None,
        languages: Iterable[str] | None,
        files_touched_count: int | None,
        milestones: Iterable[MilestoneInput] | None,
        evaluation: SessionEvaluation | None,
    ) -> SessionSeal | None:
        session_id = self.auto_sealed_session_id
        existing = self.store.find_seal(session_id) if session_id else None
        if existing is None:
            self.auto_sealed_session_id = None
            return None

        config = self.store.load_config()
        language_list = list(languages or existing.languages)
        changes: dict[str, Any] = {"languages": language_list}
        if task_type:
            changes["task_type"] = task_type
        if files_touched_count is not None:
            changes["files_touched"] = files_touched_count
        if evaluation is not None and evaluation_tracking_enabled(config):
            framework = get_framework(config.get("evaluation_framework"))
            changes["evaluation"] = evaluation
            changes["session_score"] = round_half_away(framework.compute_session_score(evaluation))
            changes["evaluation_framework"] = framework.id
        updated = self.store.update_seal(existing.session_id, **changes)

        if milestones and milestone_tracking_enabled(config):
            duration_minutes = round_half_away(existing.duration_seconds / 60)
            created_at = _iso(self._clock())
            self.store.append_milestones(
                self._milestone(item, item.complexity or "medium", duration_minutes, language_list, created_at, "", existing.session_id)
                for item in milestones
            )
        self.auto_sealed_session_id = None
        return updated

    def seal_all(self) -> list[SessionSeal]:
        """Auto-seal the current session, then every saved parent holding data."""

        seals: list[SessionSeal] = []
        while True:
            if self.record_count > 0 and not self.sealed:
                seal = self.seal(auto_sealed=True)
                if seal is not None:
                    seals.append(seal)
            if not self.restore_parent_state():
                return seals

    def save_parent_state(self) -> None:
        """Push the current session so a nested one can run on this connection."""

        self._parents.append(
            ParentSnapshot(
                session_id=self.session_id,
                conversation_id=self.conversation_id,
                conversation_index=self.conversation_index,
                client_name=self.client_name,
                task_type=self.task_type,
                title=self.title,
                private_title=self.private_title,
                project=self.project,
                model=self.model,
                started_at=self.started_at,
                heartbeat_count=self.heartbeat_count,
                chain=self.chain,
                sealed=self.sealed,
                auto_sealed_session_id=self.auto_sealed_session_id,
            )
        )

    def restore_parent_state(self) -> bool:
        if not self._parents:
            return False
        snapshot = self._parents.pop()
        self.session_id = snapshot.session_id
        self.conversation_id = snapshot.conversation_id
        self.conversation_index = snapshot.conversation_index
        self.client_name = snapshot.client_name
        self.task_type = snapshot.task_type
        self.title = snapshot.title
        self.private_title = snapshot.private_title
        self.project = snapshot.project
        self.model = snapshot.model
        self.started_at = snapshot.started_at
        self.heartbeat_count = snapshot.heartbeat_count
        self.chain = snapshot.chain
        self.sealed = snapshot.sealed
        self.auto_sealed_session_id = snapshot.auto_sealed_session_id
        return True
