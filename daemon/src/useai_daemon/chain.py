"""Append-only, hash-linked session logs and their signed closing seal."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, ClassVar, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .keystore import UNSIGNED, sign_hash, verify_signature
from .paths import chain_file


logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"
RECORD_TYPES = ("session_start", "heartbeat", "session_end", "session_seal", "milestone")


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _safe_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


@dataclass(frozen=True)
class SessionStart:
    record_type: ClassVar[str] = "session_start"

    client: str
    task_type: str
    version: str
    conversation_id: str | None = None
    conversation_index: int = 0
    project: str | None = None
    title: str | None = None
    private_title: str | None = None
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(asdict(self))


@dataclass(frozen=True)
class Heartbeat:
    record_type: ClassVar[str] = "heartbeat"

    heartbeat_number: int
    cumulative_seconds: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SessionEnd:
    record_type: ClassVar[str] = "session_end"

    duration_seconds: int
    task_type: str
    heartbeat_count: int
    languages: list[str] = field(default_factory=list)
    files_touched: int = 0
    auto_sealed: bool = False
    evaluation: dict[str, Any] | None = None
    session_score: int | None = None
    evaluation_framework: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = _compact(asdict(self))
        if not self.auto_sealed:
            payload.pop("auto_sealed")
        return payload


@dataclass(frozen=True)
class SessionSealRecord:
    record_type: ClassVar[str] = "session_seal"

    seal: str
    seal_signature: str
    auto_sealed: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if not self.auto_sealed:
            payload.pop("auto_sealed")
        return payload


@dataclass(frozen=True)
class MilestoneRecord:
    record_type: ClassVar[str] = "milestone"

    title: str
    category: str
    complexity: str
    duration_minutes: int
    languages: list[str] = field(default_factory=list)
    private_title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(asdict(self))


RecordPayload = Union[SessionStart, Heartbeat, SessionEnd, SessionSealRecord, MilestoneRecord]


def compute_hash(record_type: str, data: dict[str, Any], seq: int, prev_hash: str) -> str:
    """Digest over the canonical `{type, data, seq}` body chained from `prev_hash`."""

    return sha256_hex(_safe_json({"type": record_type, "data": data, "seq": seq}) + prev_hash)


@dataclass(frozen=True)
class ChainRecord:
    """One line of a session log."""

    id: str
    seq: int
    type: str
    session_id: str
    timestamp: str
    data: dict[str, Any]
    prev_hash: str
    hash: str
    signature: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ChainRecord:
        try:
            return cls(
                id=str(payload.get("id", "")),
                seq=int(payload["seq"]),
                type=str(payload["type"]),
                session_id=str(payload.get("session_id", "")),
                timestamp=str(payload.get("timestamp", "")),
                data=dict(payload.get("data") or {}),
                prev_hash=str(payload["prev_hash"]),
                hash=str(payload["hash"]),
                signature=str(payload.get("signature", UNSIGNED)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed chain record: {exc}") from exc


def read_chain(path: Path) -> list[ChainRecord]:
    """Read every record of a session log in file order."""

    if not path.exists():
        return []
    records: list[ChainRecord] = []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Chain log {path.name} holds an unreadable line.") from exc
            records.append(ChainRecord.from_dict(payload))
    return records


def _move_file(source: Path, target: Path) -> None:
    os.replace(source, target)


class HashChain:
    """Per-session log where every record links to the hash of the one before it."""

    def __init__(
        self,
        session_id: str,
        active_dir: Path,
        signing_key: Ed25519PrivateKey | None = None,
    ) -> None:
        self.session_id = session_id
        self.path = chain_file(active_dir, session_id)
        self.signing_key = signing_key
        self.tip_hash = GENESIS_HASH
        self.record_count = 0

    @classmethod
    def from_file(cls, path: Path, signing_key: Ed25519PrivateKey | None = None) -> HashChain:
        """Resume appending to an existing log, picking up its tip and length."""

        chain = cls(path.stem, path.parent, signing_key)
        records = read_chain(path)
        if records:
            chain.tip_hash = records[-1].hash
            chain.record_count = records[-1].seq
        return chain

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(_safe_json(payload))
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())

    def append(self, payload: RecordPayload, *, timestamp: str | None = None) -> ChainRecord:
        """Durably write one record and advance the tip."""

        if payload.record_type not in RECORD_TYPES:
            raise ValueError(f"Unsupported record type: {payload.record_type}")
        seq = self.record_count + 1
        data = payload.to_dict()
        digest = compute_hash(payload.record_type, data, seq, self.tip_hash)
        record = ChainRecord(
            id=f"r_{uuid.uuid4().hex[:12]}",
            seq=seq,
            type=payload.record_type,
            session_id=self.session_id,
            timestamp=timestamp or _utc_now_iso(),
            data=data,
            prev_hash=self.tip_hash,
            hash=digest,
            signature=sign_hash(digest, self.signing_key),
        )
        self._append_jsonl(record.to_dict())
        self.tip_hash = digest
        self.record_count = seq
        return record

    def relocate(self, sealed_dir: Path) -> Path | None:
        """Move the log into `sealed_dir`. Failure leaves the file where it is."""

        target = chain_file(sealed_dir, self.session_id)
        if not self.path.exists():
            return None
        try:
            sealed_dir.mkdir(parents=True, exist_ok=True)
            _move_file(self.path, target)
        except OSError as exc:
            logger.warning("Could not move chain %s to %s: %s", self.path.name, sealed_dir, exc)
            return None
        self.path = target
        return target


def seal_summary(summary: dict[str, Any], signing_key: Ed25519PrivateKey | None) -> tuple[str, str]:
    """Serialize a session summary and sign its digest; `unsigned` without a key."""

    seal_json = _safe_json(_compact(summary))
    return seal_json, sign_hash(sha256_hex(seal_json), signing_key)


def verify_chain(records: list[ChainRecord], public_key_pem: str | None = None) -> dict[str, Any]:
    """Recompute every hash from GENESIS and check linkage and signatures."""

    prev_hash = GENESIS_HASH
    for index, record in enumerate(records, start=1):
        if record.seq != index:
            return {"ok": False, "checked_records": index - 1, "broken_at": index, "reason": "seq_gap"}
        if record.prev_hash != prev_hash:
            return {"ok": False, "checked_records": index - 1, "broken_at": index, "reason": "prev_hash_mismatch"}
        expected = compute_hash(record.type, record.data, record.seq, prev_hash)
        if record.hash != expected:
            return {"ok": False, "checked_records": index - 1, "broken_at": index, "reason": "hash_mismatch"}
        if public_key_pem is not None and not verify_signature(record.hash, record.signature, public_key_pem):
            return {"ok": False, "checked_records": index - 1, "broken_at": index, "reason": "bad_signature"}
        prev_hash = record.hash
    return {"ok": True, "checked_records": len(records), "broken_at": None, "reason": None}
