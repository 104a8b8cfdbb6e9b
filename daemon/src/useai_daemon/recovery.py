"""Seal session logs left in `active/` by a crash or an unclean daemon stop."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Collection

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .chain import HashChain, SessionEnd, SessionSealRecord, read_chain, seal_summary
from .models import SessionSeal
from .scoring import round_half_away
from .store import IndexCorruptedError, SessionStore


logger = logging.getLogger(__name__)

CLOSING_TYPES = {"session_end", "session_seal"}


def _parse_ts(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def seal_orphan_file(
    path: Path,
    store: SessionStore,
    signing_key: Ed25519PrivateKey | None = None,
) -> SessionSeal | None:
    """Close one abandoned log with `auto_sealed` records and index it.

    The end time is the last record's timestamp so the seal reflects actual
    activity, not the delay before the sweep ran. Logs that already end with a
    closing record are only moved.
    """

    records = read_chain(path)
    if not records:
        return None
    chain = HashChain.from_file(path, signing_key)
    first, last = records[0], records[-1]
    if last.type in CLOSING_TYPES:
        chain.relocate(store.sealed_dir)
        return None

    start_data: dict[str, Any] = first.data if first.type == "session_start" else {}
    started, ended = _parse_ts(first.timestamp), _parse_ts(last.timestamp)
    duration = 0
    if started is not None and ended is not None:
        duration = max(0, round_half_away((ended - started).total_seconds()))
    heartbeat_count = sum(1 for record in records if record.type == "heartbeat")
    task_type = str(start_data.get("task_type") or "coding")

    chain_start_hash = chain.tip_hash
    end_record = chain.append(
        SessionEnd(
            duration_seconds=duration,
            task_type=task_type,
            heartbeat_count=heartbeat_count,
            auto_sealed=True,
        ),
        timestamp=last.timestamp,
    )
    summary: dict[str, Any] = {
        "session_id": chain.session_id,
        "conversation_id": start_data.get("conversation_id"),
        "conversation_index": start_data.get("conversation_index"),
        "client": str(start_data.get("client") or "unknown"),
        "task_type": task_type,
        "languages": [],
        "files_touched": 0,
        "project": start_data.get("project"),
        "title": start_data.get("title"),
        "private_title": start_data.get("private_title"),
        "model": start_data.get("model"),
        "started_at": first.timestamp,
        "ended_at": last.timestamp,
        "duration_seconds": duration,
        "heartbeat_count": heartbeat_count,
        "record_count": chain.record_count,
        "chain_end_hash": end_record.hash,
    }
    seal_json, signature = seal_summary(summary, signing_key)
    chain.append(
        SessionSealRecord(seal=seal_json, seal_signature=signature, auto_sealed=True),
        timestamp=last.timestamp,
    )
    chain.relocate(store.sealed_dir)

    seal = SessionSeal.model_validate(
        {
            **{key: value for key, value in summary.items() if value is not None},
            "chain_start_hash": chain_start_hash,
            "seal_signature": signature,
            "auto_sealed": True,
        }
    )
    store.upsert_seal(seal, prefer_richer=True)
    return seal


def seal_orphaned_chains(
    store: SessionStore,
    signing_key: Ed25519PrivateKey | None = None,
    *,
    exclude: Collection[str] = (),
) -> int:
    """Seal every log in `active/` except those owned by live sessions."""

    sealed = 0
    for path in sorted(store.active_dir.glob("*.jsonl")):
        if path.stem in exclude:
            continue
        try:
            if seal_orphan_file(path, store, signing_key) is not None:
                sealed += 1
        except IndexCorruptedError:
            raise
        except (OSError, ValueError) as exc:
            logger.warning("Skipping orphaned chain %s: %s", path.name, exc)
    if sealed:
        logger.info("Sealed %d orphaned session%s", sealed, "" if sealed == 1 else "s")
    return sealed
