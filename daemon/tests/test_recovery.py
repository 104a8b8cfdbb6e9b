from __future__ import annotations

import logging
from pathlib import Path

import pytest

from useai_daemon.chain import HashChain, Heartbeat, SessionEnd, SessionStart, read_chain, verify_chain
from useai_daemon.models import SessionEvaluation, SessionSeal
from useai_daemon.recovery import seal_orphan_file, seal_orphaned_chains
from useai_daemon.store import SessionStore


def _orphan(store: SessionStore, session_id: str) -> HashChain:
    chain = HashChain(session_id, store.active_dir)
    chain.append(
        SessionStart(
            client="cursor",
            task_type="debugging",
            version="0.1.0",
            conversation_id="conv-9",
            project="acme-api",
            title="Fixed flaky test",
        ),
        timestamp="2026-02-09T10:00:00.000Z",
    )
    chain.append(Heartbeat(heartbeat_number=1, cumulative_seconds=240), timestamp="2026-02-09T10:04:00.000Z")
    chain.append(Heartbeat(heartbeat_number=2, cumulative_seconds=300), timestamp="2026-02-09T10:05:00.000Z")
    return chain


def test_orphan_is_sealed_at_last_activity(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    chain = _orphan(store, "orphan-1")
    tip_before = chain.tip_hash

    assert seal_orphaned_chains(store) == 1

    seal = store.find_seal("orphan-1")
    assert seal is not None
    assert seal.auto_sealed is True
    assert seal.client == "cursor"
    assert seal.task_type == "debugging"
    assert seal.title == "Fixed flaky test"
    assert seal.duration_seconds == 300
    assert seal.heartbeat_count == 2
    assert seal.ended_at == "2026-02-09T10:05:00.000Z"
    assert seal.chain_start_hash == tip_before

    sealed_path = store.sealed_dir / "orphan-1.jsonl"
    assert sealed_path.exists()
    assert not (store.active_dir / "orphan-1.jsonl").exists()
    records = read_chain(sealed_path)
    assert [record.type for record in records][-2:] == ["session_end", "session_seal"]
    assert records[-2].data["auto_sealed"] is True
    assert records[-1].timestamp == "2026-02-09T10:05:00.000Z"
    assert verify_chain(records)["ok"] is True


def test_live_sessions_are_excluded(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    _orphan(store, "live-1")
    _orphan(store, "dead-1")
    assert seal_orphaned_chains(store, exclude={"live-1"}) == 1
    assert (store.active_dir / "live-1.jsonl").exists()
    assert store.find_seal("live-1") is None
    assert store.find_seal("dead-1") is not None


def test_already_closed_log_is_only_moved(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    chain = _orphan(store, "closed-1")
    chain.append(SessionEnd(duration_seconds=300, task_type="debugging", heartbeat_count=2))
    assert seal_orphan_file(chain.path, store) is None
    assert (store.sealed_dir / "closed-1.jsonl").exists()
    assert store.load_sessions() == []


def test_unreadable_log_is_skipped(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = SessionStore(tmp_path)
    (store.active_dir / "garbled.jsonl").write_text("{nope\n", encoding="utf-8")
    _orphan(store, "good-1")
    with caplog.at_level(logging.WARNING, logger="useai_daemon.recovery"):
        assert seal_orphaned_chains(store) == 1
    assert "garbled.jsonl" in caplog.text
    assert (store.active_dir / "garbled.jsonl").exists()


def test_richer_existing_index_entry_is_kept(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    _orphan(store, "orphan-2")
    existing = SessionSeal(
        session_id="orphan-2",
        conversation_id="conv-9",
        client="cursor",
        task_type="debugging",
        title="Fixed flaky test",
        private_title="Fixed flaky test in acme-api",
        evaluation=SessionEvaluation(prompt_quality=4, context_provided=4, independence_level=4, scope_quality=4),
        started_at="2026-02-09T10:00:00.000Z",
        ended_at="2026-02-09T10:05:00.000Z",
        duration_seconds=300,
        chain_start_hash="a" * 64,
        chain_end_hash="b" * 64,
        seal_signature="unsigned",
    )
    store.upsert_seal(existing)
    assert seal_orphaned_chains(store) == 1
    assert store.load_sessions() == [existing]
