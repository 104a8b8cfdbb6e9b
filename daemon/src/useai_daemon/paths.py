from __future__ import annotations

import os
from pathlib import Path


def useai_home() -> Path:
    configured = os.environ.get("USEAI_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".useai"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    data = base / "data"
    active = data / "active"
    sealed = data / "sealed"
    for path in (base, data, active, sealed):
        path.mkdir(parents=True, exist_ok=True)
    return {"base": base, "data": data, "active": active, "sealed": sealed}


def chain_file(directory: Path, session_id: str) -> Path:
    return directory / f"{session_id}.jsonl"
