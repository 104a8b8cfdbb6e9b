from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest
import yaml

from useai_daemon.config import DEFAULT_CONFIG, evaluation_tracking_enabled, load_config, milestone_tracking_enabled
from useai_daemon.frameworks import framework_ids, get_framework, load_frameworks


RUBRIC_DIR = Path(__file__).resolve().parents[1] / "src" / "useai_daemon" / "rubrics"


def test_missing_config_yields_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "config.json") == DEFAULT_CONFIG


def test_capture_block_overrides_flat_keys(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"milestone_tracking": True, "capture": {"milestones": False, "evaluation_reasons": "none"}}),
        encoding="utf-8",
    )
    config = load_config(path)
    assert milestone_tracking_enabled(config) is False
    assert config["evaluation_reasons"] == "none"
    assert config["evaluation_framework"] == "space"


def test_invalid_config_reports_location(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"evaluation_reasons": "sometimes"}), encoding="utf-8")
    with pytest.raises(ValueError, match="at evaluation_reasons"):
        load_config(path)


def test_unparseable_config_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(ValueError, match="not valid JSON"):
        load_config(path)


def test_packaged_frameworks_load() -> None:
    assert framework_ids() == ["raw", "space"]
    space = get_framework("space")
    assert [rubric.dimension for rubric in space.rubrics] == [
        "prompt_quality",
        "context_provided",
        "independence_level",
        "scope_quality",
    ]
    assert all(len(rubric.levels) == 5 for rubric in space.rubrics)


def test_unknown_framework_falls_back_to_space() -> None:
    assert get_framework("does-not-exist").id == "space"
    assert get_framework(None).id == "space"


def test_instruction_text_follows_reason_setting() -> None:
    space = get_framework("space")
    assert "EVERY scored metric" in space.instruction_text("all")
    assert "< 5" in space.instruction_text("below_perfect")
    text = space.instruction_text("none")
    assert "_reason" not in text
    assert "SPACE framework" in text


def test_rubric_weights_must_sum_to_one(tmp_path: Path) -> None:
    shutil.copy(RUBRIC_DIR / "rubric.schema.json", tmp_path / "rubric.schema.json")
    payload = yaml.safe_load((RUBRIC_DIR / "space.rubric.yaml").read_text(encoding="utf-8"))
    payload["rubrics"][0]["weight"] = 0.9
    (tmp_path / "space.rubric.yaml").write_text(yaml.safe_dump(payload), encoding="utf-8")
    with pytest.raises(ValueError, match="sum to 1"):
        load_frameworks(tmp_path)


def test_rubric_schema_violation_is_reported(tmp_path: Path) -> None:
    shutil.copy(RUBRIC_DIR / "rubric.schema.json", tmp_path / "rubric.schema.json")
    payload = yaml.safe_load((RUBRIC_DIR / "raw.rubric.yaml").read_text(encoding="utf-8"))
    payload["rubrics"][1]["levels"] = ["only", "three", "levels"]
    (tmp_path / "raw.rubric.yaml").write_text(yaml.safe_dump(payload), encoding="utf-8")
    with pytest.raises(ValueError, match="schema validation failed"):
        load_frameworks(tmp_path)


def test_capture_evaluation_toggles_evaluation_tracking(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"capture": {"evaluation": False}}), encoding="utf-8")
    assert evaluation_tracking_enabled(load_config(path)) is False
    assert evaluation_tracking_enabled(DEFAULT_CONFIG) is True
