from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from taskcrew.config import AssignmentSettings, RevisionSettings, Settings

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKCREW_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TASKCREW_LOG_LEVEL", "info")
    monkeypatch.setenv("TASKCREW_CIRCUIT_FAILURE_THRESHOLD", "2")
    monkeypatch.setenv("TASKCREW_CACHE_ENABLED", "off")
    monkeypatch.setenv("TASKCREW_MAX_REVISIONS", "5")
    monkeypatch.setenv("TASKCREW_CONTINUE_ON_CONSIDER_ABORTING", "yes")
    monkeypatch.setenv("TASKCREW_TOOL_QUEUE_TIMEOUT_SECONDS", "12.5")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.log_level == "INFO"
    assert settings.circuit.failure_threshold == 2
    assert settings.cache.enabled is False
    assert settings.revision.max_revisions == 5
    assert settings.revision.continue_on_consider_aborting is True
    assert settings.execution.invocation_queue_timeout_seconds == 12.5
    settings.validate()


def test_from_env_explicit_db_path_wins(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKCREW_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_from_env_rejects_malformed_numbers(monkeypatch) -> None:
    monkeypatch.setenv("TASKCREW_RETRY_MAX_ATTEMPTS", "three")

    with pytest.raises(ValueError, match="TASKCREW_RETRY_MAX_ATTEMPTS"):
        Settings.from_env()


def test_from_env_rejects_malformed_booleans(monkeypatch) -> None:
    monkeypatch.setenv("TASKCREW_ALLOW_SPAWN", "maybe")

    with pytest.raises(ValueError, match="TASKCREW_ALLOW_SPAWN"):
        Settings.from_env()


def test_defaults_are_valid() -> None:
    settings = Settings()
    settings.validate()

    assert settings.recovery.max_attempts == 3
    assert settings.revision.acceptance_threshold == 0.8
    assert settings.assignment.min_workers == 3
    assert settings.assignment.max_workers == 5


def test_validate_rejects_assignment_weights_not_summing_to_one() -> None:
    settings = Settings(assignment=AssignmentSettings(skill_weight=0.6))

    with pytest.raises(ValueError, match="must sum to 1.0"):
        settings.validate()


def test_validate_rejects_unordered_trend_ratios() -> None:
    settings = Settings(revision=RevisionSettings(collapsed_ratio=0.8, diminishing_ratio=0.7))

    with pytest.raises(ValueError, match="collapsed <= diminishing <= improving"):
        settings.validate()


def test_validate_rejects_roster_bounds() -> None:
    settings = Settings(assignment=AssignmentSettings(min_workers=4, max_workers=3))

    with pytest.raises(ValueError, match="TASKCREW_MIN_WORKERS"):
        settings.validate()


def test_validate_rejects_unknown_log_level() -> None:
    settings = replace(Settings(), log_level="LOUD")

    with pytest.raises(ValueError, match="TASKCREW_LOG_LEVEL"):
        settings.validate()


def test_validate_rejects_non_positive_queue_timeout() -> None:
    base = Settings()
    settings = replace(
        base,
        execution=replace(base.execution, invocation_queue_timeout_seconds=0.0),
    )

    with pytest.raises(ValueError, match="TASKCREW_TOOL_QUEUE_TIMEOUT_SECONDS"):
        settings.validate()
