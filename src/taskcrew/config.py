"""Runtime configuration for the orchestration engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(slots=True)
class ExecutionSettings:
    """Tool invocation and dispatch settings."""

    default_tool_timeout_seconds: float = 30.0
    invocation_queue_timeout_seconds: float = 300.0
    invocation_workers: int = 8
    max_dispatch_rounds: int = 100
    workspace_root: Path = Path(".taskcrew_workspace")
    completion_command: str = ""
    completion_model: str = "default"


@dataclass(slots=True)
class CircuitSettings:
    """Per-tool circuit breaker settings."""

    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


@dataclass(slots=True)
class CacheSettings:
    """Tool result cache settings."""

    enabled: bool = True
    ttl_seconds: int = 86_400
    max_entries: int = 1_024


@dataclass(slots=True)
class RecoverySettings:
    """Retry/backoff policy and classifier thresholds."""

    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_attempts: int = 3
    jitter_ratio: float = 0.2
    coordination_gap_seconds: float = 300.0
    ambiguity_threshold: float = 0.6


@dataclass(slots=True)
class CheckpointSettings:
    """Checkpoint retention settings."""

    keep_last: int = 5
    terminal_retention_hours: int = 24


@dataclass(slots=True)
class RevisionSettings:
    """Review loop and marginal-return analyzer settings."""

    acceptance_threshold: float = 0.8
    max_revisions: int = 3
    collapsed_ratio: float = 0.3
    diminishing_ratio: float = 0.7
    improving_ratio: float = 1.2
    strong_abort_roi: float = 0.05
    consider_abort_roi: float = 0.15
    absolute_cost_ceiling: float = 50.0
    continue_on_consider_aborting: bool = False


@dataclass(slots=True)
class AssignmentSettings:
    """Worker roster and assignment scoring settings."""

    minimum_proficiency: float = 0.5
    default_required_level: float = 0.5
    skill_weight: float = 0.5
    load_weight: float = 0.3
    success_weight: float = 0.2
    default_success_rate: float = 0.5
    allow_spawn: bool = True
    spawn_proficiency: float = 0.7
    min_workers: int = 3
    max_workers: int = 5
    max_concurrent_tasks: int = 3
    learning_rate: float = 0.1


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskcrew.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    circuit: CircuitSettings = field(default_factory=CircuitSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    checkpoints: CheckpointSettings = field(default_factory=CheckpointSettings)
    revision: RevisionSettings = field(default_factory=RevisionSettings)
    assignment: AssignmentSettings = field(default_factory=AssignmentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKCREW_DB_PATH", ".taskcrew.db")),
            sqlite_busy_timeout_ms=_env_int("TASKCREW_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv("TASKCREW_LOG_LEVEL", "WARNING").strip().upper(),
            execution=ExecutionSettings(
                default_tool_timeout_seconds=_env_float("TASKCREW_TOOL_TIMEOUT_SECONDS", 30.0),
                invocation_queue_timeout_seconds=_env_float(
                    "TASKCREW_TOOL_QUEUE_TIMEOUT_SECONDS",
                    300.0,
                ),
                invocation_workers=_env_int("TASKCREW_INVOCATION_WORKERS", 8),
                max_dispatch_rounds=_env_int("TASKCREW_MAX_DISPATCH_ROUNDS", 100),
                workspace_root=Path(
                    os.getenv("TASKCREW_WORKSPACE_ROOT", ".taskcrew_workspace"),
                ),
                completion_command=os.getenv("TASKCREW_COMPLETION_COMMAND", "").strip(),
                completion_model=os.getenv("TASKCREW_COMPLETION_MODEL", "default").strip(),
            ),
            circuit=CircuitSettings(
                failure_threshold=_env_int("TASKCREW_CIRCUIT_FAILURE_THRESHOLD", 5),
                cooldown_seconds=_env_float("TASKCREW_CIRCUIT_COOLDOWN_SECONDS", 60.0),
            ),
            cache=CacheSettings(
                enabled=_env_bool("TASKCREW_CACHE_ENABLED", default=True),
                ttl_seconds=_env_int("TASKCREW_CACHE_TTL_SECONDS", 86_400),
                max_entries=_env_int("TASKCREW_CACHE_MAX_ENTRIES", 1_024),
            ),
            recovery=RecoverySettings(
                base_delay_seconds=_env_float("TASKCREW_RETRY_BASE_SECONDS", 1.0),
                multiplier=_env_float("TASKCREW_RETRY_MULTIPLIER", 2.0),
                max_attempts=_env_int("TASKCREW_RETRY_MAX_ATTEMPTS", 3),
                jitter_ratio=_env_float("TASKCREW_RETRY_JITTER_RATIO", 0.2),
                coordination_gap_seconds=_env_float(
                    "TASKCREW_COORDINATION_GAP_SECONDS",
                    300.0,
                ),
                ambiguity_threshold=_env_float("TASKCREW_AMBIGUITY_THRESHOLD", 0.6),
            ),
            checkpoints=CheckpointSettings(
                keep_last=_env_int("TASKCREW_CHECKPOINT_KEEP_LAST", 5),
                terminal_retention_hours=_env_int("TASKCREW_CHECKPOINT_RETENTION_HOURS", 24),
            ),
            revision=RevisionSettings(
                acceptance_threshold=_env_float("TASKCREW_ACCEPTANCE_THRESHOLD", 0.8),
                max_revisions=_env_int("TASKCREW_MAX_REVISIONS", 3),
                collapsed_ratio=_env_float("TASKCREW_ROI_COLLAPSED_RATIO", 0.3),
                diminishing_ratio=_env_float("TASKCREW_ROI_DIMINISHING_RATIO", 0.7),
                improving_ratio=_env_float("TASKCREW_ROI_IMPROVING_RATIO", 1.2),
                strong_abort_roi=_env_float("TASKCREW_ROI_STRONG_ABORT", 0.05),
                consider_abort_roi=_env_float("TASKCREW_ROI_CONSIDER_ABORT", 0.15),
                absolute_cost_ceiling=_env_float("TASKCREW_REVISION_COST_CEILING", 50.0),
                continue_on_consider_aborting=_env_bool(
                    "TASKCREW_CONTINUE_ON_CONSIDER_ABORTING",
                    default=False,
                ),
            ),
            assignment=AssignmentSettings(
                minimum_proficiency=_env_float("TASKCREW_MIN_PROFICIENCY", 0.5),
                default_required_level=_env_float("TASKCREW_DEFAULT_REQUIRED_LEVEL", 0.5),
                skill_weight=_env_float("TASKCREW_ASSIGN_SKILL_WEIGHT", 0.5),
                load_weight=_env_float("TASKCREW_ASSIGN_LOAD_WEIGHT", 0.3),
                success_weight=_env_float("TASKCREW_ASSIGN_SUCCESS_WEIGHT", 0.2),
                default_success_rate=_env_float("TASKCREW_DEFAULT_SUCCESS_RATE", 0.5),
                allow_spawn=_env_bool("TASKCREW_ALLOW_SPAWN", default=True),
                spawn_proficiency=_env_float("TASKCREW_SPAWN_PROFICIENCY", 0.7),
                min_workers=_env_int("TASKCREW_MIN_WORKERS", 3),
                max_workers=_env_int("TASKCREW_MAX_WORKERS", 5),
                max_concurrent_tasks=_env_int("TASKCREW_MAX_CONCURRENT_TASKS", 3),
                learning_rate=_env_float("TASKCREW_SKILL_LEARNING_RATE", 0.1),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error for values the engine cannot operate with."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"TASKCREW_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got {self.log_level!r}.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKCREW_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.execution.default_tool_timeout_seconds <= 0:
            raise ValueError("TASKCREW_TOOL_TIMEOUT_SECONDS must be > 0.")
        if self.execution.invocation_queue_timeout_seconds <= 0:
            raise ValueError("TASKCREW_TOOL_QUEUE_TIMEOUT_SECONDS must be > 0.")
        if self.execution.invocation_workers <= 0:
            raise ValueError("TASKCREW_INVOCATION_WORKERS must be > 0.")
        if self.execution.max_dispatch_rounds <= 0:
            raise ValueError("TASKCREW_MAX_DISPATCH_ROUNDS must be > 0.")
        if self.circuit.failure_threshold <= 0:
            raise ValueError("TASKCREW_CIRCUIT_FAILURE_THRESHOLD must be > 0.")
        if self.circuit.cooldown_seconds < 0:
            raise ValueError("TASKCREW_CIRCUIT_COOLDOWN_SECONDS must be >= 0.")
        if self.cache.ttl_seconds <= 0:
            raise ValueError("TASKCREW_CACHE_TTL_SECONDS must be > 0.")
        if self.cache.max_entries <= 0:
            raise ValueError("TASKCREW_CACHE_MAX_ENTRIES must be > 0.")
        if self.recovery.max_attempts <= 0:
            raise ValueError("TASKCREW_RETRY_MAX_ATTEMPTS must be > 0.")
        if self.recovery.base_delay_seconds < 0 or self.recovery.multiplier < 1:
            raise ValueError(
                "TASKCREW_RETRY_BASE_SECONDS must be >= 0 and TASKCREW_RETRY_MULTIPLIER >= 1.",
            )
        if not 0 <= self.recovery.jitter_ratio < 1:
            raise ValueError("TASKCREW_RETRY_JITTER_RATIO must be in [0, 1).")
        if self.checkpoints.keep_last <= 0:
            raise ValueError("TASKCREW_CHECKPOINT_KEEP_LAST must be > 0.")
        if self.checkpoints.terminal_retention_hours < 0:
            raise ValueError("TASKCREW_CHECKPOINT_RETENTION_HOURS must be >= 0.")
        if not 0 < self.revision.acceptance_threshold <= 1:
            raise ValueError("TASKCREW_ACCEPTANCE_THRESHOLD must be in (0, 1].")
        if self.revision.max_revisions < 0:
            raise ValueError("TASKCREW_MAX_REVISIONS must be >= 0.")
        if not (
            self.revision.collapsed_ratio
            <= self.revision.diminishing_ratio
            <= self.revision.improving_ratio
        ):
            raise ValueError(
                "ROI trend ratios must satisfy collapsed <= diminishing <= improving.",
            )
        if self.revision.strong_abort_roi > self.revision.consider_abort_roi:
            raise ValueError("TASKCREW_ROI_STRONG_ABORT must be <= TASKCREW_ROI_CONSIDER_ABORT.")
        _validate_assignment(self.assignment)

    def configure_logging(self) -> None:
        """Apply log level to the root logger for CLI runs."""

        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.WARNING),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _validate_assignment(settings: AssignmentSettings) -> None:
    weights = settings.skill_weight + settings.load_weight + settings.success_weight
    if abs(weights - 1.0) > 1e-6:
        raise ValueError(
            "Assignment weights (TASKCREW_ASSIGN_SKILL_WEIGHT, TASKCREW_ASSIGN_LOAD_WEIGHT, "
            f"TASKCREW_ASSIGN_SUCCESS_WEIGHT) must sum to 1.0, got {weights:.4f}.",
        )
    for name, value in (
        ("TASKCREW_MIN_PROFICIENCY", settings.minimum_proficiency),
        ("TASKCREW_DEFAULT_REQUIRED_LEVEL", settings.default_required_level),
        ("TASKCREW_DEFAULT_SUCCESS_RATE", settings.default_success_rate),
        ("TASKCREW_SPAWN_PROFICIENCY", settings.spawn_proficiency),
        ("TASKCREW_SKILL_LEARNING_RATE", settings.learning_rate),
    ):
        if not 0 <= value <= 1:
            raise ValueError(f"{name} must be in [0, 1], got {value!r}.")
    if settings.min_workers <= 0 or settings.max_workers < settings.min_workers:
        raise ValueError(
            "TASKCREW_MIN_WORKERS must be > 0 and <= TASKCREW_MAX_WORKERS.",
        )
    if settings.max_concurrent_tasks <= 0:
        raise ValueError("TASKCREW_MAX_CONCURRENT_TASKS must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
