"""
graphfleet/core/config.py — Typed configuration loader for graphfleet.

Loads config/fleet.yaml and validates all values into frozen dataclasses.
Each raw pipeline entry is checked by a pydantic model before it becomes a
:class:`PipelineConfig`. All downstream modules import from this module;
never read YAML directly.
"""

from __future__ import annotations

import logging
import os
import signal
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from graphfleet.core.constants import FleetConstants as C

logger = logging.getLogger(__name__)

# Type tags accepted for completion_payload_type
PAYLOAD_CLASSES: dict[str, type] = {
    "string": str,
    "bytes": bytes,
    "int": int,
    "float": float,
    "mapping": dict,
}


# ──────────────────────────────────────────────
# Value types
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class PortAddress:
    """Locates one port on one engine inside one graph."""

    graph_id: int
    engine_id: int
    port_id: int = 0

    def __str__(self) -> str:
        return f"{self.graph_id}:{self.engine_id}:{self.port_id}"


@dataclass(frozen=True)
class PipelineConfig:
    """
    One graph to launch.

    Attributes:
        config_source: Location of the graph description handed to the engine.
        graph_id: Identifier the engine registers the graph under; unique per run.
        context_id: Device / resource context the graph runs in.
    """

    config_source: str
    graph_id: int
    context_id: int


@dataclass(frozen=True)
class LoggingConfig:
    """Run log configuration."""

    level: str = "INFO"
    log_dir: str = "logs"


def _default_pipelines() -> tuple[PipelineConfig, ...]:
    return tuple(
        PipelineConfig(config_source=f"graphs/graph{n}.yaml", graph_id=100 + n, context_id=n)
        for n in range(4)
    )


@dataclass(frozen=True)
class FleetConfig:
    """Root configuration object — single source of truth for a run."""

    pipelines: tuple[PipelineConfig, ...] = field(default_factory=_default_pipelines)
    entry_engine_id: int = C.ENTRY_ENGINE_ID
    terminal_engine_ids: tuple[int, ...] = C.TERMINAL_ENGINE_IDS
    port_id: int = C.PORT_ID
    payload: str = ""
    payload_type: str = C.PAYLOAD_TYPE
    completion_payload_type: str | None = None
    expected_completions: int = C.EXPECTED_COMPLETIONS
    poll_interval_ms: float = C.POLL_INTERVAL_MS
    interrupt_exit_code: int = C.INTERRUPT_EXIT_CODE
    signals: tuple[str, ...] = ("SIGINT", "SIGTERM")
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0

    def entry_port(self, graph_id: int) -> PortAddress:
        """Port the initial message is sent to."""
        return PortAddress(graph_id, self.entry_engine_id, self.port_id)

    def terminal_ports(self, graph_id: int) -> tuple[PortAddress, ...]:
        """Ports a completion sink is attached to."""
        return tuple(
            PortAddress(graph_id, engine_id, self.port_id)
            for engine_id in self.terminal_engine_ids
        )

    def signal_numbers(self) -> tuple[signal.Signals, ...]:
        return tuple(signal.Signals[name] for name in self.signals)

    def completion_payload_class(self) -> type | None:
        """Python type terminal outputs are checked against; ``None`` accepts any."""
        if self.completion_payload_type is None:
            return None
        return PAYLOAD_CLASSES[self.completion_payload_type]


# ──────────────────────────────────────────────
# Raw entry validation
# ──────────────────────────────────────────────


class PipelineEntry(BaseModel):
    """
    Pydantic-validated ``pipelines:`` list item.

    Rejects empty sources and negative identifiers before they reach the
    engine, where the failure would only show up as a create error.
    """

    config_source: str
    graph_id: int
    context_id: int = 0

    @field_validator("config_source")
    @classmethod
    def source_must_be_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("config_source must not be empty")
        return v.strip()

    @field_validator("graph_id", "context_id")
    @classmethod
    def must_be_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"identifier must be >= 0, got {v}")
        return v


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def _merge(defaults: dict, overrides: dict) -> dict:
    """
    Deep-merge *overrides* into *defaults*, returning a new dict.

    Nested dicts are merged recursively; scalar values and lists in
    overrides win.
    """
    result: dict = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _resolve_source(source: str, base_dir: Path | None) -> str:
    """Anchor a relative graph description path at the fleet file's directory."""
    path = Path(source)
    if base_dir is None or path.is_absolute():
        return source
    return str(base_dir / path)


def _build_pipelines(raw: Any, base_dir: Path | None) -> tuple[PipelineConfig, ...]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("pipelines must be a non-empty list")
    pipelines: list[PipelineConfig] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"pipelines[{index}] must be a mapping, got {type(item).__name__}")
        try:
            entry = PipelineEntry(**item)
        except ValidationError as exc:
            raise ValueError(f"Invalid pipelines[{index}]: {exc}") from exc
        pipelines.append(
            PipelineConfig(
                config_source=_resolve_source(entry.config_source, base_dir),
                graph_id=entry.graph_id,
                context_id=entry.context_id,
            )
        )
    return tuple(pipelines)


def _find_config_file(config_path: Path | str | None) -> Path | None:
    """
    Resolve the fleet file.

    Search order: explicit argument, ``GRAPHFLEET_CONFIG``, ``config/fleet.yaml``
    above this package, then nothing (built-in defaults).
    """
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {resolved}")
        return resolved
    if "GRAPHFLEET_CONFIG" in os.environ:
        resolved = Path(os.environ["GRAPHFLEET_CONFIG"])
        if not resolved.exists():
            raise FileNotFoundError(
                f"GRAPHFLEET_CONFIG points to missing file: {resolved}"
            )
        return resolved
    here = Path(__file__).resolve()
    for parent in [here.parent.parent.parent, here.parent.parent]:
        candidate = parent / "config" / "fleet.yaml"
        if candidate.exists():
            return candidate
    return None


def load_config(config_path: Path | str | None = None) -> FleetConfig:
    """
    Load, validate, and return a :class:`FleetConfig` from a YAML file.

    Relative ``config_source`` entries are resolved against the directory of
    the YAML file so a fleet can be launched from any working directory.

    Args:
        config_path: Optional path to a ``fleet.yaml`` file.

    Returns:
        A fully populated and frozen :class:`FleetConfig` instance.

    Raises:
        ValueError: If a field has an invalid type or value.
        FileNotFoundError: If *config_path* is explicitly given but does not exist.
    """
    resolved_path = _find_config_file(config_path)

    raw: dict = {}
    base_dir: Path | None = None
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
        base_dir = resolved_path.resolve().parent
    else:
        logger.info("No config file found — using built-in defaults")

    return config_from_dict(raw, base_dir=base_dir)


def config_from_dict(raw: dict, base_dir: Path | None = None) -> FleetConfig:
    """Build and validate a :class:`FleetConfig` from an already-parsed mapping."""
    defaults = FleetConfig()
    raw = _merge({"logging": {}}, raw)

    try:
        pipelines = (
            _build_pipelines(raw["pipelines"], base_dir)
            if "pipelines" in raw
            else defaults.pipelines
        )
        log_cfg = LoggingConfig(**raw.get("logging") or {})
        scalars = {
            key: raw[key]
            for key in (
                "entry_engine_id", "port_id", "payload", "payload_type", "completion_payload_type",
                "expected_completions", "poll_interval_ms", "interrupt_exit_code",
            )
            if key in raw
        }
        config = replace(defaults, pipelines=pipelines, logging=log_cfg, **scalars)
        if "terminal_engine_ids" in raw:
            config = replace(config, terminal_engine_ids=tuple(raw["terminal_engine_ids"]))
        if "signals" in raw:
            config = replace(config, signals=tuple(str(s).upper() for s in raw["signals"]))
    except TypeError as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    validate_config(config)
    logger.debug("Config loaded: %s", config)
    return config


def validate_config(config: FleetConfig) -> None:
    """
    Validate cross-field constraints on the loaded configuration.

    Raises:
        ValueError: If any configured value violates a hard constraint.
    """
    ids = [p.graph_id for p in config.pipelines]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValueError(f"graph_id values must be unique, duplicated: {duplicates}")
    if not config.terminal_engine_ids:
        raise ValueError("terminal_engine_ids must name at least one engine")
    if not all(isinstance(i, int) for i in config.terminal_engine_ids):
        raise ValueError(f"terminal_engine_ids must be integers, got {config.terminal_engine_ids}")
    if not isinstance(config.expected_completions, int) or config.expected_completions < 1:
        raise ValueError(
            f"expected_completions must be an integer >= 1, got {config.expected_completions!r}"
        )
    if not isinstance(config.poll_interval_ms, (int, float)) or config.poll_interval_ms <= 0:
        raise ValueError(f"poll_interval_ms must be positive, got {config.poll_interval_ms!r}")
    if (
        config.completion_payload_type is not None
        and config.completion_payload_type not in PAYLOAD_CLASSES
    ):
        raise ValueError(
            f"completion_payload_type must be one of {sorted(PAYLOAD_CLASSES)}, "
            f"got {config.completion_payload_type!r}"
        )
    for name in config.signals:
        if name not in signal.Signals.__members__:
            raise ValueError(f"Unknown signal name: {name!r}")
    if config.logging.level.upper() not in {"DEBUG", "INFO", "WARN", "WARNING", "ERROR"}:
        raise ValueError(f"logging.level not recognised: {config.logging.level!r}")
