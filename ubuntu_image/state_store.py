from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import CorruptStateError, StateVersionError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = {SCHEMA_VERSION}

STATE_FILE_NAME = "ubuntu-image.json"


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"yaml", "yml"}:
        return "yaml"
    # Default to JSON for unknown extensions.
    return "json"


def _yaml():
    try:
        import yaml  # type: ignore
    except ImportError as e:  # pragma: no cover
        raise RuntimeError("YAML state requested but PyYAML is not available. Use a .json state file.") from e
    return yaml


@dataclass
class WorkState:
    """Mutable record threaded through the steps of one run."""

    build_mode: str
    step_ordinal: int = 0
    completed_steps: List[str] = field(default_factory=list)
    artifacts: Dict[str, str] = field(default_factory=dict)
    volume: Optional[Dict[str, Any]] = None
    decisions: Dict[str, Any] = field(default_factory=dict)
    config_snapshot: Dict[str, Any] = field(default_factory=dict)

    def record_artifact(self, name: str, path: Path | str) -> None:
        self.artifacts[name] = str(path)

    def artifact(self, name: str) -> Path:
        p = self.artifacts.get(name)
        if not p:
            raise RuntimeError(f"Artifact {name!r} missing; an earlier step must produce it")
        return Path(p)

    def to_record(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "build_mode": self.build_mode,
            "current_step_ordinal": self.step_ordinal,
            "completed_step_names": list(self.completed_steps),
            "configuration_snapshot": self.config_snapshot,
            "workspace_artifact_paths": dict(self.artifacts),
            "volume": self.volume,
            "decisions": self.decisions,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "WorkState":
        try:
            ordinal = record["current_step_ordinal"]
            completed = record["completed_step_names"]
            mode = record["build_mode"]
            if not isinstance(ordinal, int) or ordinal < 0:
                raise TypeError("current_step_ordinal must be a non-negative integer")
            if not isinstance(completed, list) or not all(isinstance(s, str) for s in completed):
                raise TypeError("completed_step_names must be a list of strings")
            if not isinstance(mode, str):
                raise TypeError("build_mode must be a string")
            return cls(
                build_mode=mode,
                step_ordinal=ordinal,
                completed_steps=list(completed),
                artifacts=dict(record.get("workspace_artifact_paths") or {}),
                volume=record.get("volume"),
                decisions=dict(record.get("decisions") or {}),
                config_snapshot=dict(record.get("configuration_snapshot") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptStateError(f"State record is malformed: {e}") from e


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def save_state(path: str | Path, state: WorkState) -> None:
    """Checkpoint ``state``; a crash never leaves a truncated record behind."""

    p = Path(path)
    record = state.to_record()
    if _detect_format(p) == "yaml":
        text = _yaml().safe_dump(record, sort_keys=False)
    else:
        text = json.dumps(record, indent=2, sort_keys=True) + "\n"
    atomic_write_text(p, text)
    logger.debug("Checkpoint saved: ordinal=%d path=%s", state.step_ordinal, p)


def load_state(path: str | Path) -> WorkState:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise CorruptStateError(f"State file {p} is not valid UTF-8") from e

    try:
        if _detect_format(p) == "yaml":
            yaml = _yaml()
            try:
                data = yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise CorruptStateError(f"State file {p} is not valid YAML: {e}") from e
        else:
            data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptStateError(f"State file {p} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise CorruptStateError(f"State file {p} must contain an object, got {type(data).__name__}")

    version = data.get("schema_version")
    if version not in SUPPORTED_SCHEMA_VERSIONS:
        raise StateVersionError(
            f"State file {p} has schema version {version!r}; supported: {sorted(SUPPORTED_SCHEMA_VERSIONS)}",
            hint="Start a fresh build without --resume",
        )

    return WorkState.from_record(data)


def discard_state(path: str | Path) -> bool:
    p = Path(path)
    if p.exists():
        logger.info("Discarding stale state record %s", p)
        p.unlink()
        return True
    return False
