from __future__ import annotations

import copy
import hashlib
import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigError
from .layout import DEFAULT_SECTOR_SIZE, parse_size

IMAGE_TYPES = ("snap", "classic")
COMPRESSIONS = ("none", "xz", "gzip", "zstd")
BOOTLOADERS = ("grub", "extlinux", "none")

# Runtime switches; they steer one invocation and never enter the persisted snapshot.
RUNTIME_KEYS = ("resume", "start_at", "stop_after", "stop_before", "dry_run")

_MACHINE_TO_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armhf",
    "riscv64": "riscv64",
    "ppc64le": "ppc64el",
    "s390x": "s390x",
}


def host_architecture() -> str:
    m = platform.machine().lower()
    return _MACHINE_TO_ARCH.get(m, m)


def _file_sha256(path: str) -> Optional[str]:
    try:
        with open(path, "rb") as fh:
            return hashlib.sha256(fh.read()).hexdigest()
    except FileNotFoundError:
        return None


@dataclass(frozen=True)
class BuildConfig:
    raw: Dict[str, Any]

    @property
    def image_type(self) -> str:
        return str(self.raw.get("image_type") or "")

    @property
    def output_path(self) -> Path:
        return Path(str(self.raw.get("output") or f"{self.image_type or 'ubuntu'}.img"))

    @property
    def workspace(self) -> Optional[Path]:
        w = self.raw.get("workspace")
        return Path(str(w)) if w else None

    @property
    def layout(self) -> Any:
        """Layout description: a YAML path (str) or an inline mapping; None means 'from the bundle'."""
        return self.raw.get("layout")

    @property
    def volume(self) -> Optional[str]:
        v = self.raw.get("volume")
        return str(v) if v else None

    @property
    def architecture(self) -> str:
        return str(self.raw.get("architecture") or host_architecture())

    @property
    def sector_size(self) -> int:
        return parse_size(self.raw.get("sector_size") or DEFAULT_SECTOR_SIZE, what="sector_size")

    @property
    def image_size(self) -> Optional[int]:
        v = self.raw.get("image_size")
        return parse_size(v, what="image_size") if v not in (None, "") else None

    @property
    def compression(self) -> str:
        return str(self.raw.get("compression") or "none")

    @property
    def preserve_artifacts(self) -> bool:
        return bool(self.raw.get("preserve_artifacts", False))

    @property
    def resume(self) -> bool:
        return bool(self.raw.get("resume", False))

    @property
    def dry_run(self) -> bool:
        return bool(self.raw.get("dry_run", False))

    @property
    def start_at(self) -> Optional[str]:
        return self.raw.get("start_at") or None

    @property
    def stop_after(self) -> Optional[str]:
        return self.raw.get("stop_after") or None

    @property
    def stop_before(self) -> Optional[str]:
        return self.raw.get("stop_before") or None

    @property
    def snap(self) -> Dict[str, Any]:
        return dict(self.raw.get("snap") or {})

    @property
    def classic(self) -> Dict[str, Any]:
        return dict(self.raw.get("classic") or {})

    @property
    def gadget_dir(self) -> Optional[Path]:
        g = self.classic.get("gadget_dir") if self.image_type == "classic" else None
        return Path(str(g)) if g else None

    def validate(self) -> None:
        """Check user intent; raises ConfigError before anything is mutated."""

        problems: List[str] = []
        if self.image_type not in IMAGE_TYPES:
            problems.append(f"image_type must be one of {', '.join(IMAGE_TYPES)}, got {self.image_type!r}")
        if self.compression not in COMPRESSIONS:
            problems.append(f"compression must be one of {', '.join(COMPRESSIONS)}, got {self.compression!r}")
        for key in ("sector_size", "image_size"):
            try:
                getattr(self, key)
            except ValueError as e:
                problems.append(str(e))
        if self.stop_after and self.stop_before:
            problems.append("stop_after (--thru) and stop_before (--until) are mutually exclusive")
        if self.start_at and not self.resume:
            problems.append("start_at requires resume")
        if self.resume and self.workspace is None:
            problems.append("resume requires an explicit workspace (--workdir)")
        if self.output_path.exists() and self.output_path.is_dir():
            problems.append(f"output {self.output_path} is a directory")
        if self.workspace is not None:
            ws = os.path.abspath(str(self.workspace))
            if os.path.commonpath([ws, os.path.abspath(str(self.output_path))]) == ws:
                problems.append(f"output {self.output_path} must not live inside the workspace {self.workspace}")

        layout = self.layout
        if layout is not None and not isinstance(layout, (str, os.PathLike, Mapping)):
            problems.append("layout must be a path or a mapping")

        if self.image_type == "snap":
            snap = self.snap
            if not snap.get("prepared_dir") and not snap.get("model"):
                problems.append("snap builds need snap.model or snap.prepared_dir")
            model = snap.get("model")
            if model and not snap.get("prepared_dir") and not Path(str(model)).is_file():
                problems.append(f"snap.model {model} does not exist")
            prepared = snap.get("prepared_dir")
            if prepared and not Path(str(prepared)).is_dir():
                problems.append(f"snap.prepared_dir {prepared} is not a directory")
        elif self.image_type == "classic":
            classic = self.classic
            if layout is None:
                problems.append("classic builds need a layout description")
            bl = str(classic.get("bootloader") or "grub")
            if bl not in BOOTLOADERS:
                problems.append(f"classic.bootloader must be one of {', '.join(BOOTLOADERS)}, got {bl!r}")
            for hook in classic.get("hooks") or []:
                if not os.access(str(hook), os.X_OK):
                    problems.append(f"customization hook {hook} is not an executable file")
            try:
                if int(classic.get("bootstrap_attempts", 3)) < 1:
                    problems.append("classic.bootstrap_attempts must be at least 1")
            except (TypeError, ValueError):
                problems.append("classic.bootstrap_attempts must be an integer")

        if problems:
            raise ConfigError("Invalid build configuration:\n  - " + "\n  - ".join(problems))

    def identity(self) -> Dict[str, Any]:
        """Fields that must not change across a resume.

        A layout file is pinned by its path and by the sha256 of its bytes, so
        editing it in place counts as a change.
        """

        layout = self.layout
        digest = None
        if layout is not None and not isinstance(layout, Mapping):
            layout = os.path.abspath(str(layout))
            digest = _file_sha256(layout)
        return {
            "image_type": self.image_type,
            "output": os.path.abspath(str(self.output_path)),
            "layout": layout,
            "layout_sha256": digest,
        }

    def snapshot(self) -> Dict[str, Any]:
        snap = {k: copy.deepcopy(v) for k, v in self.raw.items() if k not in RUNTIME_KEYS}
        snap.update(self.identity())
        if self.workspace is not None:
            snap["workspace"] = os.path.abspath(str(self.workspace))
        return snap

    def with_overrides(self, **overrides: Any) -> "BuildConfig":
        raw = dict(self.raw)
        raw.update({k: v for k, v in overrides.items() if v is not None})
        return BuildConfig(raw=raw)


def load_build_config(path: str) -> BuildConfig:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Build configuration not found: {path}")

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigError("build configuration must be YAML")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{path} is not valid YAML: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping/object")

    return BuildConfig(raw=raw)


def config_from_snapshot(snapshot: Mapping[str, Any], **overrides: Any) -> BuildConfig:
    """Rebuild the configuration of a saved run (``--resume`` without other options)."""

    return BuildConfig(raw=dict(snapshot)).with_overrides(**overrides)
