"""Volume/layout model.

Parses a gadget-style layout description into an ordered ``Volume`` of
``Structure`` records and validates it before anything touches a disk image:

- no two structures overlap
- at least one structure is bootable for the target architecture
- every offset is aligned to the sector size
- every content source exists and is readable

All problems are reported together in a single ``ConfigError``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

DEFAULT_SECTOR_SIZE = 512
# Structures without an explicit offset are packed from here, 1 MiB aligned.
DEFAULT_FIRST_OFFSET = MIB
DEFAULT_ALIGNMENT = MIB
MBR_BOOTCODE_SIZE = 440
# Protective MBR + GPT header + 32 sectors of entries; mirrored at the end of the disk.
GPT_RESERVED_SECTORS = 34

SCHEMAS = {"gpt", "mbr"}
FILESYSTEMS = {"ext4", "vfat"}
ROLES = {"mbr", "system-boot", "system-data", "system-seed", "system-save"}

ESP_GUID = "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"
BIOS_BOOT_GUID = "21686148-6449-6E6F-744E-656564454649"
BOOT_MBR_TYPES = {"EF"}

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMG])?\s*$", re.IGNORECASE)
_GUID_RE = re.compile(r"^[0-9A-F]{8}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{12}$", re.IGNORECASE)
_MBR_TYPE_RE = re.compile(r"^[0-9A-F]{2}$", re.IGNORECASE)

_UNITS = {None: 1, "K": KIB, "M": MIB, "G": GIB}


def parse_size(value: Any, *, what: str = "size") -> int:
    """Parse ``4096``, ``"512K"``, ``"1M"`` or ``"2G"`` (binary units) into bytes."""

    if isinstance(value, bool):
        raise ValueError(f"{what}: expected a size, got {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"{what}: must not be negative")
        return value
    m = _SIZE_RE.match(str(value))
    if not m:
        raise ValueError(f"{what}: cannot parse size {value!r}")
    unit = m.group(2).upper() if m.group(2) else None
    return int(m.group(1)) * _UNITS[unit]


def _align_up(n: int, alignment: int) -> int:
    return (n + alignment - 1) // alignment * alignment


@dataclass(frozen=True)
class Content:
    source: Optional[str] = None
    target: Optional[str] = None
    image: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        return {k: v for k, v in (("source", self.source), ("target", self.target), ("image", self.image)) if v}


@dataclass(frozen=True)
class Structure:
    index: int
    name: str
    type: str
    size: int
    offset: int
    role: str = ""
    filesystem: Optional[str] = None
    label: Optional[str] = None
    bootable: bool = False
    architectures: Tuple[str, ...] = ()
    content: Tuple[Content, ...] = ()

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def is_partition(self) -> bool:
        return self.role != "mbr" and self.type not in {"bare", "mbr"}

    def partition_type(self, schema: str) -> str:
        """Pick the GPT GUID or MBR code out of ``type`` (which may be hybrid ``"83,GUID"``)."""

        parts = [p.strip() for p in self.type.split(",")]
        for p in parts:
            if schema == "gpt" and _GUID_RE.match(p):
                return p.upper()
            if schema == "mbr" and _MBR_TYPE_RE.match(p):
                return p.upper()
        raise ConfigError(f"structure {self.name!r}: type {self.type!r} has no {schema} partition type")

    def boots_on(self, architecture: str) -> bool:
        if self.architectures and architecture not in self.architectures:
            return False
        if self.bootable or self.role == "system-boot":
            return True
        codes = {p.strip().upper() for p in self.type.split(",")}
        return bool(codes & ({ESP_GUID, BIOS_BOOT_GUID} | BOOT_MBR_TYPES))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "type": self.type,
            "size": self.size,
            "offset": self.offset,
            "role": self.role,
            "filesystem": self.filesystem,
            "label": self.label,
            "bootable": self.bootable,
            "architectures": list(self.architectures),
            "content": [c.to_dict() for c in self.content],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Structure":
        return cls(
            index=int(d["index"]),
            name=str(d["name"]),
            type=str(d["type"]),
            size=int(d["size"]),
            offset=int(d["offset"]),
            role=str(d.get("role") or ""),
            filesystem=d.get("filesystem"),
            label=d.get("label"),
            bootable=bool(d.get("bootable", False)),
            architectures=tuple(d.get("architectures") or ()),
            content=tuple(Content(**c) for c in d.get("content") or ()),
        )


@dataclass(frozen=True)
class Volume:
    name: str
    schema: str
    bootloader: Optional[str]
    sector_size: int
    size: int
    structures: Tuple[Structure, ...] = field(default_factory=tuple)

    def partitions(self) -> List[Tuple[int, Structure]]:
        """Partition-table entries as ``(number, structure)``, numbered from 1 in layout order."""

        return [(n, s) for n, s in enumerate((s for s in self.structures if s.is_partition), start=1)]

    def partition_number(self, structure: Structure) -> int:
        for n, s in self.partitions():
            if s.index == structure.index:
                return n
        raise ValueError(f"structure {structure.name!r} is not a partition")

    def find_role(self, role: str) -> Optional[Structure]:
        return next((s for s in self.structures if s.role == role), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "schema": self.schema,
            "bootloader": self.bootloader,
            "sector_size": self.sector_size,
            "size": self.size,
            "structures": [s.to_dict() for s in self.structures],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Volume":
        return cls(
            name=str(d["name"]),
            schema=str(d["schema"]),
            bootloader=d.get("bootloader"),
            sector_size=int(d["sector_size"]),
            size=int(d["size"]),
            structures=tuple(Structure.from_dict(s) for s in d.get("structures") or ()),
        )


def load_layout_description(value: Any) -> Tuple[Dict[str, Any], Optional[Path]]:
    """Return ``(mapping, base_dir)`` for a layout given as a YAML path or an inline mapping."""

    if isinstance(value, Mapping):
        return dict(value), None

    p = Path(str(value))
    if not p.is_file():
        raise ConfigError(f"Layout description not found: {p}")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Layout description {p} is not valid YAML: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Layout description {p} must contain a mapping")
    return raw, p.resolve().parent


def _select_volume(description: Mapping[str, Any], volume_name: Optional[str]) -> Tuple[str, Mapping[str, Any]]:
    volumes = description.get("volumes")
    if not isinstance(volumes, Mapping) or not volumes:
        raise ConfigError("Layout description defines no volumes")
    if volume_name is not None:
        if volume_name not in volumes:
            raise ConfigError(f"Volume {volume_name!r} not found in layout (have: {', '.join(volumes)})")
        return volume_name, volumes[volume_name] or {}
    if len(volumes) > 1:
        raise ConfigError(
            f"Layout defines {len(volumes)} volumes; choose one",
            hint="Set 'volume:' in the build configuration",
        )
    name = next(iter(volumes))
    return name, volumes[name] or {}


def _check_content(s: Structure, content_root: Path, problems: List[str]) -> None:
    for c in s.content:
        if c.image and (c.source or c.target):
            problems.append(f"structure {s.name!r}: content entry mixes 'image' with 'source'/'target'")
            continue
        rel = c.image or c.source
        if not rel:
            problems.append(f"structure {s.name!r}: content entry needs 'image' or 'source'")
            continue
        if c.image and s.filesystem:
            problems.append(f"structure {s.name!r}: raw image content on a {s.filesystem} structure")
        if c.source and not s.filesystem:
            problems.append(f"structure {s.name!r}: file content needs a filesystem")
        p = content_root / rel
        if not p.exists():
            problems.append(f"structure {s.name!r}: content source {p} does not exist")
        elif not os.access(p, os.R_OK):
            problems.append(f"structure {s.name!r}: content source {p} is not readable")
        elif c.image and p.is_file() and p.stat().st_size > s.size:
            problems.append(f"structure {s.name!r}: image {p} ({p.stat().st_size} bytes) exceeds size {s.size}")


def resolve_volume(
    description: Mapping[str, Any],
    *,
    content_root: Optional[Path],
    volume_name: Optional[str] = None,
    sector_size: int = DEFAULT_SECTOR_SIZE,
    architecture: str = "amd64",
    image_size: Optional[int] = None,
) -> Volume:
    """Resolve and validate one volume; raises ``ConfigError`` listing every problem found."""

    name, vol = _select_volume(description, volume_name)
    problems: List[str] = []

    schema = str(vol.get("schema") or "gpt").lower()
    if schema not in SCHEMAS:
        problems.append(f"volume {name!r}: unknown schema {schema!r}")
        schema = "gpt"

    if sector_size <= 0 or sector_size & (sector_size - 1):
        raise ConfigError(f"sector size {sector_size} is not a power of two")

    raw_structures = vol.get("structure") or []
    if not isinstance(raw_structures, list) or not raw_structures:
        raise ConfigError(f"volume {name!r} has no structures")

    table_end = GPT_RESERVED_SECTORS * sector_size if schema == "gpt" else sector_size
    structures: List[Structure] = []
    next_offset = DEFAULT_FIRST_OFFSET
    seen_names = set()

    for i, raw in enumerate(raw_structures):
        if not isinstance(raw, Mapping):
            problems.append(f"structure #{i}: expected a mapping")
            continue
        sname = str(raw.get("name") or f"structure-{i}")
        if sname in seen_names:
            problems.append(f"structure {sname!r}: duplicate name")
        seen_names.add(sname)

        role = str(raw.get("role") or "")
        if role and role not in ROLES:
            problems.append(f"structure {sname!r}: unknown role {role!r}")
        stype = str(raw.get("type") or ("mbr" if role == "mbr" else ""))
        if not stype:
            problems.append(f"structure {sname!r}: missing type")
            stype = "bare"

        try:
            size = parse_size(raw.get("size"), what=f"structure {sname!r} size")
        except ValueError as e:
            problems.append(str(e))
            continue
        if size == 0:
            problems.append(f"structure {sname!r}: size must be positive")

        if role == "mbr":
            offset = 0
            if raw.get("offset") not in (None, 0):
                problems.append(f"structure {sname!r}: mbr role must sit at offset 0")
            if size > MBR_BOOTCODE_SIZE:
                problems.append(f"structure {sname!r}: mbr role is limited to {MBR_BOOTCODE_SIZE} bytes")
        elif raw.get("offset") is not None:
            try:
                offset = parse_size(raw.get("offset"), what=f"structure {sname!r} offset")
            except ValueError as e:
                problems.append(str(e))
                continue
        else:
            offset = _align_up(next_offset, DEFAULT_ALIGNMENT)

        fs = raw.get("filesystem")
        fs = None if fs in (None, "", "none") else str(fs)
        if fs is not None and fs not in FILESYSTEMS:
            problems.append(f"structure {sname!r}: unsupported filesystem {fs!r}")

        bootable = raw.get("bootable", False)
        if not isinstance(bootable, bool):
            problems.append(f"structure {sname!r}: bootable must be true or false, got {bootable!r}")
            bootable = False

        content = []
        for c in raw.get("content") or []:
            if not isinstance(c, Mapping):
                problems.append(f"structure {sname!r}: content entries must be mappings")
                continue
            content.append(Content(source=c.get("source"), target=c.get("target"), image=c.get("image")))

        s = Structure(
            index=i,
            name=sname,
            type=stype,
            size=size,
            offset=offset,
            role=role,
            filesystem=fs,
            label=raw.get("filesystem-label") or (sname if fs else None),
            bootable=bootable,
            architectures=tuple(str(a) for a in raw.get("architectures") or ()),
            content=tuple(content),
        )
        structures.append(s)
        if role != "mbr":
            next_offset = s.end

        if offset % sector_size:
            problems.append(f"structure {sname!r}: offset {offset} is not aligned to {sector_size}-byte sectors")
        if s.is_partition:
            if size % sector_size:
                problems.append(f"structure {sname!r}: size {size} is not a multiple of {sector_size}")
            if offset < table_end:
                problems.append(f"structure {sname!r}: offset {offset} overlaps the {schema} partition table")
            try:
                s.partition_type(schema)
            except ConfigError as e:
                problems.append(str(e))
        if fs is not None and not s.is_partition:
            problems.append(f"structure {sname!r}: a filesystem needs a partition, not type {stype!r}")
        if content_root is not None:
            _check_content(s, content_root, problems)

    ordered = sorted(structures, key=lambda s: s.offset)
    for a, b in zip(ordered, ordered[1:]):
        if b.offset < a.end:
            problems.append(
                f"structures {a.name!r} [{a.offset}, {a.end}) and {b.name!r} [{b.offset}, {b.end}) overlap"
            )

    if structures and not any(s.boots_on(architecture) for s in structures):
        problems.append(f"volume {name!r} has no bootable structure for architecture {architecture}")

    if schema == "mbr" and len([s for s in structures if s.is_partition]) > 4:
        problems.append(f"volume {name!r}: mbr schema supports at most 4 partitions")

    required = max((s.end for s in structures), default=0)
    if schema == "gpt":
        required += GPT_RESERVED_SECTORS * sector_size
    required = _align_up(required, sector_size)
    size = required
    if image_size is not None:
        if image_size % sector_size:
            problems.append(f"image size {image_size} is not a multiple of {sector_size}")
        if image_size < required:
            problems.append(f"image size {image_size} is smaller than the layout needs ({required})")
        size = max(image_size, required)

    if problems:
        raise ConfigError("Invalid layout:\n  - " + "\n  - ".join(problems))

    bootloader = vol.get("bootloader")
    volume = Volume(
        name=name,
        schema=schema,
        bootloader=str(bootloader) if bootloader else None,
        sector_size=sector_size,
        size=size,
        structures=tuple(structures),
    )
    logger.info("Resolved volume %s: %d structures, %d bytes", name, len(structures), size)
    return volume
