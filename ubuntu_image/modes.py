"""Build-mode variants.

A build mode is a tagged variant (``SnapMode`` | ``ClassicMode``). Each one
supplies its step catalog, its initial work state and the layout check it can
do before any work starts. The engine is written against ``BuildMode`` and
never against a concrete mode.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, List, Optional, Protocol, Sequence, Tuple, Union

from .build_config import BuildConfig
from .errors import ConfigError
from .layout import Volume
from .state_store import WorkState
from .steps import (
    BootstrapRootfsStep,
    CompressStep,
    CreateDiskImageStep,
    CustomizeRootfsStep,
    FinalizeStep,
    GenerateManifestStep,
    GeneratePackageManifestStep,
    InstallBootloaderStep,
    InstallPackagesStep,
    LoadGadgetYamlStep,
    LoadLayoutStep,
    PartitionImageStep,
    PopulateStructuresStep,
    PrepareImageStep,
)
from .steps.base import CLASSIC, SHARED, SNAP, Step, resolve_configured_volume
from .steps.step_12_load_gadget_yaml import GADGET_DIR, GADGET_YAML

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepDefinition:
    name: str
    ordinal: int
    step: Step
    membership: str
    produces: Tuple[str, ...]


def build_catalog(steps: Sequence[Step]) -> Tuple[StepDefinition, ...]:
    names = [s.name for s in steps]
    dupes = {n for n in names if names.count(n) > 1}
    if dupes:
        raise ValueError(f"Duplicate step names in catalog: {', '.join(sorted(dupes))}")
    return tuple(
        StepDefinition(name=s.name, ordinal=i, step=s, membership=s.catalog, produces=tuple(s.produces))
        for i, s in enumerate(steps)
    )


# Shared steps exist once and are placed into both catalogs.
LOAD_LAYOUT = LoadLayoutStep()
CREATE_DISK_IMAGE = CreateDiskImageStep()
PARTITION_IMAGE = PartitionImageStep()
POPULATE_STRUCTURES = PopulateStructuresStep()

SHARED_TAIL: Tuple[Step, ...] = (FinalizeStep(), CompressStep(), GenerateManifestStep())

SNAP_CATALOG = build_catalog(
    [
        PrepareImageStep(),
        LoadGadgetYamlStep(),
        LOAD_LAYOUT,
        CREATE_DISK_IMAGE,
        PARTITION_IMAGE,
        POPULATE_STRUCTURES,
        *SHARED_TAIL,
    ]
)

CLASSIC_CATALOG = build_catalog(
    [
        BootstrapRootfsStep(),
        InstallPackagesStep(),
        CustomizeRootfsStep(),
        GeneratePackageManifestStep(),
        LOAD_LAYOUT,
        CREATE_DISK_IMAGE,
        PARTITION_IMAGE,
        POPULATE_STRUCTURES,
        InstallBootloaderStep(),
        *SHARED_TAIL,
    ]
)


class BuildMode(Protocol):
    name: ClassVar[str]

    def catalog(self) -> Tuple[StepDefinition, ...]:
        ...

    def initial_state(self, config: BuildConfig) -> WorkState:
        ...

    def preflight(self, config: BuildConfig) -> Optional[Volume]:
        ...


@dataclass(frozen=True)
class SnapMode:
    """Rebuild an image from a prepared snap bundle."""

    name: ClassVar[str] = SNAP

    prepared_dir: Optional[Path] = None

    def catalog(self) -> Tuple[StepDefinition, ...]:
        return SNAP_CATALOG

    def initial_state(self, config: BuildConfig) -> WorkState:
        return WorkState(build_mode=self.name, config_snapshot=config.snapshot())

    def preflight(self, config: BuildConfig) -> Optional[Volume]:
        """Validate the layout now when the bundle is already on disk."""

        if self.prepared_dir is not None:
            gadget = self.prepared_dir / GADGET_DIR
            layout = gadget / GADGET_YAML
            if config.layout is None and not layout.is_file():
                raise ConfigError(f"Prepared bundle has no layout metadata at {layout}")
            return resolve_configured_volume(config, layout=str(layout), content_root=gadget)
        if config.layout is not None:
            # Gadget content only appears once prepare-image ran.
            return resolve_configured_volume(config, check_content=False)
        return None


@dataclass(frozen=True)
class ClassicMode:
    """Bootstrap a root filesystem from a package archive."""

    name: ClassVar[str] = CLASSIC

    bootloader: str = "grub"

    def catalog(self) -> Tuple[StepDefinition, ...]:
        return CLASSIC_CATALOG

    def initial_state(self, config: BuildConfig) -> WorkState:
        state = WorkState(build_mode=self.name, config_snapshot=config.snapshot())
        state.decisions["bootloader_requested"] = self.bootloader
        return state

    def preflight(self, config: BuildConfig) -> Optional[Volume]:
        return resolve_configured_volume(config)


Mode = Union[SnapMode, ClassicMode]


def mode_for(config: BuildConfig) -> Mode:
    """Pick the variant for ``config.image_type``."""

    if config.image_type == SNAP:
        prepared = config.snap.get("prepared_dir")
        return SnapMode(prepared_dir=Path(str(prepared)).resolve() if prepared else None)
    if config.image_type == CLASSIC:
        return ClassicMode(bootloader=str(config.classic.get("bootloader") or "grub"))
    raise ConfigError(f"Unknown image type {config.image_type!r}", hint="Use 'snap' or 'classic'")


def catalog_for(mode_name: str) -> Tuple[StepDefinition, ...]:
    return {SNAP: SNAP_CATALOG, CLASSIC: CLASSIC_CATALOG}[mode_name]


def shared_step_names() -> List[str]:
    return [d.name for d in SNAP_CATALOG if d.membership == SHARED]
