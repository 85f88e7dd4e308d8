from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, Tuple

from ..build_config import BuildConfig
from ..errors import ConfigError
from ..layout import Volume, load_layout_description, resolve_volume
from ..lib.command import CommandRunner
from ..state_store import WorkState

SNAP = "snap"
CLASSIC = "classic"
SHARED = "shared"


@dataclass(frozen=True)
class StepContext:
    config: BuildConfig
    runner: CommandRunner
    workspace: Path

    @property
    def disk_image(self) -> Path:
        return self.workspace / "disk.img"

    def inside_workspace(self, p: Path | str) -> bool:
        try:
            Path(p).resolve().relative_to(self.workspace.resolve())
        except ValueError:
            return False
        return True


class Step(Protocol):
    """A single re-runnable build step.

    ``run`` must rebuild its outputs from scratch: it may be re-entered after
    a crash that happened before its checkpoint was written.
    """

    name: str
    catalog: str
    produces: Tuple[str, ...]

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        ...


def volume_of(state: WorkState) -> Volume:
    if not state.volume:
        raise RuntimeError("Volume not resolved; run load_layout first")
    return Volume.from_dict(state.volume)


def resolve_configured_volume(
    config: BuildConfig,
    *,
    layout: Any = None,
    content_root: Optional[Path | str] = None,
    check_content: bool = True,
) -> Volume:
    return resolve_layout(config, layout=layout, content_root=content_root, check_content=check_content)[0]


def resolve_layout(
    config: BuildConfig,
    *,
    layout: Any = None,
    content_root: Optional[Path | str] = None,
    check_content: bool = True,
) -> Tuple[Volume, Optional[Path]]:
    """Resolve the volume the build will produce, and the content root it was checked against.

    An explicit ``layout`` in the configuration wins over one discovered in
    the bundle. Content sources are looked up under ``content_root``, the
    classic gadget directory, or the layout file's own directory. The
    returned root is absolute, or None when content was not checked.
    """

    source = config.layout if config.layout is not None else layout
    if source is None:
        raise ConfigError("No layout description available")
    description, base = load_layout_description(source)

    root: Optional[Path] = None
    if check_content:
        if content_root is not None:
            root = Path(content_root)
        else:
            root = config.gadget_dir or base or Path.cwd()
        root = root.resolve()

    volume = resolve_volume(
        description,
        content_root=root,
        volume_name=config.volume,
        sector_size=config.sector_size,
        architecture=config.architecture,
        image_size=config.image_size,
    )
    return volume, root
