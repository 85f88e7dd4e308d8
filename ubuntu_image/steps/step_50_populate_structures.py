from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..layout import Structure
from ..lib.assets import copy_tree, reset_dir
from ..lib.storage import make_filesystem, write_at
from ..state_store import WorkState
from .base import SHARED, StepContext, volume_of

logger = logging.getLogger(__name__)


def _stage_content(s: Structure, content_root: Path, staging: Path) -> None:
    for c in s.content:
        src = content_root / str(c.source)
        target = c.target or src.name
        dst = staging / target.lstrip("/")
        if target.endswith("/"):
            dst = dst / src.name
        copy_tree(src, dst)


class PopulateStructuresStep:
    """Write every structure's content into the disk image.

    Raw structures get their images copied in at their offset. Filesystem
    structures are built as standalone images and then copied in. The
    system-data structure takes the staged rootfs when it declares no content
    of its own.
    """

    name = "populate_structures"
    catalog = SHARED
    produces = ("structures",)

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        volume = volume_of(state)
        image = state.artifact("disk_image")
        if not state.decisions.get("content_root"):
            raise RuntimeError("Content root not resolved; run load_layout first")
        content_root = Path(state.decisions["content_root"])
        rootfs: Optional[str] = state.decisions.get("rootfs_dir")

        work = reset_dir(ctx.workspace / "structures")

        for s in volume.structures:
            if s.filesystem:
                if s.role == "system-data" and not s.content and rootfs:
                    content_dir = Path(rootfs)
                else:
                    content_dir = work / f"{s.index:02d}-content"
                    content_dir.mkdir()
                    _stage_content(s, content_root, content_dir)

                fs_image = work / f"{s.index:02d}.img"
                make_filesystem(
                    ctx.runner,
                    fs=s.filesystem,
                    fs_image=fs_image,
                    size=s.size,
                    label=s.label,
                    content_dir=content_dir,
                )
                write_at(image, s.offset, fs_image, limit=s.size)
                logger.info("Populated %s (%s) from %s", s.name, s.filesystem, content_dir)
            else:
                cursor = 0
                for c in s.content:
                    src = content_root / str(c.image)
                    cursor += write_at(image, s.offset + cursor, src, limit=s.size - cursor)
                if s.content:
                    logger.info("Populated %s with %d raw bytes", s.name, cursor)

        state.record_artifact("structures", work)
        return state
