from __future__ import annotations

import logging
import shutil

from ..state_store import WorkState
from .base import SNAP, StepContext

logger = logging.getLogger(__name__)

GADGET_DIR = "gadget"
GADGET_YAML = "meta/gadget.yaml"
ROOTFS_DIR = "image"


class LoadGadgetYamlStep:
    """Read the layout metadata packaged in the bundle's gadget."""

    name = "load_gadget_yaml"
    catalog = SNAP
    produces = ("gadget_yaml",)

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        unpack = state.artifact("unpack")
        gadget = unpack / GADGET_DIR
        src = gadget / GADGET_YAML

        if not src.is_file():
            raise RuntimeError(f"Bundle has no layout metadata at {src}")

        # Keep a copy so a resumed run reads the same metadata it validated.
        copy = ctx.workspace / "gadget.yaml"
        shutil.copyfile(src, copy)
        state.record_artifact("gadget_yaml", copy)

        state.decisions["layout_path"] = str(copy)
        state.decisions["content_root"] = str(gadget)
        rootfs = unpack / ROOTFS_DIR
        if rootfs.is_dir():
            state.decisions["rootfs_dir"] = str(rootfs)
        else:
            state.decisions.pop("rootfs_dir", None)

        logger.info("Loaded gadget metadata from %s", src)
        return state
