from __future__ import annotations

import logging

from ..lib.storage import copy_sparse
from ..state_store import WorkState
from .base import SHARED, StepContext, volume_of

logger = logging.getLogger(__name__)


class FinalizeStep:
    """Verify the assembled disk image and publish it at the output path."""

    name = "finalize"
    catalog = SHARED
    produces = ("image",)

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        volume = volume_of(state)
        image = state.artifact("disk_image")

        actual = image.stat().st_size
        if actual < volume.size:
            raise RuntimeError(f"Disk image {image} is {actual} bytes, expected {volume.size}")
        if actual > volume.size:
            logger.info("Trimming %s from %d to %d bytes", image, actual, volume.size)
            with image.open("r+b") as fh:
                fh.truncate(volume.size)

        out = ctx.config.output_path
        copy_sparse(image, out)
        state.record_artifact("image", out.resolve())
        logger.info("Image written to %s (%d bytes)", out, volume.size)
        return state
