from __future__ import annotations

import logging
from pathlib import Path

from ..state_store import WorkState
from .base import SHARED, StepContext

logger = logging.getLogger(__name__)

COMPRESSORS = {
    "xz": (["xz", "-T0", "--force", "--keep"], ".xz"),
    "gzip": (["gzip", "--force", "--keep"], ".gz"),
    "zstd": (["zstd", "--force", "-q"], ".zst"),
}


class CompressStep:
    name = "compress"
    catalog = SHARED
    produces = ("compressed_image",)

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        compression = ctx.config.compression
        if compression == "none":
            state.artifacts.pop("compressed_image", None)
            return state

        argv, suffix = COMPRESSORS[compression]
        image = state.artifact("image")
        ctx.runner.run([*argv, str(image)])

        out = Path(f"{image}{suffix}")
        state.record_artifact("compressed_image", out)
        logger.info("Compressed image with %s: %s", compression, out)
        return state
