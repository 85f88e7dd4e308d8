from __future__ import annotations

import logging
import shutil
from pathlib import Path

from ..state_store import WorkState
from .base import SNAP, StepContext

logger = logging.getLogger(__name__)


class PrepareImageStep:
    """Provide the prepared bundle tree (``gadget/`` + ``image/``) for a snap build."""

    name = "prepare_image"
    catalog = SNAP
    produces = ("unpack",)

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        snap = ctx.config.snap

        prepared = snap.get("prepared_dir")
        if prepared:
            unpack = Path(str(prepared)).resolve()
            if not unpack.is_dir():
                raise RuntimeError(f"Prepared bundle directory missing: {unpack}")
            logger.info("Using prepared bundle %s", unpack)
            state.record_artifact("unpack", unpack)
            return state

        unpack = ctx.workspace / "unpack"
        if unpack.exists():
            shutil.rmtree(unpack)

        argv = [
            "snap",
            "prepare-image",
            "--arch",
            ctx.config.architecture,
            "--channel",
            str(snap.get("channel") or "stable"),
        ]
        for s in snap.get("snaps") or []:
            argv += ["--snap", str(s)]
        argv += [str(Path(str(snap["model"])).resolve()), str(unpack)]
        ctx.runner.run(argv)

        state.record_artifact("unpack", unpack)
        return state
