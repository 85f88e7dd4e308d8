from __future__ import annotations

import logging
from pathlib import Path

from ..lib.assets import copy_tree
from ..state_store import WorkState
from .base import CLASSIC, StepContext

logger = logging.getLogger(__name__)

HOOK_ENV = "UBUNTU_IMAGE_HOOK_ROOTFS"


class CustomizeRootfsStep:
    """Apply hostname, extra files and customization hooks to the staged rootfs.

    Every action overwrites rather than appends, so re-running is safe as long
    as the hooks themselves are.
    """

    name = "customize_rootfs"
    catalog = CLASSIC
    produces = ()

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        cfg = ctx.config.classic
        chroot = state.artifact("rootfs")

        hostname = cfg.get("hostname")
        if hostname:
            etc = chroot / "etc"
            etc.mkdir(parents=True, exist_ok=True)
            (etc / "hostname").write_text(f"{hostname}\n", encoding="utf-8")

        for entry in cfg.get("files") or []:
            src = Path(str(entry["source"]))
            dst = chroot / str(entry["destination"]).lstrip("/")
            copy_tree(src, dst)
            logger.info("Copied %s -> %s", src, dst)

        for hook in cfg.get("hooks") or []:
            logger.info("Running customization hook %s", hook)
            ctx.runner.run([str(hook)], env={HOOK_ENV: str(chroot)})

        return state
