from __future__ import annotations

import logging
import time

from ..lib.assets import reset_dir
from ..lib.chroot import umount_chroot_binds
from ..lib.command import CommandError
from ..lib.pkg import debootstrap_rootfs
from ..state_store import WorkState
from .base import CLASSIC, StepContext

logger = logging.getLogger(__name__)

DEFAULT_SUITE = "noble"
DEFAULT_MIRROR = "http://archive.ubuntu.com/ubuntu"
PORTS_MIRROR = "http://ports.ubuntu.com/ubuntu-ports"


class BootstrapRootfsStep:
    """debootstrap a minimal root filesystem into ``<workspace>/chroot``.

    Mirror fetches are retried here, inside the step; the engine never retries.
    """

    name = "bootstrap_rootfs"
    catalog = CLASSIC
    produces = ("rootfs",)

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        cfg = ctx.config.classic
        arch = ctx.config.architecture
        chroot = ctx.workspace / "chroot"

        suite = str(cfg.get("suite") or DEFAULT_SUITE)
        mirror = str(cfg.get("mirror") or (DEFAULT_MIRROR if arch in {"amd64", "i386"} else PORTS_MIRROR))
        components = [str(c) for c in cfg.get("components") or ["main", "universe"]]
        attempts = int(cfg.get("bootstrap_attempts", 3))
        delay = float(cfg.get("retry_delay", 5))

        # A crash in a later step may have left bind mounts behind.
        if chroot.exists():
            umount_chroot_binds(ctx.runner, str(chroot))

        for attempt in range(1, attempts + 1):
            reset_dir(chroot)
            try:
                debootstrap_rootfs(
                    ctx.runner,
                    target_root=str(chroot),
                    suite=suite,
                    mirror=mirror,
                    arch=arch,
                    components=components,
                )
                break
            except CommandError as e:
                if attempt == attempts:
                    raise
                logger.warning("debootstrap attempt %d/%d failed (%s); retrying", attempt, attempts, e.returncode)
                time.sleep(delay)

        state.record_artifact("rootfs", chroot)
        state.decisions["rootfs_dir"] = str(chroot)
        logger.info("Bootstrapped %s (%s) into %s", suite, arch, chroot)
        return state
