from __future__ import annotations

import logging
from typing import List

from ..lib.chroot import mount_chroot_binds, umount_chroot_binds
from ..lib.pkg import apt_install, apt_update
from ..state_store import WorkState
from .base import CLASSIC, StepContext

logger = logging.getLogger(__name__)

DEFAULT_KERNEL = "linux-image-generic"

GRUB_EFI_BY_ARCH = {
    "amd64": ["grub-efi-amd64", "shim-signed"],
    "arm64": ["grub-efi-arm64"],
    "armhf": ["grub-efi-arm"],
    "riscv64": ["grub-efi-riscv64"],
}


def packages_for(ctx: StepContext) -> List[str]:
    cfg = ctx.config.classic
    pkgs = [str(p) for p in cfg.get("packages") or []]
    kernel = cfg.get("kernel", DEFAULT_KERNEL)
    if kernel:
        pkgs.append(str(kernel))
    if str(cfg.get("bootloader") or "grub") == "grub":
        pkgs += GRUB_EFI_BY_ARCH.get(ctx.config.architecture, [])
    # de-duplicate, keep order
    return list(dict.fromkeys(pkgs))


class InstallPackagesStep:
    name = "install_packages"
    catalog = CLASSIC
    produces = ()

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        chroot = str(state.artifact("rootfs"))
        pkgs = packages_for(ctx)
        if not pkgs:
            logger.info("No extra packages requested")
            return state

        mount_chroot_binds(ctx.runner, chroot)
        try:
            apt_update(ctx.runner, chroot)
            apt_install(ctx.runner, chroot, pkgs, with_recommends=bool(ctx.config.classic.get("with_recommends")))
        finally:
            umount_chroot_binds(ctx.runner, chroot)

        state.decisions["installed_packages"] = pkgs
        logger.info("Installed %d packages", len(pkgs))
        return state
