from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from ..layout import ESP_GUID
from ..lib.assets import reset_dir
from ..lib.block import get_uuid
from ..lib.bootloader import install_grub_efi, write_extlinux_config
from ..lib.chroot import mount_chroot_binds, umount_chroot_binds
from ..lib.storage import attach_loop, detach_loop, part_device
from ..state_store import WorkState
from .base import CLASSIC, StepContext, volume_of

logger = logging.getLogger(__name__)


class InstallBootloaderStep:
    name = "install_bootloader"
    catalog = CLASSIC
    produces = ()

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        volume = volume_of(state)
        bootloader = str(ctx.config.classic.get("bootloader") or volume.bootloader or "grub")
        if bootloader == "none":
            logger.info("Bootloader installation disabled")
            return state

        root = volume.find_role("system-data")
        if root is None or not root.filesystem:
            raise RuntimeError("Layout has no system-data filesystem to install a bootloader into")
        esp = volume.find_role("system-boot") or next(
            (s for s in volume.structures if s.filesystem == "vfat" and ESP_GUID in s.type.upper()),
            None,
        )
        if bootloader == "grub" and esp is None:
            raise RuntimeError("GRUB EFI needs a system-boot (ESP) structure")

        image = state.artifact("disk_image")
        mnt = reset_dir(ctx.workspace / "mount")
        dev = attach_loop(ctx.runner, image)
        mounted: List[Path] = []
        try:
            root_dev = part_device(dev, volume.partition_number(root))
            ctx.runner.run(["mount", root_dev, str(mnt)])
            mounted.append(mnt)

            if bootloader == "grub":
                efi = mnt / "boot/efi"
                efi.mkdir(parents=True, exist_ok=True)
                ctx.runner.run(["mount", part_device(dev, volume.partition_number(esp)), str(efi)])
                mounted.append(efi)

                mount_chroot_binds(ctx.runner, str(mnt))
                try:
                    install_grub_efi(ctx.runner, target_root=str(mnt), arch=ctx.config.architecture)
                finally:
                    umount_chroot_binds(ctx.runner, str(mnt))
            elif bootloader == "extlinux":
                root_uuid = get_uuid(ctx.runner, root_dev)
                state.decisions["root_uuid"] = root_uuid
                write_extlinux_config(target_root=str(mnt), root_uuid=root_uuid)
            else:
                raise RuntimeError(f"Unsupported bootloader: {bootloader}")
        finally:
            for m in reversed(mounted):
                ctx.runner.run(["umount", str(m)], check=False)
            detach_loop(ctx.runner, dev)

        state.decisions["bootloader"] = bootloader
        logger.info("Bootloader installed (%s)", bootloader)
        return state
