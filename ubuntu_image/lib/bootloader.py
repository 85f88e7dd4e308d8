from __future__ import annotations

import logging
from pathlib import Path

from .chroot import chroot_cmd
from .command import CommandRunner

logger = logging.getLogger(__name__)

GRUB_EFI_TARGETS = {
    "amd64": "x86_64-efi",
    "arm64": "arm64-efi",
    "armhf": "arm-efi",
    "riscv64": "riscv64-efi",
}


def install_grub_efi(
    runner: CommandRunner,
    *,
    target_root: str,
    arch: str,
    bootloader_id: str = "ubuntu",
) -> None:
    """Install GRUB into a mounted image; ESP expected at /boot/efi."""

    target = GRUB_EFI_TARGETS.get(arch)
    if not target:
        raise RuntimeError(f"Unsupported arch for EFI grub: {arch}")

    # --removable/--no-nvram: an image must not touch the build host's EFI variables.
    chroot_cmd(
        runner,
        target_root,
        [
            "grub-install",
            f"--target={target}",
            "--efi-directory=/boot/efi",
            f"--bootloader-id={bootloader_id}",
            "--removable",
            "--no-nvram",
        ],
    )
    chroot_cmd(runner, target_root, ["update-grub"], check=False)
    logger.info("GRUB EFI installed (%s)", target)


def write_extlinux_config(*, target_root: str, root_uuid: str, title: str = "Ubuntu") -> Path:
    """Write a generic extlinux.conf for U-Boot."""

    extlinux_dir = Path(target_root) / "boot/extlinux"
    extlinux_dir.mkdir(parents=True, exist_ok=True)

    cfg = extlinux_dir / "extlinux.conf"
    contents = (
        "DEFAULT ubuntu\n"
        "TIMEOUT 5\n"
        f"MENU TITLE {title}\n\n"
        "LABEL ubuntu\n"
        "  LINUX /boot/vmlinuz\n"
        "  INITRD /boot/initrd.img\n"
        f"  APPEND root=UUID={root_uuid} rw quiet\n"
    )
    cfg.write_text(contents, encoding="utf-8")
    logger.info("Wrote extlinux config: %s", cfg)
    return cfg
