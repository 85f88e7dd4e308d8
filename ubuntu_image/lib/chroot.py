from __future__ import annotations

import logging
from typing import Sequence

from .command import CmdResult, CommandRunner

logger = logging.getLogger(__name__)

BIND_MOUNTS = ("/dev", "/proc", "/sys")


def chroot_cmd(runner: CommandRunner, target_root: str, argv: Sequence[str], **kwargs) -> CmdResult:
    """Run a command inside target root."""

    return runner.run(["chroot", target_root, *argv], **kwargs)


def mount_chroot_binds(runner: CommandRunner, target_root: str) -> None:
    # Minimal bind mounts for apt, grub-install, initramfs tooling
    for src in BIND_MOUNTS:
        runner.run(["mount", "--bind", src, f"{target_root}{src}"])


def umount_chroot_binds(runner: CommandRunner, target_root: str) -> None:
    for src in reversed(BIND_MOUNTS):
        runner.run(["umount", "-lf", f"{target_root}{src}"], check=False)
