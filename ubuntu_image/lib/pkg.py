from __future__ import annotations

import logging
from typing import Sequence

from .chroot import chroot_cmd
from .command import CommandRunner

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def debootstrap_rootfs(
    runner: CommandRunner,
    *,
    target_root: str,
    suite: str,
    mirror: str,
    arch: str | None = None,
    components: Sequence[str] = (),
) -> None:
    argv = ["debootstrap", "--variant=minbase"]
    if arch:
        argv += ["--arch", arch]
    if components:
        argv.append("--components=" + ",".join(components))
    argv += [suite, target_root, mirror]
    runner.run(argv)


def apt_update(runner: CommandRunner, target_root: str) -> None:
    chroot_cmd(runner, target_root, ["apt-get", "update"], env=APT_ENV)


def apt_install(
    runner: CommandRunner,
    target_root: str,
    packages: Sequence[str],
    *,
    with_recommends: bool = False,
) -> None:
    if not packages:
        return
    argv = ["apt-get", "install", "-y"]
    if not with_recommends:
        argv.append("--no-install-recommends")
    chroot_cmd(runner, target_root, [*argv, *packages], env=APT_ENV)


def dpkg_manifest(runner: CommandRunner, target_root: str) -> str:
    """Return ``name<TAB>version`` lines for every package installed in target root."""

    r = chroot_cmd(runner, target_root, ["dpkg-query", "-W", "--showformat=${Package}\t${Version}\n"])
    return r.stdout or ""
