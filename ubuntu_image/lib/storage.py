from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from ..layout import Volume
from .command import CommandRunner

logger = logging.getLogger(__name__)

COPY_CHUNK = 4 * 1024 * 1024


def part_device(disk: str, n: int) -> str:
    # nvme/mmcblk/loop devices use p suffix
    if disk.endswith(tuple("0123456789")):
        return f"{disk}p{n}"
    return f"{disk}{n}"


def create_sparse_image(path: Path, size: int) -> None:
    """(Re)create ``path`` as a sparse file of exactly ``size`` bytes."""

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        path.unlink()
    with path.open("wb") as fh:
        fh.truncate(size)
    logger.info("Created sparse image %s (%d bytes)", path, size)


def partition_table_script(volume: Volume) -> str:
    """Render an sfdisk script for the volume's partition structures."""

    ss = volume.sector_size
    lines = [
        f"label: {'gpt' if volume.schema == 'gpt' else 'dos'}",
        "unit: sectors",
        f"sector-size: {ss}",
        "",
    ]
    for _, s in volume.partitions():
        entry = [
            f"start={s.offset // ss}",
            f"size={s.size // ss}",
            f"type={s.partition_type(volume.schema)}",
        ]
        if volume.schema == "gpt":
            entry.append(f'name="{s.name}"')
        elif s.bootable or s.role == "system-boot":
            entry.append("bootable")
        lines.append(", ".join(entry))
    return "\n".join(lines) + "\n"


def write_partition_table(runner: CommandRunner, image: Path, volume: Volume) -> None:
    script = partition_table_script(volume)
    logger.debug("sfdisk script:\n%s", script)
    runner.run(
        ["sfdisk", "--no-reread", "--no-tell-kernel", "--wipe", "always", str(image)],
        input_text=script,
    )


def write_at(image: Path, offset: int, src: Path, *, limit: Optional[int] = None) -> int:
    """Copy ``src`` into ``image`` at ``offset`` without truncating the image."""

    size = src.stat().st_size
    if limit is not None and size > limit:
        raise RuntimeError(f"{src} ({size} bytes) does not fit in {limit} bytes")
    with src.open("rb") as fin, image.open("r+b") as fout:
        fout.seek(offset)
        shutil.copyfileobj(fin, fout, COPY_CHUNK)
    logger.debug("Wrote %s at offset %d (%d bytes)", src, offset, size)
    return size


def make_filesystem(
    runner: CommandRunner,
    *,
    fs: str,
    fs_image: Path,
    size: int,
    label: Optional[str],
    content_dir: Path,
) -> None:
    """Build a standalone filesystem image populated from ``content_dir``."""

    create_sparse_image(fs_image, size)
    if fs == "ext4":
        argv = ["mkfs.ext4", "-F", "-q"]
        if label:
            argv += ["-L", label[:16]]
        argv += ["-d", str(content_dir), str(fs_image)]
        runner.run(argv)
    elif fs == "vfat":
        argv = ["mkfs.vfat"]
        if label:
            argv += ["-n", label.upper()[:11]]
        argv.append(str(fs_image))
        runner.run(argv)
        entries = sorted(content_dir.iterdir()) if content_dir.is_dir() else []
        if entries:
            runner.run(["mcopy", "-s", "-i", str(fs_image), *[str(e) for e in entries], "::"])
    else:
        raise RuntimeError(f"Unsupported filesystem: {fs}")


def attach_loop(runner: CommandRunner, image: Path) -> str:
    r = runner.run(["losetup", "--find", "--show", "--partscan", str(image)])
    dev = (r.stdout or "").strip()
    if not dev:
        if getattr(runner, "dry_run", False):
            return "/dev/loop0"
        raise RuntimeError(f"losetup did not report a device for {image}")
    logger.info("Mapped %s to %s", image, dev)
    return dev


def detach_loop(runner: CommandRunner, dev: str) -> None:
    runner.run(["losetup", "--detach", dev], check=False)


def copy_sparse(src: Path, dst: Path) -> None:
    """Copy ``src`` to ``dst`` atomically, leaving all-zero chunks as holes."""

    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp = dst.with_name(f".{dst.name}.tmp")
    size = src.stat().st_size
    zero = bytes(COPY_CHUNK)
    try:
        with src.open("rb") as fin, tmp.open("wb") as fout:
            while True:
                chunk = fin.read(COPY_CHUNK)
                if not chunk:
                    break
                if chunk == zero[: len(chunk)]:
                    fout.seek(len(chunk), 1)
                else:
                    fout.write(chunk)
            fout.truncate(size)
            fout.flush()
            os.fsync(fout.fileno())
        os.replace(tmp, dst)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
