from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest
import yaml

from ubuntu_image.build_config import BuildConfig
from ubuntu_image.lib.command import CmdResult, CommandError
from ubuntu_image import pipeline
from ubuntu_image.pipeline import Reporter

ESP = "EF,C12A7328-F81F-11D2-BA4B-00A0C93EC93B"
BIOS_BOOT = "DA,21686148-6449-6E6F-744E-656564454649"
LINUX = "83,0FC63DAF-8483-4772-8E79-3D69D8477DE4"


class FakeRunner:
    """Records every command instead of running it."""

    def __init__(self) -> None:
        self.dry_run = False
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.inputs: List[Optional[str]] = []
        self.outputs: Dict[str, str] = {
            "losetup": "/dev/loop7\n",
            "blkid": "0f1e2d3c-aaaa-bbbb-cccc-112233445566\n",
            "dpkg-query": "base-files\t13ubuntu10\nsystemd\t255.4-1ubuntu8\n",
        }
        self.hooks: Dict[str, Callable[[List[str]], None]] = {}
        self._failures: Dict[str, int] = {}

    @staticmethod
    def program(argv: Sequence[str]) -> str:
        if argv[0] == "chroot" and len(argv) > 2:
            return argv[2]
        return os.path.basename(argv[0])

    def fail_next(self, program: str, times: int = 1) -> None:
        self._failures[program] = times

    def run(self, argv, *, check=True, env=None, cwd=None, input_text=None) -> CmdResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self.envs.append(dict(env or {}))
        self.inputs.append(input_text)
        prog = self.program(argv)
        if prog in self.hooks:
            self.hooks[prog](argv)
        if self._failures.get(prog, 0) > 0:
            self._failures[prog] -= 1
            if check:
                raise CommandError(argv, 1, f"{prog}: simulated failure")
            return CmdResult(argv=argv, returncode=1, stdout="", stderr="simulated failure")
        return CmdResult(argv=argv, returncode=0, stdout=self.outputs.get(prog, ""), stderr="")

    def programs(self) -> List[str]:
        return [self.program(a) for a in self.calls]

    def calls_to(self, program: str) -> List[List[str]]:
        return [a for a in self.calls if self.program(a) == program]


class CollectingReporter(Reporter):
    def __init__(self) -> None:
        super().__init__()
        self.infos: List[str] = []
        self.errors: List[str] = []

    def info(self, message: str) -> None:
        self.infos.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


def failing_saves(monkeypatch, allowed: int) -> None:
    """Let the first `allowed` checkpoint writes through, then fail with ENOSPC."""

    real = pipeline.save_state
    calls: List[Path] = []

    def save(path, state):
        calls.append(path)
        if len(calls) > allowed:
            raise OSError(28, "No space left on device")
        real(path, state)

    monkeypatch.setattr(pipeline, "save_state", save)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


def pc_layout(**volume_overrides: Any) -> Dict[str, Any]:
    volume: Dict[str, Any] = {
        "schema": "gpt",
        "bootloader": "grub",
        "structure": [
            {"name": "mbr", "role": "mbr", "type": "mbr", "size": 440, "content": [{"image": "pc-boot.img"}]},
            {"name": "BIOS Boot", "type": BIOS_BOOT, "size": "1M", "offset": "1M", "content": [{"image": "pc-core.img"}]},
            {
                "name": "EFI System",
                "role": "system-boot",
                "type": ESP,
                "filesystem": "vfat",
                "filesystem-label": "system-boot",
                "size": "4M",
                "content": [{"source": "grubx64.efi", "target": "EFI/boot/"}],
            },
            {"name": "writable", "role": "system-data", "type": LINUX, "filesystem": "ext4", "size": "8M"},
        ],
    }
    volume.update(volume_overrides)
    return {"volumes": {"pc": volume}}


def write_gadget(gadget: Path, layout: Optional[Dict[str, Any]] = None) -> Path:
    """Write a gadget content tree plus its layout; returns the layout path."""

    (gadget / "meta").mkdir(parents=True, exist_ok=True)
    (gadget / "pc-boot.img").write_bytes(b"\xeb\x63\x90" + bytes(range(256)) + b"\x55" * 181)
    (gadget / "pc-core.img").write_bytes(b"\x01\x02\x03\x04" * 1024)
    (gadget / "grubx64.efi").write_bytes(b"MZ" + b"\x00" * 62 + b"grub")
    path = gadget / "meta" / "gadget.yaml"
    path.write_text(yaml.safe_dump(layout or pc_layout()), encoding="utf-8")
    return path


@pytest.fixture
def snap_bundle(tmp_path: Path) -> Path:
    bundle = tmp_path / "bundle"
    write_gadget(bundle / "gadget")
    (bundle / "image" / "etc").mkdir(parents=True)
    (bundle / "image" / "etc" / "hostname").write_text("ubuntu\n", encoding="utf-8")
    return bundle


@pytest.fixture
def snap_config(tmp_path: Path, snap_bundle: Path) -> BuildConfig:
    return BuildConfig(
        raw={
            "image_type": "snap",
            "output": str(tmp_path / "out" / "pc.img"),
            "workspace": str(tmp_path / "work"),
            "architecture": "amd64",
            "snap": {"prepared_dir": str(snap_bundle)},
        }
    )


@pytest.fixture
def hook(tmp_path: Path) -> Path:
    p = tmp_path / "hooks" / "10-motd"
    p.parent.mkdir(parents=True)
    p.write_text("#!/bin/sh\necho hello > \"$UBUNTU_IMAGE_HOOK_ROOTFS/etc/motd\"\n", encoding="utf-8")
    p.chmod(p.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return p


@pytest.fixture
def classic_config(tmp_path: Path, hook: Path) -> BuildConfig:
    gadget = tmp_path / "gadget"
    layout = write_gadget(gadget)
    return BuildConfig(
        raw={
            "image_type": "classic",
            "output": str(tmp_path / "out" / "classic.img"),
            "workspace": str(tmp_path / "work"),
            "architecture": "amd64",
            "layout": str(layout),
            "classic": {
                "suite": "noble",
                "gadget_dir": str(gadget),
                "packages": ["openssh-server"],
                "hostname": "builder",
                "hooks": [str(hook)],
                "retry_delay": 0,
            },
        }
    )
