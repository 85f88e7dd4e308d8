from __future__ import annotations

import logging

from .command import CommandRunner

logger = logging.getLogger(__name__)


def get_uuid(runner: CommandRunner, dev: str) -> str:
    """Return filesystem UUID for a block device."""

    r = runner.run(["blkid", "-s", "UUID", "-o", "value", dev])
    uuid = (r.stdout or "").strip()
    if not uuid and not getattr(runner, "dry_run", False):
        raise RuntimeError(f"Unable to determine UUID for {dev}")
    return uuid
