from __future__ import annotations

import logging

from ..lib.pkg import dpkg_manifest
from ..state_store import WorkState
from .base import CLASSIC, StepContext

logger = logging.getLogger(__name__)


class GeneratePackageManifestStep:
    name = "generate_package_manifest"
    catalog = CLASSIC
    produces = ("package_manifest",)

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        chroot = str(state.artifact("rootfs"))
        out = ctx.config.output_path
        path = out.with_name(f"{out.name}.packages")
        path.parent.mkdir(parents=True, exist_ok=True)

        text = dpkg_manifest(ctx.runner, chroot)
        path.write_text(text, encoding="utf-8")

        state.record_artifact("package_manifest", path)
        logger.info("Wrote package manifest %s (%d packages)", path, len(text.splitlines()))
        return state
