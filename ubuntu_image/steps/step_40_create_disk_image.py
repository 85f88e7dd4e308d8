from __future__ import annotations

from ..lib.storage import create_sparse_image
from ..state_store import WorkState
from .base import SHARED, StepContext, volume_of


class CreateDiskImageStep:
    name = "create_disk_image"
    catalog = SHARED
    produces = ("disk_image",)

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        volume = volume_of(state)
        create_sparse_image(ctx.disk_image, volume.size)
        state.record_artifact("disk_image", ctx.disk_image)
        return state
