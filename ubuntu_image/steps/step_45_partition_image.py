from __future__ import annotations

import logging

from ..lib.storage import write_partition_table
from ..state_store import WorkState
from .base import SHARED, StepContext, volume_of

logger = logging.getLogger(__name__)


class PartitionImageStep:
    name = "partition_image"
    catalog = SHARED
    produces = ()

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        volume = volume_of(state)
        image = state.artifact("disk_image")
        write_partition_table(ctx.runner, image, volume)
        logger.info("Wrote %s partition table with %d partitions", volume.schema, len(volume.partitions()))
        return state
