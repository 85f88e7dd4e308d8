from __future__ import annotations

import logging

from ..state_store import WorkState
from .base import SHARED, StepContext, resolve_layout

logger = logging.getLogger(__name__)


class LoadLayoutStep:
    name = "load_layout"
    catalog = SHARED
    produces = ()

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        volume, content_root = resolve_layout(
            ctx.config,
            layout=state.decisions.get("layout_path"),
            content_root=state.decisions.get("content_root"),
        )
        state.volume = volume.to_dict()
        state.decisions["image_size"] = volume.size
        # populate_structures reads content from exactly the root validated here.
        state.decisions["content_root"] = str(content_root)
        for s in volume.structures:
            logger.info(
                "  %-16s offset=%-10d size=%-10d fs=%s role=%s",
                s.name,
                s.offset,
                s.size,
                s.filesystem or "-",
                s.role or "-",
            )
        return state
