from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from ..state_store import WorkState, atomic_write_text
from .base import SHARED, StepContext

logger = logging.getLogger(__name__)


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def manifest_path_for(output: Path) -> Path:
    return output.with_name(f"{output.name}.manifest.json")


class GenerateManifestStep:
    """Enumerate every artifact the run's steps recorded.

    Artifacts outside the workspace survive teardown and get size and sha256.
    """

    name = "generate_manifest"
    catalog = SHARED
    produces = ()

    def run(self, ctx: StepContext, state: WorkState) -> WorkState:
        entries: List[Dict[str, Any]] = []
        for name, p in sorted(state.artifacts.items()):
            path = Path(p)
            retained = not ctx.inside_workspace(path)
            entry: Dict[str, Any] = {
                "name": name,
                "path": str(path),
                "kind": "directory" if path.is_dir() else "file" if path.is_file() else "missing",
                "retained": retained,
            }
            if retained and path.is_file():
                entry["size"] = path.stat().st_size
                entry["sha256"] = _sha256(path)
            entries.append(entry)

        manifest = {
            "image_type": ctx.config.image_type,
            "architecture": ctx.config.architecture,
            "steps": list(state.completed_steps) + [self.name],
            "artifacts": entries,
        }
        path = manifest_path_for(ctx.config.output_path)
        atomic_write_text(path, json.dumps(manifest, indent=2, sort_keys=True) + "\n")

        state.decisions["manifest_path"] = str(path)
        logger.info("Wrote manifest %s (%d artifacts)", path, len(entries))
        return state
