from __future__ import annotations

import enum
import logging
import sys
from pathlib import Path
from typing import List, Optional, TextIO, Tuple

from .build_config import BuildConfig
from .errors import CleanupError, ConfigError, StepExecutionError, WorkspaceError
from .lib.command import CommandRunner
from .modes import BuildMode, StepDefinition
from .state_store import STATE_FILE_NAME, WorkState, discard_state, load_state, save_state
from .steps.base import StepContext
from .workspace import Workspace

logger = logging.getLogger(__name__)


class MachineState(enum.Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class Reporter:
    """User-facing messages; tests substitute one that collects them."""

    def __init__(self, out: Optional[TextIO] = None, err: Optional[TextIO] = None) -> None:
        self.out = out
        self.err = err

    def info(self, message: str) -> None:
        print(message, file=self.out or sys.stdout)

    def error(self, message: str) -> None:
        print(f"Error: {message}", file=self.err or sys.stderr)


class StateMachine:
    """Resumable engine: setup() -> run() -> teardown().

    Every completed step is checkpointed before the next one starts, so a
    resumed run picks up exactly where the last checkpoint left it.
    """

    def __init__(
        self,
        mode: BuildMode,
        *,
        runner: Optional[CommandRunner] = None,
        reporter: Optional[Reporter] = None,
    ) -> None:
        self.mode = mode
        self.runner = runner or CommandRunner()
        self.reporter = reporter or Reporter()
        self.config: Optional[BuildConfig] = None
        self.workspace: Optional[Workspace] = None
        self.work_state: Optional[WorkState] = None
        self.failure: Optional[StepExecutionError] = None
        self._state = MachineState.NOT_STARTED
        self._ready = False

    @property
    def state(self) -> MachineState:
        return self._state

    @property
    def catalog(self) -> Tuple[StepDefinition, ...]:
        return self.mode.catalog()

    def step_names(self) -> List[str]:
        return [d.name for d in self.catalog]

    @property
    def state_path(self) -> Path:
        if self.workspace is None or self.workspace.path is None:
            raise RuntimeError("setup() has not run")
        return self.workspace.path / STATE_FILE_NAME

    def _step_index(self, name: str, what: str) -> int:
        names = self.step_names()
        if name not in names:
            raise ConfigError(
                f"Unknown step {name!r} for {what}",
                hint=f"{self.mode.name} steps: {', '.join(names)}",
            )
        return names.index(name)

    def setup(self, config: BuildConfig) -> None:
        if self._ready or self._state is not MachineState.NOT_STARTED:
            raise RuntimeError("setup() may only be called once")

        config.validate()
        if config.image_type != self.mode.name:
            raise ConfigError(f"Configuration is for {config.image_type!r}, machine is {self.mode.name!r}")
        for what in ("start_at", "stop_after", "stop_before"):
            name = getattr(config, what)
            if name:
                self._step_index(name, what)

        # Layout problems surface here, before the workspace is touched.
        self.mode.preflight(config)

        workspace = Workspace(config.workspace)
        workspace.claim()
        try:
            state_path = workspace.path / STATE_FILE_NAME
            if config.resume:
                state = self._load_for_resume(config, state_path)
            else:
                discard_state(state_path)
                state = self.mode.initial_state(config)
                save_state(state_path, state)
        except OSError as e:
            workspace.release()
            raise WorkspaceError(f"Cannot write the state record in {workspace.path}: {e}") from e
        except BaseException:
            workspace.release()
            raise

        self.config = config
        self.workspace = workspace
        self.work_state = state
        self._ready = True
        logger.info(
            "Setup complete: mode=%s workspace=%s ordinal=%d/%d",
            self.mode.name,
            workspace.path,
            state.step_ordinal,
            len(self.catalog),
        )

    def _load_for_resume(self, config: BuildConfig, state_path: Path) -> WorkState:
        if not state_path.exists():
            raise ConfigError(
                f"Nothing to resume: no state record in {state_path.parent}",
                hint="Run without --resume to start a new build",
            )
        state = load_state(state_path)

        if state.build_mode != self.mode.name:
            raise ConfigError(f"Saved run is a {state.build_mode!r} build, not {self.mode.name!r}")

        current = config.identity()
        drifted = [k for k, v in current.items() if state.config_snapshot.get(k) != v]
        if drifted:
            raise ConfigError(
                "Configuration changed since the saved run: " + ", ".join(sorted(drifted)),
                hint="Resume with the original options or start a new build",
            )

        names = self.step_names()
        if state.step_ordinal > len(names) or any(n not in names for n in state.completed_steps):
            raise ConfigError("Saved run does not match this build's step catalog")

        if config.start_at:
            idx = names.index(config.start_at)
            if idx > state.step_ordinal:
                reached = names[state.step_ordinal]
                raise ConfigError(f"Cannot start at {config.start_at!r}: the saved run only reached {reached!r}")
            state.step_ordinal = idx
            state.completed_steps = [n for n in state.completed_steps if names.index(n) < idx]
            logger.info("Rewinding to step %s", config.start_at)

        state.config_snapshot = config.snapshot()
        save_state(state_path, state)
        logger.info("Resuming %s build at step %d", self.mode.name, state.step_ordinal)
        return state

    def run(self) -> None:
        if not self._ready:
            raise RuntimeError("run() requires a successful setup()")
        if self._state is MachineState.COMPLETED:
            return

        assert self.config is not None and self.workspace is not None and self.work_state is not None
        catalog = self.catalog
        ctx = StepContext(config=self.config, runner=self.runner, workspace=self.workspace.path)
        state = self.work_state
        self.failure = None
        self._state = MachineState.RUNNING

        while state.step_ordinal < len(catalog):
            d = catalog[state.step_ordinal]

            if d.name == self.config.stop_before:
                logger.info("Stopping before %s", d.name)
                self._state = MachineState.PAUSED
                return

            if d.name in state.completed_steps:
                logger.info("Skipping step %s (already completed)", d.name)
                state.step_ordinal += 1
                continue

            logger.info("Running step %s", d.name)
            self.reporter.info(f"[{d.ordinal + 1}/{len(catalog)}] {d.name}")
            try:
                result = d.step.run(ctx, state)
            except Exception as e:
                self._state = MachineState.FAILED
                self.failure = StepExecutionError(d.name, e)
                logger.error("Step %s failed: %s", d.name, e)
                # Drop whatever the failed step half-wrote; the checkpoint is the truth.
                self.work_state = load_state(self.state_path)
                raise self.failure from e

            if result is not None:
                state = result
            state.completed_steps.append(d.name)
            state.step_ordinal += 1
            try:
                save_state(self.state_path, state)
            except OSError as e:
                # The step ran but is not checkpointed; a resume re-runs it.
                self._state = MachineState.FAILED
                self.failure = StepExecutionError(d.name, e)
                logger.error("Checkpoint after step %s failed: %s", d.name, e)
                raise self.failure from e
            self.work_state = state

            if d.name == self.config.stop_after and state.step_ordinal < len(catalog):
                logger.info("Stopping after %s", d.name)
                self._state = MachineState.PAUSED
                return

        self.work_state = state
        self._state = MachineState.COMPLETED
        logger.info("Build completed: %s", self.config.output_path)

    def teardown(self) -> None:
        """Release the workspace; on success also remove everything transient.

        A failed or paused run keeps its workspace and state record untouched
        so it can be inspected or resumed.
        """

        if not self._ready:
            return
        assert self.config is not None and self.workspace is not None

        problems: List[str] = []
        clean = self._state is MachineState.COMPLETED and not self.config.preserve_artifacts

        if clean:
            assert self.work_state is not None
            transient = [p for p in self.work_state.artifacts.values() if self.workspace.contains(Path(p))]
            transient += [self.workspace.path / "mount", self.workspace.path / "structures"]
            try:
                self.workspace.remove_paths(transient)
                discard_state(self.state_path)
            except (CleanupError, OSError) as e:
                problems.append(str(e))

        try:
            self.workspace.release(remove_lock_file=clean)
        except OSError as e:
            problems.append(f"Could not release workspace lock: {e}")
        self._ready = False

        if clean and self.workspace.temporary and not problems:
            try:
                self.workspace.remove()
            except CleanupError as e:
                problems.append(str(e))

        if problems:
            raise CleanupError("Teardown failed:\n  " + "\n  ".join(problems), prior=self.failure)
        logger.info("Teardown complete (%s)", self._state.value)
