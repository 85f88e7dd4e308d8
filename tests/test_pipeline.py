from __future__ import annotations

import json
from typing import List, Optional, Tuple

import pytest

from ubuntu_image.build_config import BuildConfig
from ubuntu_image.errors import (
    CleanupError,
    ConfigError,
    StateVersionError,
    StepExecutionError,
    WorkspaceBusyError,
    WorkspaceError,
)
from ubuntu_image.modes import build_catalog
from ubuntu_image.pipeline import MachineState, StateMachine
from ubuntu_image.state_store import STATE_FILE_NAME, WorkState, load_state
from ubuntu_image.steps.base import SHARED
from ubuntu_image.workspace import Workspace

from .conftest import CollectingReporter, failing_saves


class RecordingStep:
    catalog = SHARED

    def __init__(self, name: str, log: List[str], produces: Tuple[str, ...] = ()) -> None:
        self.name = name
        self.log = log
        self.produces = produces
        self.fail: Optional[BaseException] = None

    def run(self, ctx, state):
        self.log.append(self.name)
        if self.fail is not None:
            raise self.fail
        for artifact in self.produces:
            path = ctx.workspace / f"{artifact}.bin"
            path.write_text(self.name, encoding="utf-8")
            state.record_artifact(artifact, path)
        return state


class ScriptedMode:
    name = "snap"

    def __init__(self, steps) -> None:
        self.steps = {s.name: s for s in steps}
        self._catalog = build_catalog(steps)

    def catalog(self):
        return self._catalog

    def initial_state(self, config):
        return WorkState(build_mode=self.name, config_snapshot=config.snapshot())

    def preflight(self, config):
        return None


@pytest.fixture
def log() -> List[str]:
    return []


@pytest.fixture
def mode(log) -> ScriptedMode:
    return ScriptedMode(
        [
            RecordingStep("a", log, ("first",)),
            RecordingStep("b", log),
            RecordingStep("c", log, ("second",)),
            RecordingStep("d", log),
        ]
    )


def machine_for(mode) -> StateMachine:
    return StateMachine(mode, reporter=CollectingReporter())


def run_once(mode, config: BuildConfig) -> StateMachine:
    m = machine_for(mode)
    m.setup(config)
    try:
        m.run()
    finally:
        m.teardown()
    return m


def test_full_run(mode, log, snap_config) -> None:
    m = run_once(mode, snap_config)
    assert m.state is MachineState.COMPLETED
    assert log == ["a", "b", "c", "d"]
    assert m.reporter.infos == ["[1/4] a", "[2/4] b", "[3/4] c", "[4/4] d"]
    # transient artifacts and the record are gone after a clean finish
    work = snap_config.workspace
    assert not (work / STATE_FILE_NAME).exists()
    assert not (work / "first.bin").exists()


def test_resume_runs_only_remaining_steps(mode, log, snap_config) -> None:
    m = run_once(mode, snap_config.with_overrides(stop_after="b"))
    assert m.state is MachineState.PAUSED
    record = load_state(snap_config.workspace / STATE_FILE_NAME)
    assert record.step_ordinal == 2
    assert record.completed_steps == ["a", "b"]

    del log[:]
    m = run_once(mode, snap_config.with_overrides(resume=True))
    assert m.state is MachineState.COMPLETED
    assert log == ["c", "d"]


def test_stop_before(mode, log, snap_config) -> None:
    m = run_once(mode, snap_config.with_overrides(stop_before="c"))
    assert m.state is MachineState.PAUSED
    assert log == ["a", "b"]


def test_interrupt_after_checkpoint_then_resume(mode, log, snap_config) -> None:
    mode.steps["c"].fail = KeyboardInterrupt()
    m = machine_for(mode)
    m.setup(snap_config)
    with pytest.raises(KeyboardInterrupt):
        m.run()
    # the process is gone; the kernel drops its lock
    m.workspace.release()

    mode.steps["c"].fail = None
    del log[:]
    run_once(mode, snap_config.with_overrides(resume=True))
    assert log == ["c", "d"]


def test_failed_step_keeps_checkpoint(mode, log, snap_config) -> None:
    boom = RuntimeError("mirror unreachable")
    mode.steps["c"].fail = boom
    m = machine_for(mode)
    m.setup(snap_config)
    with pytest.raises(StepExecutionError) as exc:
        m.run()
    m.teardown()

    assert exc.value.step_name == "c"
    assert exc.value.cause is boom
    assert "mirror unreachable" in str(exc.value)
    assert m.state is MachineState.FAILED
    record = load_state(snap_config.workspace / STATE_FILE_NAME)
    assert record.completed_steps == ["a", "b"]
    assert (snap_config.workspace / "first.bin").exists()

    mode.steps["c"].fail = None
    del log[:]
    run_once(mode, snap_config.with_overrides(resume=True))
    assert log == ["c", "d"]


def test_start_at_rewinds(mode, log, snap_config) -> None:
    run_once(mode, snap_config.with_overrides(preserve_artifacts=True))
    del log[:]
    run_once(mode, snap_config.with_overrides(preserve_artifacts=True, resume=True, start_at="b"))
    assert log == ["b", "c", "d"]


def test_start_at_cannot_skip_ahead(mode, log, snap_config) -> None:
    run_once(mode, snap_config.with_overrides(stop_after="a"))
    m = machine_for(mode)
    with pytest.raises(ConfigError) as exc:
        m.setup(snap_config.with_overrides(resume=True, start_at="d"))
    assert "only reached 'b'" in str(exc.value)


def test_unknown_bound_step(mode, snap_config) -> None:
    with pytest.raises(ConfigError) as exc:
        machine_for(mode).setup(snap_config.with_overrides(stop_after="nope"))
    assert "a, b, c, d" in str(exc.value)
    assert not snap_config.workspace.exists()


def test_drifted_output_is_refused(mode, log, snap_config, tmp_path) -> None:
    run_once(mode, snap_config.with_overrides(stop_after="b"))
    record_path = snap_config.workspace / STATE_FILE_NAME
    before = record_path.read_bytes()

    m = machine_for(mode)
    with pytest.raises(ConfigError) as exc:
        m.setup(snap_config.with_overrides(resume=True, output=str(tmp_path / "elsewhere.img")))
    assert "output" in str(exc.value)
    assert record_path.read_bytes() == before
    assert not (tmp_path / "elsewhere.img").exists()

    # the refused setup released its claim
    ws = Workspace(snap_config.workspace)
    ws.claim()
    ws.release()


def test_resume_without_record(mode, snap_config) -> None:
    with pytest.raises(ConfigError) as exc:
        machine_for(mode).setup(snap_config.with_overrides(resume=True))
    assert "Nothing to resume" in str(exc.value)


def test_resume_unknown_schema_version(mode, snap_config) -> None:
    run_once(mode, snap_config.with_overrides(stop_after="a"))
    path = snap_config.workspace / STATE_FILE_NAME
    record = json.loads(path.read_text(encoding="utf-8"))
    record["schema_version"] = 7
    path.write_text(json.dumps(record), encoding="utf-8")

    with pytest.raises(StateVersionError):
        machine_for(mode).setup(snap_config.with_overrides(resume=True))


def test_fresh_run_discards_stale_record(mode, log, snap_config) -> None:
    run_once(mode, snap_config.with_overrides(stop_after="b"))
    del log[:]
    run_once(mode, snap_config)
    assert log == ["a", "b", "c", "d"]


def test_concurrent_setup_is_refused(mode, log, snap_config) -> None:
    first = machine_for(mode)
    first.setup(snap_config)

    with pytest.raises(WorkspaceBusyError):
        machine_for(mode).setup(snap_config)

    first.run()
    first.teardown()
    assert first.state is MachineState.COMPLETED
    assert log == ["a", "b", "c", "d"]


def test_setup_only_once(mode, snap_config) -> None:
    m = machine_for(mode)
    with pytest.raises(RuntimeError):
        m.run()
    m.setup(snap_config)
    try:
        with pytest.raises(RuntimeError):
            m.setup(snap_config)
    finally:
        m.teardown()


def test_mode_mismatch(mode, classic_config) -> None:
    with pytest.raises(ConfigError):
        machine_for(mode).setup(classic_config)


def test_temporary_workspace_is_removed(mode, snap_config) -> None:
    raw = dict(snap_config.raw)
    del raw["workspace"]
    m = run_once(mode, BuildConfig(raw=raw))
    assert m.workspace.temporary
    assert not m.workspace.path.exists()


def test_cleanup_error_keeps_prior_failure(mode, snap_config, monkeypatch) -> None:
    m = machine_for(mode)
    m.setup(snap_config)
    m.run()

    def refuse(self, paths):
        raise CleanupError("Could not remove transient artifacts")

    monkeypatch.setattr(Workspace, "remove_paths", refuse)
    with pytest.raises(CleanupError) as exc:
        m.teardown()
    assert exc.value.prior is None

    mode.steps["a"].fail = RuntimeError("bad")
    monkeypatch.undo()
    failing = machine_for(mode)
    failing.setup(snap_config)
    with pytest.raises(StepExecutionError):
        failing.run()

    def stuck(self, **kwargs):
        raise OSError("EIO")

    monkeypatch.setattr(Workspace, "release", stuck)
    with pytest.raises(CleanupError) as exc:
        failing.teardown()
    assert exc.value.prior is failing.failure


def test_failed_checkpoint_fails_the_step(mode, log, snap_config, monkeypatch) -> None:
    failing_saves(monkeypatch, allowed=1)
    m = machine_for(mode)
    m.setup(snap_config)
    with pytest.raises(StepExecutionError) as exc:
        m.run()
    m.teardown()

    assert exc.value.step_name == "a"
    assert isinstance(exc.value.cause, OSError)
    assert m.state is MachineState.FAILED
    assert m.failure is exc.value

    monkeypatch.undo()
    del log[:]
    run_once(mode, snap_config.with_overrides(resume=True))
    assert log == ["a", "b", "c", "d"]


def test_unwritable_record_at_setup(mode, snap_config, monkeypatch) -> None:
    failing_saves(monkeypatch, allowed=0)
    with pytest.raises(WorkspaceError) as exc:
        machine_for(mode).setup(snap_config)
    assert "No space left" in str(exc.value)

    ws = Workspace(snap_config.workspace)
    ws.claim()
    ws.release()
