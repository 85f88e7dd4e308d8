from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from . import __version__
from .build_config import COMPRESSIONS, IMAGE_TYPES, BuildConfig, config_from_snapshot, load_build_config
from .errors import CleanupError, ConfigError, UbuntuImageError
from .lib.command import CommandRunner
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .modes import mode_for
from .pipeline import Reporter, StateMachine
from .state_store import STATE_FILE_NAME, load_state

logger = logging.getLogger(__name__)

STATE_MACHINE_HELP = (
    "Options for controlling the internal state machine. "
    "When --until or --thru is given the build can be resumed later with --resume, "
    "which needs --workdir because the state is saved in the working directory."
)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ubuntu-image", description="Build bootable Ubuntu disk images.")
    p.add_argument("image_type", nargs="?", choices=IMAGE_TYPES, help="Build mode")
    p.add_argument("--version", action="store_true", help="Print the version and exit")

    common = p.add_argument_group("Common options")
    common.add_argument("--config", default=None, help="YAML build configuration")
    common.add_argument("-O", "--output", default=None, help="Output image path")
    common.add_argument("-w", "--workdir", default=None, help="Working directory (kept for --resume)")
    common.add_argument("--layout", default=None, help="Layout description (gadget.yaml style)")
    common.add_argument("--volume", default=None, help="Volume to build when the layout defines several")
    common.add_argument("--image-size", default=None, help="Override the image size (e.g. 4G)")
    common.add_argument("--sector-size", default=None, help="Sector size in bytes (default 512)")
    common.add_argument("--arch", default=None, help="Target architecture (default: host)")
    common.add_argument("--compression", default=None, choices=COMPRESSIONS)
    common.add_argument("--preserve-artifacts", action="store_true", default=None, help="Keep the workspace")
    common.add_argument("--dry-run", action="store_true", help="Log external commands without running them")
    common.add_argument("--log", default=DEFAULT_LOG_PATH, help="Log file path")
    common.add_argument("--debug", action="store_true", help="Verbose logging on the console")

    snap = p.add_argument_group("Snap options")
    snap.add_argument("--model", default=None, help="Model assertion for snap prepare-image")
    snap.add_argument("--prepared-dir", default=None, help="Use an already prepared bundle tree")
    snap.add_argument("--channel", default=None, help="Snap channel")
    snap.add_argument("--snap", action="append", default=None, dest="snaps", help="Extra snap (repeatable)")

    classic = p.add_argument_group("Classic options")
    classic.add_argument("--suite", default=None, help="Archive suite to bootstrap")
    classic.add_argument("--mirror", default=None, help="Archive mirror")
    classic.add_argument("--gadget-dir", default=None, help="Directory holding layout content sources")
    classic.add_argument("--hook", action="append", default=None, dest="hooks", help="Customization hook")

    sm = p.add_argument_group("State machine options", STATE_MACHINE_HELP)
    sm.add_argument("-r", "--resume", action="store_true", help="Resume a previously interrupted build")
    sm.add_argument("--start-at", default=None, metavar="STEP", help="With --resume, re-run from STEP")
    bounds = sm.add_mutually_exclusive_group()
    bounds.add_argument("-u", "--until", default=None, metavar="STEP", help="Stop before STEP")
    bounds.add_argument("-t", "--thru", default=None, metavar="STEP", help="Stop after STEP")
    sm.add_argument("--list-steps", action="store_true", help="Print the steps of the build mode and exit")
    return p


def _merge_section(raw: Dict[str, Any], key: str, values: Dict[str, Any]) -> None:
    values = {k: v for k, v in values.items() if v is not None}
    if values:
        section = dict(raw.get(key) or {})
        section.update(values)
        raw[key] = section


def config_from_args(args: argparse.Namespace) -> BuildConfig:
    if args.config:
        cfg = load_build_config(args.config)
    elif args.resume and not args.image_type and args.workdir:
        # Bare --resume: everything comes from the saved run.
        state_file = Path(args.workdir) / STATE_FILE_NAME
        if not state_file.is_file():
            raise ConfigError(f"Nothing to resume: no state record in {args.workdir}")
        record = load_state(state_file)
        cfg = config_from_snapshot(record.config_snapshot)
    else:
        cfg = BuildConfig(raw={})

    cfg = cfg.with_overrides(
        image_type=args.image_type,
        output=args.output,
        workspace=args.workdir,
        layout=args.layout,
        volume=args.volume,
        image_size=args.image_size,
        sector_size=args.sector_size,
        architecture=args.arch,
        compression=args.compression,
        preserve_artifacts=args.preserve_artifacts,
        resume=args.resume or None,
        start_at=args.start_at,
        stop_before=args.until,
        stop_after=args.thru,
        dry_run=args.dry_run or None,
    )

    raw = dict(cfg.raw)
    _merge_section(
        raw,
        "snap",
        {"model": args.model, "prepared_dir": args.prepared_dir, "channel": args.channel, "snaps": args.snaps},
    )
    _merge_section(
        raw,
        "classic",
        {"suite": args.suite, "mirror": args.mirror, "gadget_dir": args.gadget_dir, "hooks": args.hooks},
    )
    return BuildConfig(raw=raw)


def execute(machine: StateMachine, config: BuildConfig, reporter: Reporter) -> int:
    """Drive setup -> run -> teardown and turn the outcome into an exit code.

    A teardown problem is reported too, but a run() failure decides the result.
    """

    try:
        machine.setup(config)
    except UbuntuImageError as e:
        reporter.error(str(e))
        return 1

    run_error: Optional[BaseException] = None
    try:
        machine.run()
    except UbuntuImageError as e:
        run_error = e
        reporter.error(str(e))
        if machine.workspace is not None:
            reporter.info(f"Workspace kept for inspection or --resume: {machine.workspace.path}")
    finally:
        try:
            machine.teardown()
        except CleanupError as e:
            reporter.error(str(e))
            if run_error is None:
                run_error = e

    return 1 if run_error is not None else 0


def main(
    argv: Optional[list[str]] = None,
    *,
    runner: Optional[CommandRunner] = None,
    reporter: Optional[Reporter] = None,
) -> int:
    reporter = reporter or Reporter()
    args = build_parser().parse_args(argv)

    if args.version:
        reporter.info(f"ubuntu-image {__version__}")
        return 0

    try:
        config = config_from_args(args)
        if not config.image_type:
            reporter.error("an image type (snap or classic) is required")
            return 2
        mode = mode_for(config)
    except UbuntuImageError as e:
        reporter.error(str(e))
        return 1

    machine = StateMachine(mode, runner=runner or CommandRunner(dry_run=config.dry_run), reporter=reporter)

    if args.list_steps:
        for name in machine.step_names():
            reporter.info(name)
        return 0

    configure_logging(
        log_path=args.log,
        level=logging.DEBUG if args.debug else logging.INFO,
        also_console=bool(args.debug),
    )
    logger.info("ubuntu-image %s: %s build", __version__, mode.name)

    return execute(machine, config, reporter)


if __name__ == "__main__":
    raise SystemExit(main())
