#!/usr/bin/env python3
"""
Phase Generation Pipeline
=========================

Runs the requirements -> design -> codegen -> testing workflow against a
provider CLI and streams progress to the terminal.

Examples:
  phasegen.py run "Build a login form with email and password"
  phasegen.py run --input-file brief.md --stop-after design
  phasegen.py status
  phasegen.py logs --tail 20
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

from config import VALID_PROVIDER_IDS, PipelineConfig, get_config
from errors import PipelineError
from events import EventBus, OperationFailed, PhaseCompleted, PhaseStarted, ProgressUpdated
from models import WORK_PHASES, Phase
from orchestrator import PhaseOrchestrator, build_orchestrator
from persistence import JsonFilePersistence
from provider_cli import ProviderCliBackend
from run_logging import RunLogger, find_latest_run_log, read_last_lines

logger = logging.getLogger("phasegen")


def create_parser() -> argparse.ArgumentParser:
    cfg = get_config()
    parser = argparse.ArgumentParser(
        description="Phase generation pipeline - requirements to repaired code",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1],
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Commands")

    run_parser = subparsers.add_parser("run", help="Run the workflow on a project description")
    run_parser.add_argument("text", nargs="?", default=None, help="Project description")
    run_parser.add_argument(
        "--input-file",
        nargs="+",
        type=Path,
        metavar="FILE",
        help="File(s) to use as the project description",
    )
    run_parser.add_argument(
        "--agent-cli",
        type=str,
        choices=sorted(VALID_PROVIDER_IDS),
        default=None,
        help=f"Agent CLI provider override (default: {cfg.agent_cli_id})",
    )
    run_parser.add_argument("--model", type=str, default=None, help="Model override")
    run_parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Request whole completions instead of streaming",
    )
    run_parser.add_argument(
        "--no-auto-progress",
        action="store_true",
        help="Run phases one after another in the foreground",
    )
    run_parser.add_argument(
        "--stop-after",
        choices=[phase.value for phase in WORK_PHASES],
        default=None,
        help="Last phase to run",
    )
    run_parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Write generated files and requirements.md here",
    )

    status_parser = subparsers.add_parser("status", help="Show the last saved project")
    status_parser.add_argument("--project-id", default=None, help="Project id (default: latest)")

    logs_parser = subparsers.add_parser("logs", help="Print the latest run log path")
    logs_parser.add_argument(
        "--tail",
        type=int,
        default=0,
        help="Print the last N lines of the latest log file.",
    )
    return parser


def read_input(args: argparse.Namespace) -> str:
    parts: list[str] = []
    if args.text:
        parts.append(args.text)
    for path in args.input_file or []:
        parts.append(path.read_text(encoding="utf-8"))
    return "\n\n".join(part.strip() for part in parts if part.strip())


def attach_console(bus: EventBus) -> None:
    """Print phase transitions and coarse progress."""

    def on_phase_start(event: PhaseStarted) -> None:
        print(f"==> {event.phase}")

    def on_phase_complete(event: PhaseCompleted) -> None:
        print(f"<== {event.phase} complete")

    def on_progress(event: ProgressUpdated) -> None:
        print(f"    [{event.phase}] {event.status} {event.percentage}%")

    def on_failure(event: OperationFailed) -> None:
        print(f"    [{event.operation}] failed ({event.kind}): {event.message}", file=sys.stderr)

    bus.subscribe(PhaseStarted, on_phase_start)
    bus.subscribe(PhaseCompleted, on_phase_complete)
    bus.subscribe(ProgressUpdated, on_progress)
    bus.subscribe(OperationFailed, on_failure)


def write_outputs(orchestrator: PhaseOrchestrator, output_dir: Path) -> int:
    """Write generated files and the requirements document. Returns files written."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written = 0
    requirements = orchestrator.module_for(Phase.REQUIREMENTS)
    if requirements is not None and hasattr(requirements, "export_markdown"):
        (output_dir / "requirements.md").write_text(requirements.export_markdown(), encoding="utf-8")
        written += 1
    repair = orchestrator.module_for(Phase.TESTING)
    codegen = orchestrator.module_for(Phase.CODEGEN)
    files = dict(codegen.file_map()) if codegen is not None else {}
    if repair is not None:
        files.update({path: content for path, content in repair.files.items() if path in files})
    root = output_dir.resolve()
    for relative, content in files.items():
        target = (output_dir / relative).resolve()
        if root not in target.parents:
            logger.warning("Skipping file outside output dir: %s", relative)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        written += 1
    return written


async def run_pipeline(args: argparse.Namespace, cfg: PipelineConfig) -> int:
    text = read_input(args)
    if not text:
        print("Error: provide a description or --input-file", file=sys.stderr)
        return 1

    backend = ProviderCliBackend(cfg, provider_id=args.agent_cli)
    model = args.model or backend.default_model
    print(f"Agent CLI provider: {backend.name}")
    print(f"Selected model: {model}")

    bus = EventBus()
    run_logger = RunLogger.create(
        enabled=cfg.run_log_enabled,
        base_dir=Path(cfg.run_log_dir),
        provider=backend.name,
        model=model,
    )
    run_logger.attach(bus)
    attach_console(bus)

    orchestrator = build_orchestrator(cfg, backend, bus=bus, model=model)
    if not await orchestrator.initialize():
        error = orchestrator.error
        print(f"Error: {error.message if error else 'initialization failed'}", file=sys.stderr)
        return 1

    try:
        status = await orchestrator.run(text, stop_after=args.stop_after)
    except PipelineError as exc:
        print(f"Error [{exc.kind}]: {exc}", file=sys.stderr)
        status = orchestrator.get_status()
    finally:
        await orchestrator.cleanup()

    if args.output_dir is not None:
        count = write_outputs(orchestrator, args.output_dir)
        print(f"Wrote {count} files to {args.output_dir}")

    print(f"Project: {status['project']['id']}")
    print(f"Completion: {status['completion']}%")
    if run_logger.log_file is not None:
        print(f"Run log: {run_logger.log_file}")
    if status["error"]:
        print(f"Last error: {status['error']['message']}", file=sys.stderr)
        return 1
    return 0


async def show_status(args: argparse.Namespace, cfg: PipelineConfig) -> int:
    persistence = JsonFilePersistence(Path(cfg.data_dir))
    # Status never calls the backend; the CLI backend is only used for naming.
    orchestrator = build_orchestrator(
        dataclasses.replace(cfg, auto_save=False, auto_progress=False),
        ProviderCliBackend(cfg),
        persistence=persistence,
    )
    try:
        await orchestrator.load_project_data(args.project_id)
    except PipelineError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    status = orchestrator.get_status()
    status.pop("runtime", None)
    print(json.dumps(status, indent=2, default=str))
    return 0


def show_logs(args: argparse.Namespace, cfg: PipelineConfig) -> int:
    log_dir = Path(cfg.run_log_dir)
    latest = find_latest_run_log(log_dir)
    if latest is None:
        print(f"No run logs found in {log_dir}")
        return 1

    print(str(latest))
    if args.tail > 0:
        print()
        for line in read_last_lines(latest, args.tail):
            print(line)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = create_parser().parse_args(argv)
    cfg = get_config()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "logs":
        return show_logs(args, cfg)
    if args.command == "status":
        return asyncio.run(show_status(args, cfg))

    overrides = {}
    if args.no_stream:
        overrides["streaming_enabled"] = False
    if args.no_auto_progress:
        overrides["auto_progress"] = False
    if args.agent_cli:
        overrides["agent_cli_id"] = args.agent_cli
    return asyncio.run(run_pipeline(args, dataclasses.replace(cfg, **overrides)))


if __name__ == "__main__":
    raise SystemExit(main())
