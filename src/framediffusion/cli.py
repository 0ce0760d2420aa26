#!/usr/bin/env python3
"""
FrameDiffusion CLI - video frame rendering through Easy Diffusion servers
Command-line interface for the render scheduler.
"""

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from . import __version__
from .client import RenderClient
from .config import RenderSettings, RunPolicy, SchedulerConfig
from .errors import FatalError
from .frames import build_jobs, collect_frames
from .scheduling import ConcurrencyLimiter, Dispatcher, FrameJob, RunResult, WorkerRegistry
from .utils.config_file import ConfigFileManager
from .utils.hardware import resolve_dispatch_settings
from .utils.logging import LogConfig, add_logging_arguments, configure_logging

EXIT_OK = 0
EXIT_FRAMES_FAILED = 1
EXIT_FATAL = 2

console = Console()


def print_header():
    """Print CLI header."""
    console.print(f"[bold magenta]FrameDiffusion v{__version__}[/] - video frames through Easy Diffusion")


def load_configuration(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Merge built-in defaults, config files and command line options."""
    manager = ConfigFileManager()
    config_path = getattr(args, "config", None)
    manager.load(Path(config_path) if config_path else None)
    manager.raise_for_errors()
    return manager.merge_with_cli_args(vars(args))


def build_run_policy(args: argparse.Namespace) -> RunPolicy:
    return RunPolicy(
        sequential=args.sequential,
        hybrid=args.hybrid_processing,
        cpu_fallback=args.cpu_fallback,
    )


def print_run_result(result: RunResult, jobs: List[FrameJob]) -> None:
    """Print the per-frame outcome table and totals."""
    table = Table(title="Render summary")
    table.add_column("Frame", justify="right")
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Worker")
    table.add_column("Output / error")

    for job in sorted(jobs, key=lambda j: j.frame_index):
        if job.output_path is not None:
            state, detail = "[green]succeeded[/]", str(job.output_path)
        else:
            state, detail = "[red]failed[/]", job.last_error or ""
        if job.chain_broken:
            state += " [yellow](chain broken)[/]"
        table.add_row(
            str(job.frame_index), state, str(job.attempt), job.assigned_worker or "-", detail
        )

    console.print(table)
    console.print(result.summary())


def render_frames(args: argparse.Namespace) -> int:
    """Render a directory of extracted frames."""
    merged = load_configuration(args)
    configure_logging(LogConfig.from_dict(merged["logging"]))

    policy = build_run_policy(args)
    scheduler_data = dict(merged["scheduler"])
    tuned = resolve_dispatch_settings(
        scheduler_data.get("max_concurrent"),
        scheduler_data.get("dispatch_delay"),
        sequential=policy.sequential,
    )
    scheduler_data["max_concurrent"] = tuned.max_concurrent
    scheduler_data["dispatch_delay"] = tuned.dispatch_delay
    config = SchedulerConfig.from_dict(scheduler_data)
    settings = RenderSettings.from_dict({**merged["render"], "prompt": args.prompt})

    frames = collect_frames(Path(args.frames_dir), args.start_frame, args.end_frame)
    jobs = build_jobs(frames, settings)

    client = RenderClient(poll_interval=config.poll_interval)
    registry = WorkerRegistry.from_config(config, policy, probe=client.ping)
    counts = registry.check_availability()
    online = ", ".join(f"{cls.value.upper()} {n}" for cls, n in counts.items())
    console.print(f"Mode: [bold]{policy.describe()}[/]  workers online: {online}")

    limiter = ConcurrencyLimiter(config.max_concurrent)
    dispatcher = Dispatcher(config, registry, client, settings, limiter)

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Rendering frames", total=len(jobs))

        def on_job_event(job: FrameJob, event: str) -> None:
            if event in ("succeeded", "permanently_failed"):
                progress.advance(task)

        dispatcher.add_job_callback(on_job_event)
        result = dispatcher.submit(jobs, policy)

    print_run_result(result, jobs)
    return EXIT_OK if result.all_succeeded else EXIT_FRAMES_FAILED


def probe_workers(args: argparse.Namespace) -> int:
    """Report health and load of the configured workers."""
    merged = load_configuration(args)
    configure_logging(LogConfig.from_dict(merged["logging"]))
    config = SchedulerConfig.from_dict(merged["scheduler"])

    client = RenderClient(poll_interval=config.poll_interval)
    registry = WorkerRegistry.from_config(config, RunPolicy(cpu_fallback=True), probe=client.ping)
    for endpoint in registry.endpoints():
        registry.healthy(endpoint)

    table = Table(title="Render workers")
    table.add_column("Worker")
    table.add_column("Class")
    table.add_column("Status")
    table.add_column("Latency", justify="right")
    table.add_column("Load")

    for row in registry.status():
        latency = row["latency"]
        table.add_row(
            str(row["id"]),
            str(row["class"]).upper(),
            "[green]online[/]" if row["healthy"] else "[red]offline[/]",
            f"{latency * 1000:.0f} ms" if latency is not None else "-",
            str(row["load"]),
        )
    console.print(table)

    # Raises NoWorkersAvailableError when nothing answered
    registry.check_availability()
    return EXIT_OK


def config_init(args: argparse.Namespace) -> int:
    """Initialize a new configuration file."""
    manager = ConfigFileManager()
    target = "project" if args.project else "user"
    config_path = manager.init_config(target=target, force=args.force)
    console.print(f"[green]Created configuration file: {config_path}[/]")
    console.print("Edit this file to customize FrameDiffusion settings.")
    return EXIT_OK


def config_show(args: argparse.Namespace) -> int:
    """Display the merged configuration."""
    manager = ConfigFileManager()
    manager.load()
    for error in manager.get_validation_errors():
        console.print(f"[yellow]{error}[/]")
    console.print(f"User config:    {manager.user_config_path}")
    console.print(f"Project config: {manager.project_config_path}")
    if not manager.config_exists():
        console.print(
            "[dim]No config file found; showing built-in defaults. "
            "Create one with 'framediffusion config init'.[/]"
        )
    console.print(manager.show_config(), markup=False, highlight=False)
    return EXIT_OK


def add_worker_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--gpu-ports', type=str, default=None,
                        help='Comma separated GPU server ports (default: 9000)')
    parser.add_argument('--cpu-ports', type=str, default=None,
                        help='Comma separated CPU server ports (default: 9010)')
    parser.add_argument('--host', type=str, default=None, help='Render server host (default: localhost)')
    parser.add_argument('--config', type=str, default=None, help='Additional YAML config file')
    add_logging_arguments(parser)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog='framediffusion',
        description='FrameDiffusion - render video frames through Easy Diffusion servers',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Render every extracted frame on the default GPU server
  framediffusion render --frames-dir frames/ --prompt "oil painting"

  # Several GPU servers, offload to a CPU server when they are busy
  framediffusion render --frames-dir frames/ --prompt "anime" --gpu-ports 9000,9001 --hybrid-processing

  # Temporal smoothing: each frame starts from the previous output
  framediffusion render --frames-dir frames/ --prompt "watercolor" --sequential --smoothing-strength 0.4

  # Check which servers are up
  framediffusion probe --gpu-ports 9000,9001 --cpu-ports 9010
        """
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Render command
    render_parser = subparsers.add_parser('render', help='Render extracted frames')
    render_parser.add_argument('--frames-dir', type=str, required=True,
                               help='Directory with frame_NNNN.jpg images')
    render_parser.add_argument('--prompt', type=str, required=True, help='Text prompt')
    render_parser.add_argument('--negative-prompt', type=str, default=None)
    render_parser.add_argument('--model', type=str, default=None,
                               help='Stable Diffusion model (default: sd-v1-5.safetensors)')
    render_parser.add_argument('--steps', type=int, default=None, help='Inference steps (default: 46)')
    render_parser.add_argument('--guidance-scale', type=float, default=None, help='Guidance scale (default: 7.5)')
    render_parser.add_argument('--prompt-strength', type=float, default=None,
                               help='How far to move away from the init image, 0-1 (default: 0.5)')
    render_parser.add_argument('--width', type=int, default=None)
    render_parser.add_argument('--height', type=int, default=None)
    render_parser.add_argument('--seed', type=int, default=None, help='Fixed seed (default: random per frame)')
    render_parser.add_argument('--sampler', type=str, default=None, help='Sampler name (default: euler_a)')
    render_parser.add_argument('--output-format', type=str, choices=['jpeg', 'png', 'webp'], default=None)
    render_parser.add_argument('--quality', type=int, default=None, help='Output quality 1-100 (default: 95)')
    render_parser.add_argument('--output-dir', type=str, default=None, help='Output directory (default: ./output)')
    render_parser.add_argument('--session-id', type=str, default=None,
                               help='Session identifier (default: YYYY-MM-DD_HHMM)')
    render_parser.add_argument('--profile', type=str, default=None, help='Render profile from the config file')
    render_parser.add_argument('--start-frame', type=int, default=1, help='First frame to render (default: 1)')
    render_parser.add_argument('--end-frame', type=int, default=None, help='Last frame to render (default: last)')
    render_parser.add_argument('--sequential', action='store_true',
                               help='Render each frame from the previous output (one at a time)')
    render_parser.add_argument('--smoothing-strength', type=float, default=None,
                               help='Prompt strength reduction in sequential mode, 0-1 (default: 0.3)')
    render_parser.add_argument('--hybrid-processing', action='store_true',
                               help='Use CPU servers alongside GPU servers when GPUs are busy')
    render_parser.add_argument('--cpu-fallback', action='store_true',
                               help='Use CPU servers when no GPU server can take work')
    render_parser.add_argument('--max-concurrent', type=int, default=None,
                               help='Maximum simultaneous requests (default: auto from hardware)')
    render_parser.add_argument('--max-retries', type=int, default=None, help='Attempts per frame (default: 3)')
    render_parser.add_argument('--min-output-bytes', type=int, default=None,
                               help='Smallest accepted output file (default: 1024)')
    add_worker_arguments(render_parser)
    render_parser.set_defaults(func=render_frames)

    # Probe command
    probe_parser = subparsers.add_parser('probe', help='Check render server health and load')
    add_worker_arguments(probe_parser)
    probe_parser.set_defaults(func=probe_workers)

    # Config command
    config_parser = subparsers.add_parser('config', help='Manage configuration files')
    config_subparsers = config_parser.add_subparsers(dest='config_action', help='Config actions')

    config_init_parser = config_subparsers.add_parser('init', help='Create default configuration file')
    config_init_parser.add_argument('--project', action='store_true',
                                    help='Create project-local config (.framediffusion.yaml) instead of user config')
    config_init_parser.add_argument('--force', action='store_true', help='Overwrite an existing file')
    config_init_parser.set_defaults(func=config_init)

    config_show_parser = config_subparsers.add_parser('show', help='Display current configuration')
    config_show_parser.set_defaults(func=config_show)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not getattr(args, 'func', None):
        print_header()
        parser.print_help()
        return EXIT_OK

    try:
        return args.func(args)
    except FatalError as e:
        console.print(f"[bold red]Error:[/] {e}")
        return EXIT_FATAL
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/]")
        return EXIT_FRAMES_FAILED


if __name__ == '__main__':
    sys.exit(main())
