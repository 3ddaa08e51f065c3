"""Command line interface for deckbuild."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Iterable, List
import json
import shlex
import sys

from core.command_runner import CommandRunner, RecordingCommandRunner, SubprocessCommandRunner
from core.console import Console

from .build import BuildEngine, BuildPlan, default_tool_locator, serialize_plan
from .config_loader import DeckConfiguration, load_configuration
from .errors import BuildError, ConfigurationError
from .pipeline import STANDARD_PROFILES
from .platform import DEFAULT_SYSTEMS, Platform, detect_host
from .shell import launch


def _make_runner(dry_run: bool, console: Console) -> SubprocessCommandRunner | RecordingCommandRunner:
    return RecordingCommandRunner() if dry_run else SubprocessCommandRunner(console)


def _emit_dry_run_output(runner: RecordingCommandRunner, *, workspace: Path) -> None:
    for line in runner.iter_formatted(workspace=workspace):
        print(line)


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="deckbuild", description="Cached two-stage cargo builds for the notedeck workspace")
    parser.add_argument("-C", "--workspace", type=Path, help="Workspace root (default: current directory)")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only print errors")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Build a package group")
    build_parser.add_argument("package", nargs="?", help="Package group to build (default: global.default_package)")
    build_parser.add_argument("--system", help="Target system such as x86_64-linux (default: host)")
    build_parser.add_argument("--target", help="Compilation target, e.g. wasm32-unknown")
    build_parser.add_argument(
        "--profile",
        help=f"Cargo profile ({', '.join(STANDARD_PROFILES)} or a custom profile)",
    )
    build_parser.add_argument("--out", type=Path, help="Install the package group into this directory")
    build_parser.add_argument("-n", "--dry-run", action="store_true", help="Print commands without executing them")

    plan_parser = subparsers.add_parser("plan", help="Show cache keys and commands without building")
    plan_parser.add_argument("package", nargs="?", help="Package group to plan")
    plan_parser.add_argument("--system", help="Target system, or 'all' for every default system")
    plan_parser.add_argument("--target", help="Compilation target, e.g. wasm32-unknown")
    plan_parser.add_argument("--profile", help="Cargo profile")
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")

    shell_parser = subparsers.add_parser("shell", help="Enter the development shell")
    shell_parser.add_argument("--system", help="System whose toolchain the shell uses (default: host)")
    shell_parser.add_argument("--print", dest="print_hook", action="store_true", help="Print the shell hook and exit")

    cache_parser = subparsers.add_parser("cache", help="Inspect the artifact store")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command", required=True)
    cache_subparsers.add_parser("list", help="List stored artifacts")
    invalidate_parser = cache_subparsers.add_parser("invalidate", help="Remove one stored artifact")
    invalidate_parser.add_argument("key", help="Full cache key")

    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    workspace = (args.workspace or Path.cwd()).resolve()

    try:
        configuration = load_configuration(workspace)
        console = _make_console(args, configuration)
        if args.command == "build":
            return _handle_build(args, configuration, console)
        if args.command == "plan":
            return _handle_plan(args, configuration, console)
        if args.command == "shell":
            return _handle_shell(args, configuration, console)
        if args.command == "cache":
            return _handle_cache(args, configuration, console)
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        return 2
    except BuildError as exc:
        print(f"Error: {exc}")
        return 1
    raise ValueError(f"Unknown command: {args.command}")


def _make_console(args: Namespace, configuration: DeckConfiguration) -> Console:
    level = configuration.global_config.log_level
    if getattr(args, "verbose", False):
        level = "debug"
    elif getattr(args, "quiet", False):
        level = "error"
    try:
        return Console(level, dry_run=getattr(args, "dry_run", False))
    except ValueError as exc:
        raise ConfigurationError(str(exc), identifier="global.log_level") from exc


def _parse_systems(value: str | None, *, allow_all: bool) -> List[Platform]:
    host = detect_host()
    if value is None:
        return [host]
    if allow_all and value.strip().lower() == "all":
        return [Platform.parse(system) for system in DEFAULT_SYSTEMS]
    return [Platform.parse(value, host=host)]


def _handle_build(args: Namespace, configuration: DeckConfiguration, console: Console) -> int:
    runner = _make_runner(args.dry_run, console)
    engine = BuildEngine(
        configuration=configuration,
        command_runner=runner,
        console=console,
        tool_locator=None if args.dry_run else default_tool_locator,
    )
    (platform,) = _parse_systems(args.system, allow_all=False)
    plan = engine.plan(platform, package=args.package, target=args.target, profile=args.profile)
    result = engine.execute(plan, out=args.out, dry_run=args.dry_run)

    if isinstance(runner, RecordingCommandRunner):
        _emit_dry_run_output(runner, workspace=configuration.root)
        return 0
    assert result is not None
    main_program = result.main_program or result.package.main_program_path
    print(main_program)
    return 0


def _format_plan(plan: BuildPlan) -> List[str]:
    lines = [f"{plan.platform.system}: {plan.package.name} (profile {plan.profile})"]
    toolchain = plan.toolchain
    lines.append(f"  toolchain: {toolchain.version} [{toolchain.stdenv}]")
    lines.append(f"  install: {shlex.join(toolchain.install_command())}")
    if toolchain.auxiliary_tools:
        lines.append(f"  tools: {', '.join(toolchain.auxiliary_tools)}")
    libraries = ", ".join(str(entry) for entry in plan.build_inputs.native_libraries) or "<none>"
    lines.append(f"  native inputs: {libraries}")
    for step in plan.steps:
        state = "cached" if step.cached else "pending"
        lines.append(f"  {step.description}: {step.key} [{state}]")
    lines.append(f"  command: {' '.join(plan.steps[0].command)}")
    return lines


def _handle_plan(args: Namespace, configuration: DeckConfiguration, console: Console) -> int:
    engine = BuildEngine(configuration=configuration, command_runner=RecordingCommandRunner(), console=console)
    platforms = _parse_systems(args.system, allow_all=True)
    results = engine.plan_many(platforms, package=args.package, target=args.target, profile=args.profile)

    failures = 0
    document = {}
    for system, result in results.items():
        if isinstance(result, BuildError):
            failures += 1
            document[system] = {"error": str(result)}
            if not args.json:
                print(f"{system}: unsupported ({result})")
            continue
        document[system] = serialize_plan(result)
        if not args.json:
            for line in _format_plan(result):
                print(line)
    if args.json:
        print(json.dumps(document, indent=2, sort_keys=True))
    return 1 if failures else 0


def _handle_shell(args: Namespace, configuration: DeckConfiguration, console: Console) -> int:
    runner: CommandRunner = SubprocessCommandRunner(console)
    engine = BuildEngine(configuration=configuration, command_runner=runner, console=console)
    (platform,) = _parse_systems(args.system, allow_all=False)
    spec = engine.shell(platform)
    if args.print_hook:
        print(spec.render_hook(), end="")
        return 0
    console.info(spec.describe())
    return launch(spec, runner).returncode


def _handle_cache(args: Namespace, configuration: DeckConfiguration, console: Console) -> int:
    engine = BuildEngine(configuration=configuration, command_runner=RecordingCommandRunner(), console=console)
    store = engine.store
    if args.cache_command == "list":
        entries = store.entries()
        if not entries:
            print("No cached artifacts")
            return 0
        for entry in entries:
            print(f"{entry.key}  {entry.kind}")
        return 0
    if args.cache_command == "invalidate":
        if store.invalidate(args.key):
            print(f"Invalidated {args.key}")
            return 0
        print(f"No cached artifact with key '{args.key}'")
        return 1
    raise ValueError(f"Unknown cache command: {args.cache_command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
