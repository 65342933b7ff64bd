"""CLI entrypoint for feedloop."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from feedloop.analysis import analyze_patterns, write_pattern_report
from feedloop.config import Settings, load_dotenv_files
from feedloop.monitoring.autopilot import format_runtime_lines, load_autopilot_runtime
from feedloop.monitoring.quota_probe import check_quota, read_quota_status
from feedloop.pipeline.manifest import ManifestError, load_manifest
from feedloop.pipeline.runner import check_requirements, run_pipeline
from feedloop.schemas import Gate

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all subcommands."""
    p = argparse.ArgumentParser(
        prog="feedloop",
        description="feedloop - quota-aware pipeline runner with a self-analysis feedback loop.",
    )
    p.add_argument(
        "--root",
        type=str,
        default="",
        help="Project root (default: $FEEDLOOP_ROOT or the current directory).",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run every phase in the pipeline manifest.")
    run_p.add_argument("--manifest", type=str, default="", help="Manifest path (JSON or YAML).")
    run_p.add_argument(
        "--timeout",
        type=float,
        default=0.0,
        help="Default per-step timeout in seconds (steps may override).",
    )
    run_p.add_argument(
        "--probe-quota",
        action="store_true",
        help="Probe the quota before running instead of reading the last status file.",
    )
    run_p.add_argument(
        "--no-quota",
        action="store_true",
        help="Ignore quota status entirely (no priority gating).",
    )

    validate_p = sub.add_parser("validate", help="Validate the manifest without running it.")
    validate_p.add_argument("--manifest", type=str, default="", help="Manifest path (JSON or YAML).")

    sub.add_parser("quota", help="Probe the AI quota and persist the tier decision.")

    resolve_p = sub.add_parser(
        "resolve-config",
        help="Print the autopilot runtime config as key=value lines.",
    )
    resolve_p.add_argument("--config", type=str, default="", help="Autopilot config JSON path.")

    analyze_p = sub.add_parser("analyze", help="Analyze run history and write the pattern report.")
    analyze_p.add_argument(
        "--source-root",
        type=str,
        default="",
        help="Source tree for architecture metrics (default: project root).",
    )
    analyze_p.add_argument(
        "--no-architecture",
        action="store_true",
        help="Skip the architecture scan.",
    )
    return p


def _resolve(path_arg: str, root: Path, fallback: Path) -> Path:
    if not path_arg:
        return fallback
    path = Path(path_arg).expanduser()
    return path if path.is_absolute() else root / path


def _run(settings: Settings, args: argparse.Namespace) -> int:
    manifest_path = _resolve(args.manifest, settings.root, settings.manifest_path)
    if args.no_quota:
        quota_status = None
    elif args.probe_quota:
        quota_status = check_quota(settings.quota_status_path, timeout=settings.probe_timeout)
    else:
        quota_status = read_quota_status(settings.quota_status_path)

    try:
        result = run_pipeline(
            manifest_path,
            result_path=settings.result_path,
            quota_status=quota_status,
            cwd=settings.root,
            default_timeout=args.timeout if args.timeout > 0 else settings.step_timeout,
            gate_step=settings.gate_step,
        )
    except ManifestError as exc:
        logger.error("%s", exc)
        return 1
    except OSError as exc:
        logger.error("Could not write pipeline result to %s: %s", settings.result_path, exc)
        return 1
    return 0 if result.gate is Gate.PASS else 1


def _validate(settings: Settings, args: argparse.Namespace) -> int:
    manifest_path = _resolve(args.manifest, settings.root, settings.manifest_path)
    try:
        manifest = load_manifest(manifest_path)
    except ManifestError as exc:
        print(f"INVALID  {exc.path}", file=sys.stderr)
        for error in exc.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    print(f"OK  {manifest_path}  ({len(manifest.phases)} phases, {manifest.step_count} steps)")
    for phase in manifest.phases:
        mode = "parallel" if phase.parallel else "sequential"
        print(f"  {phase.name} [{mode}]")
        for step in phase.steps:
            check = check_requirements(step.requires)
            note = f"  missing env: {', '.join(check.missing)}" if not check.ok else ""
            print(f"    - {step.name} ({step.error_policy.value}){note}")
    return 0


def _quota(settings: Settings) -> int:
    status = check_quota(settings.quota_status_path, timeout=settings.probe_timeout)
    evaluation = status.evaluation
    print(f"tier={evaluation.tier}")
    print(f"tier_name={evaluation.tier_name}")
    print(f"max_priority={evaluation.max_priority}")
    print(f"model={evaluation.model or ''}")
    print(f"constrained={str(evaluation.constrained).lower()}")
    return 0


def _resolve_config(settings: Settings, args: argparse.Namespace) -> int:
    config_path = _resolve(args.config, settings.root, settings.autopilot_config_path)
    runtime = load_autopilot_runtime(config_path, settings.quota_status_path)
    for line in format_runtime_lines(runtime):
        print(line)
    return 0


def _analyze(settings: Settings, args: argparse.Namespace) -> int:
    source_root = None
    if not args.no_architecture:
        source_root = _resolve(args.source_root, settings.root, settings.source_root or settings.root)
    report = analyze_patterns(
        settings.data_dir,
        source_root=source_root,
        manifest_path=settings.manifest_path,
    )
    try:
        write_pattern_report(report, settings.pattern_report_path)
    except OSError as exc:
        logger.error("Could not write pattern report to %s: %s", settings.pattern_report_path, exc)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested subcommand."""
    load_dotenv_files()
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    settings = Settings.from_env(root=args.root or None)

    if args.command == "run":
        return _run(settings, args)
    if args.command == "validate":
        return _validate(settings, args)
    if args.command == "quota":
        return _quota(settings)
    if args.command == "resolve-config":
        return _resolve_config(settings, args)
    if args.command == "analyze":
        return _analyze(settings, args)

    parser.print_help()
    print(
        "\nTip: run 'feedloop quota' before 'feedloop run' so steps see the current tier,\n"
        "     and 'feedloop analyze' afterwards to update the pattern report.",
        file=sys.stderr,
    )
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
