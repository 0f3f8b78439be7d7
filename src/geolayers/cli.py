"""CLI entrypoint for geolayers."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

from .config import OUTPUT_FORMATS, AppConfig, load_config
from .pipeline import format_pipeline_lines, run_pipeline, run_resolve
from .util import ensure_directories, setup_logging
from .validate import Validator, format_report_lines

LOGGER = logging.getLogger("geolayers.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="geolayers",
        description="Turn location records into layered static and interactive maps.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default="config.yaml", help="Path to YAML config.")
        p.add_argument("--verbose", action="store_true", help="Enable debug logs.")

    build_p = subparsers.add_parser("build", help="Run the full load/resolve/compose/render pipeline.")
    add_common(build_p)
    build_p.add_argument(
        "--format",
        action="append",
        default=[],
        choices=OUTPUT_FORMATS,
        help="Output format to render. Can be repeated. Defaults to render.formats.",
    )
    build_p.add_argument(
        "--no-geocode",
        action="store_true",
        help="Use only explicit coordinates; do not look up place names.",
    )

    resolve_p = subparsers.add_parser(
        "resolve",
        help="Load and resolve records, then write them with coordinates as CSV.",
    )
    add_common(resolve_p)
    resolve_p.add_argument(
        "--output",
        default=None,
        help="CSV path. Defaults to <output_dir>/<output_stem>.resolved.csv.",
    )

    validate_p = subparsers.add_parser("validate", help="Validate config and input files.")
    add_common(validate_p)
    validate_p.add_argument(
        "--strict-data-files",
        action="store_true",
        help="Treat missing boundary files and regions as validation errors.",
    )

    return parser


def _load_and_setup(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    log_path = cfg.paths.logs_dir / "geolayers.log"
    setup_logging(log_path, verbose=args.verbose)
    ensure_directories(cfg.paths.build_directories)
    return cfg


def _run_validate(cfg: AppConfig, *, strict_data_files: bool) -> int:
    report = Validator(cfg).run(strict_data_files=strict_data_files)
    for line in format_report_lines(report):
        LOGGER.info(line)
    return 0 if report.ok else 1


def _run_build(cfg: AppConfig, *, formats: Sequence[str], geocode: bool) -> int:
    LOGGER.info("Starting build pipeline.")

    validation = Validator(cfg).run()
    for line in format_report_lines(validation):
        LOGGER.info(line)
    if not validation.ok:
        LOGGER.error("Build aborted due to validation errors.")
        return 1

    report = run_pipeline(cfg, formats=formats or None, geocode=geocode)
    for line in format_pipeline_lines(report):
        LOGGER.info(line)
    if not report.ok:
        LOGGER.error("Build failed.")
        return 1
    for fmt, path in sorted(report.outputs.items()):
        LOGGER.info("Output %s: %s", fmt, path)
    return 0


def _run_resolve(cfg: AppConfig, *, output: str | None) -> int:
    report = run_resolve(cfg, output_path=Path(output) if output else None)
    for line in format_pipeline_lines(report):
        LOGGER.info(line)
    return 0 if report.ok else 1


def _dispatch(args: argparse.Namespace) -> int:
    cfg = _load_and_setup(args)
    command = str(args.command)
    if command == "build":
        return _run_build(
            cfg,
            formats=[str(item) for item in args.format],
            geocode=not bool(args.no_geocode),
        )
    if command == "resolve":
        return _run_resolve(cfg, output=args.output)
    if command == "validate":
        return _run_validate(cfg, strict_data_files=bool(args.strict_data_files))
    raise ValueError(f"Unknown command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
