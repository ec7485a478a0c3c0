"""CLI entrypoint for seermap."""

from __future__ import annotations

import argparse
import logging
from collections import Counter
from pathlib import Path
from typing import Sequence

from .boundaries import BoundaryRepository
from .config import AppConfig, load_config
from .identifiers import classify
from .models import SeerMapError
from .pipeline import build_records, format_report_lines, load_data_rows, run_map, validate_rows
from .util import ensure_directories, format_id_list, setup_logging
from .validate import Validator, format_validation_lines

LOGGER = logging.getLogger("seermap.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="seermap",
        description="Choropleth maps of U.S. public-health area data.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default="map.yaml", help="Path to YAML config.")
        p.add_argument("--verbose", action="store_true", help="Enable debug logs.")

    render_p = subparsers.add_parser("render", help="Run the full pipeline and write the map.")
    add_common(render_p)
    render_p.add_argument("--data", required=True, help="CSV file with location ids and values.")
    render_p.add_argument(
        "--output",
        default=None,
        help="Output image path. Defaults to <output_dir>/<data stem>.<format>.",
    )

    classify_p = subparsers.add_parser(
        "classify",
        help="Detect the data level and report identifier problems without rendering.",
    )
    add_common(classify_p)
    classify_p.add_argument("--data", required=True, help="CSV file with location ids and values.")

    validate_p = subparsers.add_parser(
        "validate",
        help="Validate config and boundary package.",
    )
    add_common(validate_p)

    return parser


def _load_and_setup(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    log_path = cfg.paths.logs_dir / "seermap.log"
    setup_logging(log_path, verbose=args.verbose)
    ensure_directories(cfg.paths.build_directories)
    return cfg


def _run_render(cfg: AppConfig, *, data_path: Path, output_path: Path | None) -> int:
    LOGGER.info("Rendering %s", data_path)
    report = run_map(cfg, data_path=data_path, output_path=output_path)
    for line in format_report_lines(report):
        LOGGER.info(line)
    if not report.ok:
        LOGGER.error("Map run aborted.")
        return 1
    if report.manifest_path is not None:
        LOGGER.info("Run manifest written to %s", report.manifest_path)
    return 0


def _run_classify(cfg: AppConfig, *, data_path: Path) -> int:
    try:
        rows = load_data_rows(data_path, cfg.data)
    except (OSError, ValueError) as exc:
        LOGGER.error("Failed loading data file '%s': %s", data_path, exc)
        return 1
    repo = BoundaryRepository(cfg.paths.boundary_root, cfg.map.census_year, crs=cfg.map.crs)
    try:
        refs = repo.load_reference_tables()
        kept, issues = validate_rows(rows, cfg.categories.mode)
        classification = classify([row.raw_id for row in kept], refs)
        scoped = refs.scoped(
            lower48_only=cfg.map.lower48_only,
            include_territory=cfg.map.include_territory,
        )
        records, record_issues = build_records(kept, classification, refs, scoped)
    except SeerMapError as exc:
        LOGGER.error("Classification failed: %s", exc)
        return 1

    issues.extend(classification.issues)
    issues.extend(record_issues)
    valid = [record.canonical_id for record in records if record.valid]
    LOGGER.info("Detected level: %s", classification.level.label)
    LOGGER.info("Rows: %d read, %d valid records", len(rows), len(valid))
    if valid:
        LOGGER.info("Canonical ids: %s", format_id_list(valid))
    counts = Counter(issue.code.value for issue in issues)
    for code, count in sorted(counts.items()):
        LOGGER.info("%s: %d", code, count)
    for issue in issues:
        LOGGER.warning(issue.format())
    return 0 if valid else 1


def _run_validate(cfg: AppConfig) -> int:
    report = Validator(cfg).run()
    for line in format_validation_lines(report):
        LOGGER.info(line)
    return 0 if report.ok else 1


def _dispatch(args: argparse.Namespace) -> int:
    cfg = _load_and_setup(args)
    command = str(args.command)
    if command == "render":
        output = Path(args.output) if args.output else None
        return _run_render(cfg, data_path=Path(args.data), output_path=output)
    if command == "classify":
        return _run_classify(cfg, data_path=Path(args.data))
    if command == "validate":
        return _run_validate(cfg)
    raise ValueError(f"Unknown command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
