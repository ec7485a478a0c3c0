"""Linear map pipeline: rows -> records -> boundary lists -> selection -> extent -> image."""

from __future__ import annotations

import logging
import operator
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from .boundaries import BoundaryRepository
from .categorize import Categorization, CategorizationError, CategoryMode, categorize, parse_value
from .config import AppConfig, DataConfig, HatchConfig
from .extent import MapExtent, compute_extent
from .hierarchy import build_boundary_sets, resolve
from .identifiers import Classification, classify, clean_raw_id, derive_ancestors
from .models import (
    BoundarySet,
    DataRow,
    Issue,
    IssueCode,
    Layer,
    LocationRecord,
    ReferenceTables,
    SeerMapError,
)
from .policies import PolicySet, resolve_clip_policy, resolve_policies
from .render import MapRenderer, build_draw_commands, build_legend
from .selection import BoundarySelection, NoDataError, SelectionScope, select_boundaries
from .util import format_id_list, run_provenance, write_manifest


_LOGGER = logging.getLogger("seermap.pipeline")

_COMPARATORS: Mapping[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(slots=True)
class MapReport:
    """Batch of messages for one run; fatal errors end up in `errors`."""

    output_path: Path | None = None
    manifest_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)

    def add_issue(self, issue: Issue) -> None:
        self.issues.append(issue)
        self.warnings.append(issue.format())

    def extend_issues(self, issues: Sequence[Issue]) -> None:
        for issue in issues:
            self.add_issue(issue)

    def issue_codes(self) -> list[IssueCode]:
        return [issue.code for issue in self.issues]


@dataclass(frozen=True, slots=True)
class RunContext:
    """State of one run; every stage returns a new context."""

    config: AppConfig
    refs: ReferenceTables
    scoped_refs: ReferenceTables
    rows: tuple[DataRow, ...] = ()
    level: Layer | None = None
    records: tuple[LocationRecord, ...] = ()
    policies: PolicySet | None = None
    boundary_sets: Mapping[Layer, BoundarySet] = field(default_factory=dict)
    plists: Mapping[Layer, tuple[str, ...]] = field(default_factory=dict)
    selection: BoundarySelection | None = None
    extent: MapExtent | None = None
    categorization: Categorization | None = None

    @property
    def valid_records(self) -> tuple[LocationRecord, ...]:
        return tuple(record for record in self.records if record.valid)

    @property
    def data_states(self) -> frozenset[str]:
        return frozenset(record.state_id for record in self.valid_records)

    @property
    def data_ids(self) -> tuple[str, ...]:
        return tuple(record.canonical_id for record in self.valid_records)


def load_data_rows(path: Path, data_cfg: DataConfig) -> tuple[DataRow, ...]:
    """Read the user's table; ids are kept as text so leading zeros survive."""
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")
    pd = _require_pandas()
    frame = pd.read_csv(path, dtype=str, sep=data_cfg.delimiter, keep_default_na=True)
    required = [data_cfg.id_column, data_cfg.value_column]
    if data_cfg.hatch_column:
        required.append(data_cfg.hatch_column)
    missing = [col for col in required if col not in frame.columns]
    if missing:
        cols = ", ".join(str(c) for c in frame.columns)
        raise ValueError(f"Data file {path} lacks column(s) {missing}. Available columns: {cols}")

    rows: list[DataRow] = []
    for idx, record in enumerate(frame.to_dict(orient="records"), start=1):
        rows.append(
            DataRow(
                row_number=idx,
                raw_id=record.get(data_cfg.id_column),
                value=record.get(data_cfg.value_column),
                hatch_value=record.get(data_cfg.hatch_column) if data_cfg.hatch_column else None,
            )
        )
    return tuple(rows)


def validate_rows(rows: Sequence[DataRow], mode: CategoryMode) -> tuple[list[DataRow], list[Issue]]:
    """Drop rows with a missing id or an unusable value before classification."""
    kept: list[DataRow] = []
    issues: list[Issue] = []
    for row in rows:
        raw_id = clean_raw_id(row.raw_id)
        if raw_id is None:
            issues.append(
                Issue(IssueCode.MISSING_ID, f"Row {row.row_number}: location id is missing; row dropped.")
            )
            continue
        parsed = parse_value(row.value, mode)
        if parsed is None:
            if _is_blank(row.value):
                code = IssueCode.MISSING_VALUE
                problem = "is missing"
            else:
                code = IssueCode.INVALID_VALUE
                problem = f"{row.value!r} is not usable for {mode.value} categories"
            issues.append(
                Issue(
                    code,
                    f"Row {row.row_number} ({raw_id}): value {problem}; row dropped.",
                    raw_id=raw_id,
                )
            )
            continue
        kept.append(replace(row, raw_id=raw_id, value=parsed))
    return kept, issues


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float):
        return value != value
    return isinstance(value, str) and value.strip().upper() in {"", "NA", "NAN", "NULL"}


def build_records(
    rows: Sequence[DataRow],
    classification: Classification,
    refs: ReferenceTables,
    scoped_refs: ReferenceTables,
) -> tuple[tuple[LocationRecord, ...], list[Issue]]:
    """Attach canonical ids and ancestors; mark duplicates and out-of-scope rows invalid."""
    level = classification.level
    records: list[LocationRecord] = []
    issues: list[Issue] = []
    seen: set[str] = set()
    for row, canonical_id in zip(rows, classification.canonical_ids):
        if canonical_id is None:
            continue
        raw_id = str(row.raw_id)
        problem = _record_problem(level, canonical_id, refs, scoped_refs, seen)
        ancestors = derive_ancestors(level, canonical_id, refs)
        if problem is None and ancestors is None:
            problem = Issue(
                IssueCode.UNMATCHED_BOUNDARY,
                f"{level.label} '{raw_id}' has no state in the reference tables; row dropped.",
                raw_id=raw_id,
            )
        if problem is not None:
            issues.append(problem)
        else:
            seen.add(canonical_id)
        if ancestors is None:
            continue
        records.append(
            LocationRecord(
                raw_id=raw_id,
                canonical_id=canonical_id,
                level=level,
                value=row.value,
                ancestors=ancestors,
                row_number=row.row_number,
                hatch_value=row.hatch_value,
                valid=problem is None,
            )
        )
    return tuple(records), issues


def _record_problem(
    level: Layer,
    canonical_id: str,
    refs: ReferenceTables,
    scoped_refs: ReferenceTables,
    seen: set[str],
) -> Issue | None:
    if canonical_id in seen:
        return Issue(
            IssueCode.DUPLICATE_ID,
            f"{level.label} '{canonical_id}' appears more than once; later row dropped.",
            raw_id=canonical_id,
        )
    if level is Layer.STATE:
        if canonical_id not in refs.states:
            return Issue(
                IssueCode.INVALID_STATE_CODE,
                f"State code '{canonical_id}' is not a known state; row dropped.",
                raw_id=canonical_id,
            )
    elif level is not Layer.TRACT and canonical_id not in refs.table(level):
        return Issue(
            IssueCode.UNMATCHED_BOUNDARY,
            f"{level.label} '{canonical_id}' is not in the {level.label} reference table; row dropped.",
            raw_id=canonical_id,
        )
    elif level is Layer.TRACT and canonical_id[:5] not in refs.counties:
        return Issue(
            IssueCode.UNMATCHED_BOUNDARY,
            f"census tract '{canonical_id}' lies in county {canonical_id[:5]}, which is not in the "
            "county reference table; row dropped.",
            raw_id=canonical_id,
        )

    state_id = refs.parent_id(level, canonical_id, Layer.STATE)
    if state_id is None or state_id not in refs.states:
        return Issue(
            IssueCode.UNMATCHED_BOUNDARY,
            f"{level.label} '{canonical_id}' belongs to unknown state '{state_id}'; row dropped.",
            raw_id=canonical_id,
        )
    if state_id not in scoped_refs.states:
        return Issue(
            IssueCode.INVALID_STATE_CODE,
            f"{level.label} '{canonical_id}' is in state {state_id}, which the inclusion "
            "settings exclude; row dropped.",
            raw_id=canonical_id,
        )
    return None


def _drop_unmatched_geometry(
    records: tuple[LocationRecord, ...],
    geometry_ids: set[str],
) -> tuple[tuple[LocationRecord, ...], list[Issue]]:
    issues: list[Issue] = []
    kept: list[LocationRecord] = []
    for record in records:
        if record.valid and record.canonical_id not in geometry_ids:
            issues.append(
                Issue(
                    IssueCode.UNMATCHED_BOUNDARY,
                    f"{record.level.label} '{record.raw_id}' has no boundary geometry; row dropped.",
                    raw_id=record.raw_id,
                )
            )
            record = replace(record, valid=False)
        kept.append(record)
    return tuple(kept), issues


def hatch_ids(records: Sequence[LocationRecord], hatch_cfg: HatchConfig) -> tuple[str, ...]:
    """Data ids whose hatch value passes the configured comparison."""
    if not hatch_cfg.enabled:
        return ()
    compare = _COMPARATORS[hatch_cfg.comparison]
    selected: list[str] = []
    for record in records:
        if not record.valid:
            continue
        try:
            value = float(record.hatch_value)
        except (TypeError, ValueError):
            continue
        if value == value and compare(value, hatch_cfg.threshold):
            selected.append(record.canonical_id)
    return tuple(selected)


def prepare_map(
    rows: Sequence[DataRow],
    cfg: AppConfig,
    repository: BoundaryRepository,
    report: MapReport,
) -> RunContext:
    """Run every decision stage up to categorization; raises SeerMapError on fatal problems."""
    refs = repository.load_reference_tables()
    scoped = refs.scoped(
        lower48_only=cfg.map.lower48_only,
        include_territory=cfg.map.include_territory,
    )
    ctx = RunContext(config=cfg, refs=refs, scoped_refs=scoped, rows=tuple(rows))
    report.add_info(
        f"Reference tables: {len(scoped.states)} of {len(refs.states)} states in scope "
        f"(lower48_only={cfg.map.lower48_only}, include_territory={cfg.map.include_territory})"
    )

    ctx = _stage_classify(ctx, report)
    ctx = _stage_policies(ctx, report)
    ctx = _stage_validate_geometry(ctx, repository, report)
    ctx = _stage_resolve(ctx, repository, report)
    ctx = _stage_select(ctx, repository, report)
    ctx = _stage_extent(ctx, report)
    ctx = _stage_categorize(ctx, report)
    return ctx


def _stage_classify(ctx: RunContext, report: MapReport) -> RunContext:
    mode = ctx.config.categories.mode
    kept, row_issues = validate_rows(ctx.rows, mode)
    report.extend_issues(row_issues)
    if not kept:
        raise NoDataError("No rows left to map after dropping missing ids and values.")

    classification = classify([row.raw_id for row in kept], ctx.refs)
    report.extend_issues(classification.issues)
    level = classification.level
    report.add_info(f"Detected data level: {level.label} ({classification.matched_count} ids matched)")

    records, record_issues = build_records(kept, classification, ctx.refs, ctx.scoped_refs)
    report.extend_issues(record_issues)
    ctx = replace(ctx, level=level, records=records)
    if not ctx.valid_records:
        raise NoDataError("No rows left to map after identifier validation.")
    return ctx


def _stage_policies(ctx: RunContext, report: MapReport) -> RunContext:
    assert ctx.level is not None
    policies, issues = resolve_policies(ctx.config.map.boundaries, ctx.level)
    report.extend_issues(issues)
    report.add_info(
        "Boundary policies: "
        + ", ".join(f"{layer.value}={policy.value}" for layer, policy in policies.policies.items())
    )
    return replace(ctx, policies=policies)


def _stage_validate_geometry(
    ctx: RunContext,
    repository: BoundaryRepository,
    report: MapReport,
) -> RunContext:
    assert ctx.level is not None
    states = ctx.data_states if ctx.level not in (Layer.STATE, Layer.REGISTRY) else frozenset(
        ctx.scoped_refs.states
    )
    loaded = repository.load_level(ctx.level, states)
    records, issues = _drop_unmatched_geometry(ctx.records, set(loaded.ids))
    report.extend_issues(issues)
    ctx = replace(ctx, records=records)
    if not ctx.valid_records:
        raise NoDataError("No rows left to map: no data id has boundary geometry.")
    return ctx


def _stage_resolve(ctx: RunContext, repository: BoundaryRepository, report: MapReport) -> RunContext:
    assert ctx.level is not None and ctx.policies is not None
    tract_ids: tuple[str, ...] = ()
    if ctx.level is Layer.TRACT:
        tract_ids = repository.load_level(Layer.TRACT, ctx.data_states).ids
    boundary_sets = build_boundary_sets(
        ctx.level,
        ctx.valid_records,
        ctx.scoped_refs,
        data_states=ctx.data_states,
        tract_ids=tract_ids,
    )
    plists = resolve(ctx.level, boundary_sets, ctx.scoped_refs, ctx.policies)
    _add_coverage_infos(ctx, report)
    return replace(ctx, boundary_sets=boundary_sets, plists=plists)


def _add_coverage_infos(ctx: RunContext, report: MapReport) -> None:
    if ctx.level not in (Layer.COUNTY, Layer.TRACT):
        return
    per_state: dict[str, int] = {}
    for record in ctx.valid_records:
        per_state[record.state_id] = per_state.get(record.state_id, 0) + 1
    for state_id, count in sorted(per_state.items()):
        state = ctx.scoped_refs.states[state_id]
        if ctx.level is Layer.COUNTY:
            total = state.county_count or sum(
                1 for row in ctx.scoped_refs.counties.values() if row.state_id == state_id
            )
        else:
            total = sum(
                row.tract_count for row in ctx.scoped_refs.counties.values() if row.state_id == state_id
            )
        if total:
            report.add_info(f"{state.name}: {count} of {total} {ctx.level.label}s carry data")


def _stage_select(ctx: RunContext, repository: BoundaryRepository, report: MapReport) -> RunContext:
    assert ctx.level is not None
    scope = SelectionScope(
        national_states=frozenset(ctx.scoped_refs.states),
        data_states=ctx.data_states,
    )
    selection = select_boundaries(ctx.level, ctx.data_ids, ctx.plists, repository, scope)
    if selection.data.missing_ids:
        report.add_warning(
            f"{len(selection.data.missing_ids)} data ids have no geometry: "
            + format_id_list(list(selection.data.missing_ids))
        )
    for layer in selection.active_layers:
        report.add_info(f"Drawing {len(selection.layer(layer).ids)} {layer.label} boundaries")
    return replace(ctx, selection=selection)


def _stage_extent(ctx: RunContext, report: MapReport) -> RunContext:
    assert ctx.selection is not None
    clip, issues = resolve_clip_policy(ctx.config.map.clip)
    report.extend_issues(issues)
    extent = compute_extent(ctx.selection, clip)
    report.extend_issues(extent.issues)
    report.add_info(
        f"Extent ({extent.clip.value}): x={extent.x_range[0]:.4f}..{extent.x_range[1]:.4f}, "
        f"y={extent.y_range[0]:.4f}..{extent.y_range[1]:.4f}, aspect={extent.aspect:.3f}"
    )
    return replace(ctx, extent=extent)


def _stage_categorize(ctx: RunContext, report: MapReport) -> RunContext:
    cat_cfg = ctx.config.categories
    records = ctx.valid_records
    try:
        categorization = categorize(
            [record.value for record in records],
            mode=cat_cfg.mode,
            count=cat_cfg.count,
            breakpoints=cat_cfg.breakpoints,
            labels=cat_cfg.labels,
            palette=cat_cfg.palette,
            number_format=cat_cfg.number_format,
        )
    except CategorizationError as exc:
        raise SeerMapError(f"Categorization failed: {exc}") from exc
    if cat_cfg.mode is CategoryMode.COMPUTED and categorization.count < cat_cfg.count:
        report.add_warning(
            f"Only {categorization.count} distinct categories could be computed "
            f"(requested {cat_cfg.count})."
        )
    return replace(ctx, categorization=categorization)


def run_map(
    cfg: AppConfig,
    *,
    data_path: Path,
    output_path: Path | None = None,
    repository: BoundaryRepository | None = None,
) -> MapReport:
    """Load data, resolve boundaries, render the map, and report on everything dropped."""
    t0 = time.perf_counter()
    target = output_path or cfg.paths.output_dir / f"{data_path.stem}.{cfg.render.image.format}"
    report = MapReport(output_path=target)
    for note in cfg.notes:
        report.add_issue(Issue(IssueCode.INVALID_PARAMETER, note))

    try:
        rows = load_data_rows(data_path, cfg.data)
    except Exception as exc:
        report.add_error(f"Failed loading data file '{data_path}': {exc}")
        return report
    report.add_info(f"Loaded {len(rows)} data rows from {data_path}")

    repo = repository or BoundaryRepository(
        cfg.paths.boundary_root, cfg.map.census_year, crs=cfg.map.crs
    )
    try:
        ctx = prepare_map(rows, cfg, repo, report)
    except SeerMapError as exc:
        report.add_error(str(exc))
        report.output_path = None
        return report

    assert ctx.selection is not None and ctx.extent is not None and ctx.categorization is not None
    records = ctx.valid_records
    hatched = hatch_ids(records, cfg.render.hatch)
    if cfg.render.hatch.enabled:
        report.add_info(f"Hatching {len(hatched)} of {len(records)} areas")
    commands = build_draw_commands(
        ctx.selection,
        ctx.categorization,
        records,
        hatched=hatched,
        render_cfg=cfg.render,
    )
    legend = build_legend(ctx.categorization, cfg.render)
    try:
        MapRenderer(cfg.render).render(
            commands,
            selection=ctx.selection,
            extent=ctx.extent,
            legend=legend,
            output_path=target,
        )
    except Exception as exc:
        report.add_error(f"Rendering failed: {exc}")
        report.output_path = None
        return report

    report.summary = {
        "rows_total": len(rows),
        "records_mapped": len(records),
        "rows_dropped": len(rows) - len(records),
        "categories": ctx.categorization.count,
        "layers_drawn": len(ctx.selection.active_layers),
    }
    if cfg.build.write_manifest:
        report.manifest_path = _write_manifest(ctx, cfg, data_path, target, report)
    report.add_info(f"Map written to {target} in {time.perf_counter() - t0:.2f}s")
    return report


def _write_manifest(
    ctx: RunContext,
    cfg: AppConfig,
    data_path: Path,
    output_path: Path,
    report: MapReport,
) -> Path:
    assert ctx.selection is not None and ctx.extent is not None and ctx.level is not None
    manifest = {
        **run_provenance(cfg.source_path, data_path),
        "census_year": cfg.map.census_year,
        "data_level": ctx.level.value,
        "records_mapped": len(ctx.valid_records),
        "layers": {
            layer.value: len(ctx.selection.layer(layer).ids) for layer in ctx.selection.active_layers
        },
        "clip": ctx.extent.clip.value,
        "extent": {"x": list(ctx.extent.x_range), "y": list(ctx.extent.y_range)},
        "issues": [{"code": issue.code.value, "message": issue.message} for issue in report.issues],
        "output": str(output_path),
    }
    return write_manifest(output_path, manifest)


def format_report_lines(report: MapReport) -> Sequence[str]:
    lines: list[str] = []
    lines.extend(f"[INFO] {msg}" for msg in report.infos)
    lines.extend(f"[WARN] {msg}" for msg in report.warnings)
    lines.extend(f"[ERROR] {msg}" for msg in report.errors)
    if report.ok:
        lines.append("[OK] Map run completed with no errors.")
    return lines


def _require_pandas() -> Any:
    try:
        import pandas as pd
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("pandas is required for reading data tables") from exc
    return pd
