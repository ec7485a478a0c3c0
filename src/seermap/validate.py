"""Validation of a map config against its boundary package."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from .boundaries import BoundaryPackageFormatError, BoundaryRepository, MissingBoundaryPackageError
from .config import AppConfig
from .models import Layer, ReferenceTables
from .policies import LEGAL_POLICIES, POLICY_KEYS, parse_boundary_policy, resolve_clip_policy
from .util import format_id_list


@dataclass(slots=True)
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)


class Validator:
    """Checks config values and boundary package consistency before a run."""

    def __init__(self, cfg: AppConfig, repository: BoundaryRepository | None = None) -> None:
        self.cfg = cfg
        self.repository = repository or BoundaryRepository(
            cfg.paths.boundary_root, cfg.map.census_year, crs=cfg.map.crs
        )

    def run(self) -> ValidationReport:
        report = ValidationReport()
        for note in self.cfg.notes:
            report.add_warning(note)
        self._validate_policies(report)
        if not self._validate_year(report):
            return report
        refs = self._validate_reference_tables(report)
        if refs is None:
            return report
        self._validate_national_geometry(report, refs)
        self._validate_state_geometry(report, refs)
        return report

    def _validate_policies(self, report: ValidationReport) -> None:
        for layer, key in POLICY_KEYS.items():
            raw = self.cfg.map.boundaries.get(key)
            if raw is None:
                continue
            policy = parse_boundary_policy(raw)
            if policy is None or policy not in LEGAL_POLICIES[layer]:
                legal = ", ".join(p.value for p in LEGAL_POLICIES[layer])
                report.add_warning(
                    f"map.boundaries.{key}={raw!r} is not one of {legal}; the default applies."
                )
        _, clip_issues = resolve_clip_policy(self.cfg.map.clip)
        for issue in clip_issues:
            report.add_warning(issue.message)

    def _validate_year(self, report: ValidationReport) -> bool:
        root = self.repository.root
        if not root.is_dir():
            report.add_error(f"Boundary root does not exist: {root}")
            return False
        years = self.repository.available_years()
        report.add_info(
            f"Boundary package years under {root}: {', '.join(str(y) for y in years) or 'none'}"
        )
        if self.cfg.map.census_year not in years:
            report.add_error(f"Census year {self.cfg.map.census_year} is not installed under {root}")
            return False
        return True

    def _validate_reference_tables(self, report: ValidationReport) -> ReferenceTables | None:
        try:
            refs = self.repository.load_reference_tables()
        except (MissingBoundaryPackageError, BoundaryPackageFormatError) as exc:
            report.add_error(f"Failed loading reference tables: {exc}")
            return None
        report.add_info(
            f"Reference tables: {len(refs.regions)} regions, {len(refs.states)} states, "
            f"{len(refs.registries)} registries, {len(refs.hsas)} HSAs, {len(refs.counties)} counties"
        )

        bad_regions = sorted(s.id for s in refs.states.values() if s.region_id not in refs.regions)
        if bad_regions:
            report.add_warning(f"States with unknown region: {format_id_list(bad_regions)}")
        bad_registries = sorted(r.id for r in refs.registries.values() if r.state_id not in refs.states)
        if bad_registries:
            report.add_warning(f"Registries with unknown state: {format_id_list(bad_registries)}")
        bad_hsas = sorted(h.id for h in refs.hsas.values() if h.state_id not in refs.states)
        if bad_hsas:
            report.add_warning(f"HSAs with unknown state: {format_id_list(bad_hsas)}")
        bad_counties = sorted(
            c.id for c in refs.counties.values() if c.hsa_id is not None and c.hsa_id not in refs.hsas
        )
        if bad_counties:
            report.add_warning(f"Counties with unknown HSA: {format_id_list(bad_counties)}")
        bad_hsa_registries = sorted(
            h.id
            for h in refs.hsas.values()
            if h.registry_id is not None and h.registry_id not in refs.registries
        )
        if bad_hsa_registries:
            report.add_warning(f"HSAs with unknown registry: {format_id_list(bad_hsa_registries)}")
        bad_county_registries = sorted(
            c.id
            for c in refs.counties.values()
            if c.registry_id is not None and c.registry_id not in refs.registries
        )
        if bad_county_registries:
            report.add_warning(
                f"Counties with unknown registry: {format_id_list(bad_county_registries)}"
            )

        scoped = refs.scoped(
            lower48_only=self.cfg.map.lower48_only,
            include_territory=self.cfg.map.include_territory,
        )
        if not scoped.states:
            report.add_error("No states remain after applying lower48_only/include_territory")
            return None
        return scoped

    def _validate_national_geometry(self, report: ValidationReport, refs: ReferenceTables) -> None:
        states = frozenset(refs.states)
        for layer in (Layer.REGION, Layer.STATE, Layer.REGISTRY):
            try:
                loaded = self.repository.load_level(layer, states)
            except (MissingBoundaryPackageError, BoundaryPackageFormatError) as exc:
                report.add_error(f"Failed loading {layer.label} geometry: {exc}")
                continue
            missing = sorted(set(loaded.rows) - set(loaded.ids))
            if missing:
                report.add_warning(
                    f"{len(missing)} {layer.label} rows have no geometry: {format_id_list(missing)}"
                )
            report.add_info(f"{layer.label} geometry: {len(loaded.ids)} features")

    def _validate_state_geometry(self, report: ValidationReport, refs: ReferenceTables) -> None:
        for layer in (Layer.HSA, Layer.COUNTY, Layer.TRACT):
            missing_states: list[str] = []
            for state_id in refs.states:
                try:
                    self.repository.load_level(layer, [state_id])
                except MissingBoundaryPackageError:
                    missing_states.append(state_id)
                except BoundaryPackageFormatError as exc:
                    report.add_error(f"Failed loading {layer.label} geometry for state {state_id}: {exc}")
            if missing_states:
                report.add_info(
                    f"{layer.label} geometry not installed for states: {format_id_list(missing_states)}"
                )


def format_validation_lines(report: ValidationReport) -> Sequence[str]:
    lines: list[str] = []
    lines.extend(f"[INFO] {msg}" for msg in report.infos)
    lines.extend(f"[WARN] {msg}" for msg in report.warnings)
    lines.extend(f"[ERROR] {msg}" for msg in report.errors)
    if report.ok:
        lines.append("[OK] Validation completed with no errors.")
    return lines
