"""Boundary package loading interfaces.

A boundary package is a directory per census year::

    <root>/<year>/regions.csv
    <root>/<year>/states.csv
    <root>/<year>/registries.csv
    <root>/<year>/hsas.csv
    <root>/<year>/counties.csv
    <root>/<year>/geometry/region.<ext>
    <root>/<year>/geometry/state.<ext>
    <root>/<year>/geometry/registry.<ext>
    <root>/<year>/geometry/<hsa|county|tract>/<state_id>.<ext>

Every geometry file carries an ``id`` column matching the reference tables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Mapping

from .models import (
    CountyRow,
    HsaRow,
    Layer,
    NATIONAL_LAYERS,
    ReferenceTables,
    RegionRow,
    RegistryRow,
    SeerMapError,
    StateRow,
    TractRow,
)


_LOGGER = logging.getLogger("seermap.boundaries")

SUPPORTED_CENSUS_YEARS = (2000, 2010, 2020)
GEOMETRY_EXTENSIONS = (".gpkg", ".geojson", ".shp")
_TABLE_FILES = {
    Layer.REGION: "regions.csv",
    Layer.STATE: "states.csv",
    Layer.REGISTRY: "registries.csv",
    Layer.HSA: "hsas.csv",
    Layer.COUNTY: "counties.csv",
}
_ALIAS_SEPARATOR = "|"


class MissingBoundaryPackageError(SeerMapError):
    """Raised when boundary data for a layer, state, or year is not installed."""


class BoundaryPackageFormatError(SeerMapError):
    """Raised when an installed table or geometry file lacks required columns."""


@dataclass(frozen=True, slots=True)
class LayerData:
    """Reference rows and geometries for one layer over a state subset."""

    layer: Layer
    rows: Mapping[str, Any]
    geometries: Any

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(str(item) for item in self.geometries.index)


class BoundaryRepository:
    """Read-only access to one census year of a boundary package."""

    def __init__(self, root: Path, census_year: int, *, crs: str | None = None) -> None:
        self.root = Path(root)
        self.census_year = census_year
        self.crs = crs

    @property
    def year_dir(self) -> Path:
        return self.root / str(self.census_year)

    def available_years(self) -> tuple[int, ...]:
        if not self.root.is_dir():
            return ()
        years: list[int] = []
        for child in sorted(self.root.iterdir()):
            if child.is_dir() and child.name.isdigit() and int(child.name) in SUPPORTED_CENSUS_YEARS:
                years.append(int(child.name))
        return tuple(years)

    def load_reference_tables(self) -> ReferenceTables:
        """Load the national reference tables for this census year."""
        self._require_year_dir()
        return _read_reference_tables(self.year_dir.resolve())

    def load_level(self, layer: Layer, states: Iterable[str] | None = None) -> LayerData:
        """Load reference rows plus geometries for `layer`, limited to `states`.

        `states=None` means every state of the package.
        """
        self._require_year_dir()
        refs = self.load_reference_tables()
        state_subset = frozenset(states) if states is not None else frozenset(refs.states)
        geometries = _read_layer_geometries(
            self.year_dir.resolve(),
            layer,
            state_subset,
            self.crs,
        )
        if layer is Layer.TRACT:
            rows: Mapping[str, Any] = {tid: TractRow(id=tid) for tid in geometries.index}
        else:
            table = refs.table(layer)
            rows = {
                item_id: row
                for item_id, row in table.items()
                if layer is Layer.REGION or _row_state(layer, row) in state_subset
            }
        return LayerData(layer=layer, rows=rows, geometries=geometries)

    def _require_year_dir(self) -> None:
        if not self.year_dir.is_dir():
            available = ", ".join(str(y) for y in self.available_years()) or "none"
            raise MissingBoundaryPackageError(
                f"Boundary package for census year {self.census_year} not found under "
                f"{self.root} (available: {available})"
            )


def _row_state(layer: Layer, row: Any) -> str | None:
    if layer is Layer.REGION:
        return None
    if layer is Layer.STATE:
        return row.id
    return row.state_id


@lru_cache(maxsize=8)
def _read_reference_tables(year_dir: Path) -> ReferenceTables:
    frames = {layer: _read_table(year_dir / name) for layer, name in _TABLE_FILES.items()}

    regions = {
        r["id"]: RegionRow(id=r["id"], name=r.get("name") or r["id"])
        for r in frames[Layer.REGION]
    }
    states = {
        r["id"].zfill(2): StateRow(
            id=r["id"].zfill(2),
            abbr=(r.get("abbr") or "").upper(),
            name=r.get("name") or r["id"],
            region_id=r.get("region_id") or "",
            territory=_to_bool(r.get("territory")),
            county_count=_to_int(r.get("county_count")),
        )
        for r in frames[Layer.STATE]
    }
    registries = {
        r["id"].upper(): RegistryRow(
            id=r["id"].upper(),
            name=r.get("name") or r["id"],
            state_id=(r.get("state_id") or "").zfill(2),
            aliases=_split_aliases(r.get("aliases")),
            county_count=_to_int(r.get("county_count")),
        )
        for r in frames[Layer.REGISTRY]
    }
    hsas = {
        r["id"].zfill(3): HsaRow(
            id=r["id"].zfill(3),
            name=r.get("name") or r["id"],
            state_id=(r.get("state_id") or "").zfill(2),
            registry_id=(r.get("registry_id") or "").upper() or None,
            county_count=_to_int(r.get("county_count")),
        )
        for r in frames[Layer.HSA]
    }
    counties = {
        r["id"].zfill(5): CountyRow(
            id=r["id"].zfill(5),
            name=r.get("name") or r["id"],
            state_id=r["id"].zfill(5)[:2],
            hsa_id=(r.get("hsa_id") or "").zfill(3) if r.get("hsa_id") else None,
            registry_id=(r.get("registry_id") or "").upper() or None,
            tract_count=_to_int(r.get("tract_count")),
        )
        for r in frames[Layer.COUNTY]
    }
    _LOGGER.info(
        "Loaded reference tables from %s: %d regions, %d states, %d registries, %d HSAs, %d counties",
        year_dir,
        len(regions),
        len(states),
        len(registries),
        len(hsas),
        len(counties),
    )
    return ReferenceTables(
        regions=regions,
        states=states,
        registries=registries,
        hsas=hsas,
        counties=counties,
    )


def _read_table(path: Path) -> list[dict[str, str]]:
    if not path.exists():
        raise MissingBoundaryPackageError(f"Reference table not found: {path}")
    pd = _require_pandas()
    frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    if "id" not in frame.columns:
        raise BoundaryPackageFormatError(f"Reference table {path} has no 'id' column")
    rows: list[dict[str, str]] = []
    for record in frame.to_dict(orient="records"):
        cleaned = {str(k): str(v).strip() for k, v in record.items()}
        if cleaned["id"]:
            rows.append(cleaned)
    return rows


@lru_cache(maxsize=64)
def _read_layer_geometries(
    year_dir: Path,
    layer: Layer,
    states: frozenset[str],
    crs: str | None,
) -> Any:
    gpd = _require_geopandas()
    pd = _require_pandas()
    geometry_dir = year_dir / "geometry"
    if layer in NATIONAL_LAYERS:
        frames = [_read_geometry_file(gpd, _find_geometry_file(geometry_dir, layer.value))]
    else:
        frames = [
            _read_geometry_file(gpd, _find_geometry_file(geometry_dir / layer.value, state_id))
            for state_id in sorted(states)
        ]

    if not frames:
        combined = gpd.GeoDataFrame({"id": [], "geometry": []}, geometry="geometry", crs=crs)
    elif len(frames) == 1:
        combined = frames[0]
    else:
        combined = gpd.GeoDataFrame(pd.concat(frames, ignore_index=True), crs=frames[0].crs)

    combined["id"] = combined["id"].astype(str).map(lambda v: _canonical_geometry_id(layer, v))
    if layer is Layer.STATE:
        combined = combined[combined["id"].isin(states)]
    elif layer is Layer.REGISTRY:
        combined = combined[combined["id"].map(_registry_state_lookup(year_dir)).isin(states)]
    combined = combined.drop_duplicates(subset="id").set_index("id", drop=False)
    combined.index.name = None

    if crs is not None and combined.crs is not None:
        combined = combined.to_crs(crs)
    _LOGGER.debug(
        "Loaded %d %s geometries for %d states", len(combined), layer.label, len(states)
    )
    return combined


def _registry_state_lookup(year_dir: Path) -> Mapping[str, str]:
    tables = _read_reference_tables(year_dir)
    return {rid: row.state_id for rid, row in tables.registries.items()}


def _find_geometry_file(directory: Path, stem: str) -> Path:
    for ext in GEOMETRY_EXTENSIONS:
        candidate = directory / f"{stem}{ext}"
        if candidate.exists():
            return candidate
    raise MissingBoundaryPackageError(
        f"Boundary geometry '{stem}' not installed in {directory} "
        f"(looked for {', '.join(GEOMETRY_EXTENSIONS)})"
    )


def _read_geometry_file(gpd: Any, path: Path) -> Any:
    frame = gpd.read_file(path)
    if "id" not in frame.columns:
        cols = ", ".join(str(c) for c in frame.columns)
        raise BoundaryPackageFormatError(
            f"Geometry file {path} has no 'id' column. Available columns: {cols}"
        )
    return frame[["id", "geometry"]].copy()


def _canonical_geometry_id(layer: Layer, value: str) -> str:
    text = value.strip()
    if layer is Layer.REGISTRY:
        return text.upper()
    if layer is Layer.STATE:
        return text.zfill(2)
    if layer is Layer.HSA:
        return text.zfill(3)
    if layer is Layer.COUNTY:
        return text.zfill(5)
    if layer is Layer.TRACT:
        return text.zfill(11)
    return text


def _split_aliases(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(_ALIAS_SEPARATOR) if part.strip())


def _to_int(value: str | None) -> int:
    try:
        return int(value) if value else 0
    except ValueError:
        return 0


def _to_bool(value: str | None) -> bool:
    return (value or "").strip().casefold() in {"1", "true", "yes", "y", "t"}


def _require_geopandas() -> Any:
    try:
        import geopandas as gpd
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("geopandas is required for boundary loading") from exc
    return gpd


def _require_pandas() -> Any:
    try:
        import pandas as pd
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("pandas is required for reference table loading") from exc
    return pd
