"""
Shared fixtures: a small synthetic boundary package on disk.

Counties are unit boxes; tracts split their county box into strips; HSAs,
registries, states and regions are unions of their counties.
"""
import json
from pathlib import Path

import pandas as pd
import pytest
import yaml
from shapely.geometry import box, mapping
from shapely.ops import unary_union

from seermap.boundaries import BoundaryRepository


CENSUS_YEAR = 2010

REGIONS = [
    {"id": "1", "name": "Northeast"},
    {"id": "3", "name": "South"},
    {"id": "4", "name": "West"},
]

STATES = [
    {"id": "01", "abbr": "AL", "name": "Alabama", "region_id": "3", "territory": "0", "county_count": "2"},
    {"id": "02", "abbr": "AK", "name": "Alaska", "region_id": "4", "territory": "0", "county_count": "1"},
    {"id": "06", "abbr": "CA", "name": "California", "region_id": "4", "territory": "0", "county_count": "3"},
    {"id": "09", "abbr": "CT", "name": "Connecticut", "region_id": "1", "territory": "0", "county_count": "2"},
    {"id": "15", "abbr": "HI", "name": "Hawaii", "region_id": "4", "territory": "0", "county_count": "1"},
    {"id": "72", "abbr": "PR", "name": "Puerto Rico", "region_id": "3", "territory": "1", "county_count": "1"},
]

REGISTRIES = [
    {"id": "CA-LA", "name": "Los Angeles", "state_id": "06", "aliases": "Los Angeles|LA County", "county_count": "1"},
    {"id": "CA-SF", "name": "San Francisco-Oakland", "state_id": "06", "aliases": "San Francisco", "county_count": "1"},
    {"id": "CT", "name": "Connecticut", "state_id": "09", "aliases": "Connecticut", "county_count": "2"},
    {"id": "HI", "name": "Hawaii", "state_id": "15", "aliases": "Hawaii|Honolulu", "county_count": "1"},
]

HSAS = [
    {"id": "001", "name": "Jefferson (Birmingham)", "state_id": "01", "registry_id": "", "county_count": "2"},
    {"id": "003", "name": "Los Angeles", "state_id": "06", "registry_id": "CA-LA", "county_count": "1"},
    {"id": "004", "name": "San Diego", "state_id": "06", "registry_id": "", "county_count": "1"},
    {"id": "005", "name": "San Francisco", "state_id": "06", "registry_id": "CA-SF", "county_count": "1"},
    {"id": "010", "name": "Hartford", "state_id": "09", "registry_id": "CT", "county_count": "2"},
    {"id": "020", "name": "Anchorage", "state_id": "02", "registry_id": "", "county_count": "1"},
    {"id": "030", "name": "Honolulu", "state_id": "15", "registry_id": "HI", "county_count": "1"},
    {"id": "040", "name": "Ponce", "state_id": "72", "registry_id": "", "county_count": "1"},
]

# id -> (name, hsa, registry, tract count, county box)
COUNTIES = {
    "01001": ("Autauga", "001", "", 2, (5, 0, 6, 1)),
    "01003": ("Baldwin", "001", "", 1, (5, -1, 6, 0)),
    "02020": ("Anchorage", "020", "", 1, (-10, 10, -9, 11)),
    "06037": ("Los Angeles", "003", "CA-LA", 2, (0, 0, 1, 1)),
    "06073": ("San Diego", "004", "", 1, (0, -1, 1, 0)),
    "06075": ("San Francisco", "005", "CA-SF", 1, (0, 1, 1, 2)),
    "09001": ("Fairfield", "010", "CT", 1, (10, 3, 11, 4)),
    "09003": ("Hartford", "010", "CT", 1, (11, 3, 12, 4)),
    "15003": ("Honolulu", "030", "HI", 1, (-8, -5, -7, -4)),
    "72001": ("Adjuntas", "040", "", 1, (8, -6, 9, -5)),
}


def _tracts(county_id: str) -> dict[str, object]:
    _, _, _, count, (x0, y0, x1, y1) = COUNTIES[county_id]
    step = (x1 - x0) / count
    return {
        f"{county_id}{100 * (i + 1):06d}": box(x0 + i * step, y0, x0 + (i + 1) * step, y1)
        for i in range(count)
    }


def _write_csv(path: Path, rows: list[dict[str, str]]) -> None:
    pd.DataFrame(rows).to_csv(path, index=False)


def _write_geojson(path: Path, geometries: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    features = [
        {"type": "Feature", "properties": {"id": item_id}, "geometry": mapping(geom)}
        for item_id, geom in geometries.items()
    ]
    payload = {
        "type": "FeatureCollection",
        "crs": {"type": "name", "properties": {"name": "urn:ogc:def:crs:OGC:1.3:CRS84"}},
        "features": features,
    }
    path.write_text(json.dumps(payload), encoding="utf-8")


def _union_by(key) -> dict[str, object]:
    groups: dict[str, list[object]] = {}
    for county_id, (_, hsa, registry, _, bounds) in COUNTIES.items():
        group = key(county_id, hsa, registry)
        if group:
            groups.setdefault(group, []).append(box(*bounds))
    return {group: unary_union(parts) for group, parts in groups.items()}


def build_boundary_package(root: Path) -> Path:
    year_dir = root / str(CENSUS_YEAR)
    year_dir.mkdir(parents=True)
    _write_csv(year_dir / "regions.csv", REGIONS)
    _write_csv(year_dir / "states.csv", STATES)
    _write_csv(year_dir / "registries.csv", REGISTRIES)
    _write_csv(year_dir / "hsas.csv", HSAS)
    _write_csv(
        year_dir / "counties.csv",
        [
            {"id": cid, "name": name, "hsa_id": hsa, "registry_id": registry, "tract_count": str(tracts)}
            for cid, (name, hsa, registry, tracts, _) in COUNTIES.items()
        ],
    )

    region_of = {row["id"]: row["region_id"] for row in STATES}
    geometry = year_dir / "geometry"
    _write_geojson(geometry / "state.geojson", _union_by(lambda cid, hsa, reg: cid[:2]))
    _write_geojson(geometry / "region.geojson", _union_by(lambda cid, hsa, reg: region_of[cid[:2]]))
    _write_geojson(geometry / "registry.geojson", _union_by(lambda cid, hsa, reg: reg))

    hsas = _union_by(lambda cid, hsa, reg: hsa)
    hsa_state = {row["id"]: row["state_id"] for row in HSAS}
    for state in STATES:
        sid = state["id"]
        counties = {cid: box(*COUNTIES[cid][4]) for cid in COUNTIES if cid.startswith(sid)}
        tracts: dict[str, object] = {}
        for cid in counties:
            tracts.update(_tracts(cid))
        _write_geojson(geometry / "county" / f"{sid}.geojson", counties)
        _write_geojson(geometry / "tract" / f"{sid}.geojson", tracts)
        _write_geojson(
            geometry / "hsa" / f"{sid}.geojson",
            {hid: geom for hid, geom in hsas.items() if hsa_state[hid] == sid},
        )
    return root


@pytest.fixture(scope="session")
def boundary_root(tmp_path_factory) -> Path:
    return build_boundary_package(tmp_path_factory.mktemp("boundaries"))


@pytest.fixture
def repository(boundary_root) -> BoundaryRepository:
    return BoundaryRepository(boundary_root, CENSUS_YEAR)


@pytest.fixture
def refs(repository):
    return repository.load_reference_tables()


@pytest.fixture
def write_data(tmp_path):
    """Write a rates CSV: rows are (id, rate) or (id, rate, p_value)."""

    def _write(rows, name: str = "rates.csv") -> Path:
        path = tmp_path / name
        columns = ["id", "rate", "p_value"][: len(rows[0])] if rows else ["id", "rate"]
        pd.DataFrame(rows, columns=columns).to_csv(path, index=False)
        return path

    return _write


@pytest.fixture
def write_config(tmp_path, boundary_root):
    """Write a map YAML config; keyword sections override the defaults."""

    def _write(**sections) -> Path:
        raw = {
            "paths": {
                "boundary_root": str(boundary_root),
                "output_dir": str(tmp_path / "maps"),
                "logs_dir": str(tmp_path / "logs"),
            },
            "data": {"id_column": "id", "value_column": "rate"},
            "map": {"census_year": CENSUS_YEAR},
            "image": {"width_px": 400, "height_px": 300, "dpi": 100},
        }
        for key, value in sections.items():
            if isinstance(value, dict) and isinstance(raw.get(key), dict):
                raw[key] = {**raw[key], **value}
            else:
                raw[key] = value
        path = tmp_path / "map.yaml"
        path.write_text(yaml.safe_dump(raw), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def edited_package(tmp_path):
    """Build a private package copy with one reference table rewritten by `edit(frame)`."""

    def _build(table: str, edit) -> Path:
        root = build_boundary_package(tmp_path / "edited")
        path = root / str(CENSUS_YEAR) / table
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
        edit(frame).to_csv(path, index=False)
        return root

    return _build
