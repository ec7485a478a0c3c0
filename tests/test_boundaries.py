"""
Boundary package reading: reference tables, per-state geometry and caching.
"""
import pytest

from seermap.boundaries import (
    BoundaryPackageFormatError,
    BoundaryRepository,
    MissingBoundaryPackageError,
)
from seermap.models import Layer


def test_available_years(repository):
    assert repository.available_years() == (2010,)


def test_reference_tables(refs):
    assert list(refs.states) == ["01", "02", "06", "09", "15", "72"]
    assert refs.states["72"].territory is True
    assert refs.registries["CA-LA"].aliases == ("Los Angeles", "LA County")
    assert refs.hsas["003"].registry_id == "CA-LA"
    assert refs.hsas["001"].registry_id is None
    assert refs.counties["06037"].tract_count == 2
    assert refs.counties["06037"].state_id == "06"


def test_scoped_tables_drop_dependents(refs):
    lower48 = refs.scoped(lower48_only=True, include_territory=True)
    assert set(lower48.states) == {"01", "06", "09"}
    assert "HI" not in lower48.registries
    assert "02020" not in lower48.counties
    assert set(lower48.regions) == {"1", "3", "4"}

    with_territory = refs.scoped(lower48_only=False, include_territory=True)
    assert "72" in with_territory.states


def test_per_state_layer_loads_only_requested_states(repository):
    loaded = repository.load_level(Layer.COUNTY, ["06"])
    assert loaded.ids == ("06037", "06073", "06075")
    assert set(loaded.rows) == {"06037", "06073", "06075"}


def test_state_layer_is_filtered_by_states(repository):
    loaded = repository.load_level(Layer.STATE, ["06", "09"])
    assert loaded.ids == ("06", "09")


def test_geometry_is_cached_and_shared(repository):
    first = repository.load_level(Layer.HSA, ["06"]).geometries
    second = BoundaryRepository(repository.root, 2010).load_level(Layer.HSA, {"06"}).geometries
    assert first is second


def test_missing_year_is_fatal(boundary_root):
    repo = BoundaryRepository(boundary_root, 2000)
    with pytest.raises(MissingBoundaryPackageError, match="2010"):
        repo.load_reference_tables()


def test_missing_state_geometry_is_fatal(repository):
    with pytest.raises(MissingBoundaryPackageError):
        repository.load_level(Layer.COUNTY, ["48"])


def test_reprojection(boundary_root):
    repo = BoundaryRepository(boundary_root, 2010, crs="EPSG:3857")
    geometries = repo.load_level(Layer.STATE, ["06"]).geometries
    assert geometries.crs.to_epsg() == 3857
    minx, miny, maxx, maxy = geometries.total_bounds
    assert maxx == pytest.approx(111319.49, rel=1e-4)


def test_table_without_id_column(edited_package):
    root = edited_package("states.csv", lambda frame: frame.rename(columns={"id": "fips"}))
    with pytest.raises(BoundaryPackageFormatError, match="states.csv"):
        BoundaryRepository(root, 2010).load_reference_tables()
