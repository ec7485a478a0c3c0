"""
End-to-end pipeline runs against the synthetic boundary package.
"""
import json

import pytest

from seermap.boundaries import BoundaryRepository
from seermap.config import load_config
from seermap.models import BBox, ClipPolicy, IssueCode, Layer, SeerMapError
from seermap.pipeline import (
    MapReport,
    format_report_lines,
    hatch_ids,
    load_data_rows,
    prepare_map,
    run_map,
)
from seermap.selection import NoDataError


def _prepare(write_config, write_data, repository, rows, **sections):
    cfg = load_config(write_config(**sections))
    data_rows = load_data_rows(write_data(rows), cfg.data)
    report = MapReport()
    ctx = prepare_map(data_rows, cfg, repository, report)
    return ctx, report


class TestRowHandling:
    def test_unknown_county_is_dropped(self, write_config, write_data, repository):
        ctx, report = _prepare(
            write_config, write_data, repository, [("06037", 1.0), ("99999", 2.0)]
        )
        assert ctx.level is Layer.COUNTY
        assert ctx.data_ids == ("06037",)
        assert IssueCode.UNMATCHED_BOUNDARY in report.issue_codes()

    def test_duplicates_keep_first_row(self, write_config, write_data, repository):
        ctx, report = _prepare(
            write_config,
            write_data,
            repository,
            [("06037", 1.0), ("6037", 5.0), ("06073", 2.0)],
        )
        assert ctx.data_ids == ("06037", "06073")
        assert [r.value for r in ctx.valid_records] == [1.0, 2.0]
        assert report.issue_codes().count(IssueCode.DUPLICATE_ID) == 1

    def test_out_of_scope_state(self, write_config, write_data, repository):
        ctx, report = _prepare(
            write_config, write_data, repository, [("06037", 1.0), ("72001", 2.0)]
        )
        assert ctx.data_ids == ("06037",)
        assert IssueCode.INVALID_STATE_CODE in report.issue_codes()

    def test_territory_can_be_included(self, write_config, write_data, repository):
        ctx, _ = _prepare(
            write_config,
            write_data,
            repository,
            [("06037", 1.0), ("72001", 2.0)],
            map={"include_territory": True},
        )
        assert ctx.data_ids == ("06037", "72001")

    def test_missing_and_invalid_values(self, write_config, write_data, repository):
        ctx, report = _prepare(
            write_config,
            write_data,
            repository,
            [("06037", 1.0), ("06073", None), ("06075", "abc"), (None, 3.0)],
        )
        assert ctx.data_ids == ("06037",)
        codes = report.issue_codes()
        assert IssueCode.MISSING_VALUE in codes
        assert IssueCode.INVALID_VALUE in codes
        assert IssueCode.MISSING_ID in codes

    def test_no_rows_left_is_fatal(self, write_config, write_data, repository):
        with pytest.raises(NoDataError):
            _prepare(write_config, write_data, repository, [("99999", 1.0)])

    def test_mixed_formats_are_fatal(self, write_config, write_data, repository):
        with pytest.raises(SeerMapError):
            _prepare(write_config, write_data, repository, [("06037", 1.0), ("Hawaii", 2.0)])


class TestStages:
    def test_state_clip_on_state_data_uses_data_box(self, write_config, write_data, repository):
        ctx, report = _prepare(
            write_config,
            write_data,
            repository,
            [("06", 1.0), ("01", 2.0)],
            map={"clip": "STATE"},
        )
        assert ctx.level is Layer.STATE
        assert ctx.extent.clip is ClipPolicy.DATA
        assert report.issue_codes().count(IssueCode.CLIP_DOWNGRADED) == 1
        assert ctx.extent.bbox == BBox(0.0, -1.0, 6.0, 2.0)
        assert ctx.extent.bbox == ctx.selection.data.bbox

    def test_default_clip_shows_all_states(self, write_config, write_data, repository):
        ctx, _ = _prepare(write_config, write_data, repository, [("06", 1.0), ("01", 2.0)])
        assert ctx.extent.clip is ClipPolicy.NONE
        assert ctx.extent.bbox == BBox(-10.0, -5.0, 12.0, 11.0)

    def test_registry_names(self, write_config, write_data, repository):
        ctx, _ = _prepare(
            write_config, write_data, repository, [("Los Angeles", 1.0), ("Hawaii", 2.0)]
        )
        assert ctx.level is Layer.REGISTRY
        assert ctx.data_ids == ("CA-LA", "HI")
        assert ctx.selection.data.ids == ("CA-LA", "HI")

    def test_seer_county_boundaries(self, write_config, write_data, repository):
        ctx, _ = _prepare(
            write_config,
            write_data,
            repository,
            [("09001", 1.0), ("01001", 2.0)],
            map={"boundaries": {"county": "SEER", "state": "DATA"}},
        )
        assert ctx.plists[Layer.COUNTY] == ("01001", "09001", "09003")
        assert ctx.selection.layer(Layer.COUNTY).ids == ("01001", "09001", "09003")
        assert ctx.selection.layer(Layer.STATE).ids == ("01", "09")

    def test_tract_data(self, write_config, write_data, repository):
        ctx, report = _prepare(
            write_config,
            write_data,
            repository,
            [("06037000100", 1.0), ("06037000200", 4.0)],
            map={"boundaries": {"county": "DATA"}},
        )
        assert ctx.level is Layer.TRACT
        assert ctx.plists[Layer.COUNTY] == ("06037",)
        assert any("2 of 4 census tracts" in info for info in report.infos)

    def test_categories_follow_records(self, write_config, write_data, repository):
        ctx, _ = _prepare(
            write_config,
            write_data,
            repository,
            [("06037", 1.0), ("06073", 5.0), ("06075", 9.0)],
            categories={"mode": "breakpoints", "breakpoints": [2, 6]},
        )
        assert ctx.categorization.indices == (0, 1, 2)

    def test_policy_typos_are_warnings(self, write_config, write_data, repository):
        ctx, report = _prepare(
            write_config,
            write_data,
            repository,
            [("06037", 1.0)],
            map={"boundaries": {"state": "COUNTY"}},
        )
        assert ctx.plists[Layer.STATE] == ()
        assert IssueCode.INVALID_POLICY in report.issue_codes()


class TestIncompleteReferenceTables:
    def test_tract_in_unlisted_county_is_dropped(self, write_config, write_data, edited_package):
        root = edited_package("counties.csv", lambda frame: frame[frame["id"] != "06073"])
        cfg = load_config(write_config())
        rows = load_data_rows(write_data([("06037000100", 1.0), ("06073000100", 2.0)]), cfg.data)
        report = MapReport()
        ctx = prepare_map(rows, cfg, BoundaryRepository(root, 2010), report)
        assert ctx.level is Layer.TRACT
        assert ctx.data_ids == ("06037000100",)
        assert ctx.plists[Layer.TRACT] == ("06037000100",)
        assert IssueCode.UNMATCHED_BOUNDARY in report.issue_codes()

    def test_dangling_hsa_key_keeps_row(self, write_config, write_data, edited_package):
        def _point_at_missing_hsa(frame):
            frame.loc[frame["id"] == "06037", "hsa_id"] = "999"
            return frame

        root = edited_package("counties.csv", _point_at_missing_hsa)
        cfg = load_config(write_config(map={"boundaries": {"hsa": "DATA"}}))
        rows = load_data_rows(write_data([("06037", 1.0), ("06073", 2.0)]), cfg.data)
        ctx = prepare_map(rows, cfg, BoundaryRepository(root, 2010), MapReport())
        assert ctx.data_ids == ("06037", "06073")
        assert ctx.valid_records[0].ancestors.hsa_id is None
        assert ctx.plists[Layer.HSA] == ("004",)

    def test_dangling_registry_key_draws_no_registry(
        self, write_config, write_data, edited_package
    ):
        def _point_at_missing_registry(frame):
            frame.loc[frame["id"] == "06037", "registry_id"] = "CA-XX"
            return frame

        root = edited_package("counties.csv", _point_at_missing_registry)
        cfg = load_config(write_config(map={"boundaries": {"registry": "DATA"}}))
        rows = load_data_rows(write_data([("06037", 1.0)]), cfg.data)
        ctx = prepare_map(rows, cfg, BoundaryRepository(root, 2010), MapReport())
        assert ctx.data_ids == ("06037",)
        assert ctx.plists[Layer.REGISTRY] == ()


def test_hatch_selection(write_config, write_data, repository):
    cfg = load_config(
        write_config(
            data={"hatch_column": "p_value"},
            hatch={"enabled": True, "comparison": "<", "threshold": 0.05},
        )
    )
    rows = load_data_rows(
        write_data([("06037", 1.0, 0.01), ("06073", 2.0, 0.2), ("06075", 3.0, None)]), cfg.data
    )
    ctx = prepare_map(rows, cfg, repository, MapReport())
    assert hatch_ids(ctx.valid_records, cfg.render.hatch) == ("06037",)


class TestRunMap:
    def test_writes_map_and_manifest(self, write_config, write_data, tmp_path):
        cfg = load_config(write_config(title="Test map", legend={"no_data_label": "No data"}))
        report = run_map(cfg, data_path=write_data([("06037", 1.0), ("99999", 2.0), ("06073", 3.0)]))
        assert report.ok, report.errors
        assert report.output_path == tmp_path / "maps" / "rates.png"
        assert report.output_path.exists()
        assert report.summary["records_mapped"] == 2
        assert report.summary["rows_dropped"] == 1

        manifest = json.loads(report.manifest_path.read_text(encoding="utf-8"))
        assert manifest["data_level"] == "county"
        assert manifest["records_mapped"] == 2
        assert manifest["issues"][0]["code"] == "UnmatchedBoundary"
        assert len(manifest["config_hash_sha256"]) == 64
        assert "generated_at_utc" in manifest

    def test_fatal_errors_end_up_in_report(self, write_config, write_data):
        cfg = load_config(write_config())
        report = run_map(cfg, data_path=write_data([("1", 1.0), ("7", 2.0)]))
        assert not report.ok
        assert report.output_path is None
        assert any("neither a state code nor an HSA" in err for err in report.errors)
        assert format_report_lines(report)[-1].startswith("[ERROR]")

    def test_missing_data_file(self, write_config, tmp_path):
        cfg = load_config(write_config())
        report = run_map(cfg, data_path=tmp_path / "nope.csv")
        assert not report.ok

    def test_config_notes_are_reported(self, write_config, write_data, tmp_path):
        cfg = load_config(write_config(categories={"count": 99}, build={"write_manifest": False}))
        report = run_map(
            cfg,
            data_path=write_data([("06037", 1.0)]),
            output_path=tmp_path / "out" / "map.png",
        )
        assert report.ok, report.errors
        assert IssueCode.INVALID_PARAMETER in report.issue_codes()
        assert report.manifest_path is None
        assert (tmp_path / "out" / "map.png").exists()

    def test_table_without_id_column_is_reported(self, write_config, write_data, edited_package):
        root = edited_package("hsas.csv", lambda frame: frame.rename(columns={"id": "hsa"}))
        cfg = load_config(write_config(paths={"boundary_root": str(root)}))
        report = run_map(cfg, data_path=write_data([("06037", 1.0)]))
        assert not report.ok
        assert report.output_path is None
        assert any("has no 'id' column" in err for err in report.errors)
