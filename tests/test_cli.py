"""
CLI subcommands and package validation.
"""
import pytest

from seermap.cli import main
from seermap.config import load_config
from seermap.validate import Validator, format_validation_lines


def test_render_command(write_config, write_data, tmp_path):
    config = write_config()
    data = write_data([("06037", 1.0), ("06073", 2.0)])
    output = tmp_path / "cli" / "map.png"
    code = main(["render", "--config", str(config), "--data", str(data), "--output", str(output)])
    assert code == 0
    assert output.exists()
    assert output.with_suffix(".json").exists()


def test_render_command_fails_on_fatal_error(write_config, write_data):
    config = write_config()
    data = write_data([("06037", 1.0), ("Hawaii", 2.0)])
    assert main(["render", "--config", str(config), "--data", str(data)]) == 1


def test_classify_command(write_config, write_data):
    config = write_config()
    data = write_data([("Los Angeles", 1.0), ("Atlantis", 2.0)])
    assert main(["classify", "--config", str(config), "--data", str(data)]) == 0


def test_validate_command(write_config):
    assert main(["validate", "--config", str(write_config())]) == 0


def test_subcommand_is_required():
    with pytest.raises(SystemExit):
        main([])


def test_validator_reports_clean_package(write_config):
    report = Validator(load_config(write_config())).run()
    assert report.ok, report.errors
    assert report.warnings == []
    assert format_validation_lines(report)[-1].startswith("[OK]")


def test_validator_flags_missing_year_and_bad_policy(write_config):
    cfg = load_config(write_config(map={"census_year": 2020, "boundaries": {"hsa": "ALL"}}))
    report = Validator(cfg).run()
    assert not report.ok
    assert any("2020" in err for err in report.errors)
    assert any("map.boundaries.hsa" in warning for warning in report.warnings)


def test_validator_flags_dangling_registry_keys(write_config, edited_package):
    def _point_at_missing_registry(frame):
        frame.loc[frame["id"] == "06037", "registry_id"] = "CA-XX"
        return frame

    root = edited_package("counties.csv", _point_at_missing_registry)
    report = Validator(load_config(write_config(paths={"boundary_root": str(root)}))).run()
    assert report.ok, report.errors
    assert any("Counties with unknown registry: 06037" in warning for warning in report.warnings)


def test_validator_reports_malformed_table(write_config, edited_package):
    root = edited_package("registries.csv", lambda frame: frame.rename(columns={"id": "abbr"}))
    report = Validator(load_config(write_config(paths={"boundary_root": str(root)}))).run()
    assert not report.ok
    assert any("has no 'id' column" in err for err in report.errors)
