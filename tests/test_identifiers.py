"""
Identifier classification: level detection, canonical ids, and fatal formats.
"""
import pytest

from seermap.identifiers import (
    AmbiguousIdError,
    ClassificationError,
    InvalidIdLengthError,
    MixedIdFormatError,
    canonicalize,
    classify,
    clean_raw_id,
    derive_ancestors,
)
from seermap.models import IssueCode, Layer


class TestLevelDetection:
    def test_five_digit_ids_are_counties(self, refs):
        result = classify(["06037", "06073"], refs)
        assert result.level is Layer.COUNTY
        assert result.canonical_ids == ("06037", "06073")
        states = {derive_ancestors(result.level, cid, refs).state_id for cid in result.canonical_ids}
        assert states == {"06"}

    def test_short_state_codes_are_padded(self, refs):
        result = classify(["1", "2"], refs)
        assert result.level is Layer.STATE
        assert result.canonical_ids == ("01", "02")

    def test_registry_names_match_aliases(self, refs):
        result = classify(["Los Angeles", "Hawaii"], refs)
        assert result.level is Layer.REGISTRY
        assert result.canonical_ids == ("CA-LA", "HI")
        assert result.issues == ()

    def test_registry_abbreviation_matches_case_insensitively(self, refs):
        result = classify(["ct", "ca-sf"], refs)
        assert result.canonical_ids == ("CT", "CA-SF")

    def test_unmatched_registry_name_is_dropped_with_issue(self, refs):
        result = classify(["Connecticut", "Atlantis"], refs)
        assert result.canonical_ids == ("CT", None)
        assert [issue.code for issue in result.issues] == [IssueCode.UNMATCHED_REGISTRY_NAME]
        assert result.matched_count == 1

    def test_short_ids_that_are_not_states_fall_back_to_hsa(self, refs):
        result = classify(["1", "3"], refs)
        assert result.level is Layer.HSA
        assert result.canonical_ids == ("001", "003")

    def test_three_digit_ids_are_hsas(self, refs):
        assert classify(["010", "30"], refs).level is Layer.HSA

    def test_four_digit_ids_are_counties_missing_a_zero(self, refs):
        result = classify(["6037", "1001"], refs)
        assert result.level is Layer.COUNTY
        assert result.canonical_ids == ("06037", "01001")

    def test_tract_ids(self, refs):
        result = classify(["6037000100", "01001000200"], refs)
        assert result.level is Layer.TRACT
        assert result.canonical_ids == ("06037000100", "01001000200")

    def test_missing_ids_become_none(self, refs):
        result = classify(["06037", None, "  "], refs)
        assert result.canonical_ids == ("06037", None, None)
        assert [issue.code for issue in result.issues] == [IssueCode.MISSING_ID, IssueCode.MISSING_ID]


class TestFatalFormats:
    def test_mixed_numeric_and_names(self, refs):
        with pytest.raises(MixedIdFormatError):
            classify(["06037", "Hawaii"], refs)

    def test_unusable_digit_count(self, refs):
        with pytest.raises(InvalidIdLengthError):
            classify(["0603701"], refs)

    def test_short_id_matching_nothing(self, refs):
        with pytest.raises(AmbiguousIdError):
            classify(["1", "7"], refs)

    def test_all_ids_missing(self, refs):
        with pytest.raises(ClassificationError):
            classify([None, "NA"], refs)


def test_classification_is_idempotent(refs):
    raw = ["6037", "06073", "1001"]
    first = classify(raw, refs)
    second = classify(raw, refs)
    assert first == second
    again = classify(list(first.canonical_ids), refs)
    assert again.level is first.level
    assert again.canonical_ids == first.canonical_ids


@pytest.mark.parametrize(
    "canonical,level",
    [("06", Layer.STATE), ("003", Layer.HSA), ("06037", Layer.COUNTY), ("06037000100", Layer.TRACT)],
)
def test_canonical_ids_are_fixed_points(canonical, level):
    assert canonicalize(canonical, level) == canonical


def test_canonicalize_rejects_overlong_ids():
    with pytest.raises(ValueError):
        canonicalize("123", Layer.STATE)


def test_clean_raw_id_handles_float_ids():
    assert clean_raw_id(6037.0) == "6037"
    assert clean_raw_id(float("nan")) is None
    assert clean_raw_id(" NULL ") is None


def test_ancestors_of_a_tract(refs):
    ancestors = derive_ancestors(Layer.TRACT, "06037000100", refs)
    assert ancestors.state_id == "06"
    assert ancestors.county_id == "06037"
    assert ancestors.hsa_id == "003"
    assert ancestors.registry_id == "CA-LA"
    assert ancestors.region_id == "4"


def test_ancestors_of_county_without_registry(refs):
    ancestors = derive_ancestors(Layer.COUNTY, "01001", refs)
    assert ancestors.registry_id is None
    assert ancestors.hsa_id == "001"
    assert ancestors.region_id == "3"
