"""Location identifier classification and canonicalization."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Sequence

from .models import AncestorIds, Issue, IssueCode, Layer, ReferenceTables, SeerMapError
from .util import format_id_list


_LOGGER = logging.getLogger("seermap.identifiers")

_NUMERIC_ID = re.compile(r"^[0-9]+$")

# Canonical digit width per numeric layer.
CANONICAL_WIDTHS = {
    Layer.STATE: 2,
    Layer.HSA: 3,
    Layer.COUNTY: 5,
    Layer.TRACT: 11,
}


class ClassificationError(SeerMapError):
    """Raised when the id column cannot be assigned to one layer."""


class MixedIdFormatError(ClassificationError):
    """Raised when numeric and non-numeric ids are mixed in one dataset."""


class InvalidIdLengthError(ClassificationError):
    """Raised when numeric ids have a digit count no layer uses."""


class AmbiguousIdError(ClassificationError):
    """Raised when short numeric ids match neither states nor HSAs."""


@dataclass(frozen=True, slots=True)
class Classification:
    """Detected layer plus canonical ids aligned with the input order."""

    level: Layer
    canonical_ids: tuple[str | None, ...]
    issues: tuple[Issue, ...] = ()

    @property
    def matched_count(self) -> int:
        return sum(1 for cid in self.canonical_ids if cid is not None)


def clean_raw_id(raw_id: Any) -> str | None:
    """Strip an id to text, or None for blanks and missing values."""
    if raw_id is None:
        return None
    if isinstance(raw_id, float):
        if math.isnan(raw_id):
            return None
        if raw_id.is_integer():
            raw_id = int(raw_id)
    text = str(raw_id).strip()
    if not text or text.upper() in {"NA", "NAN", "NULL"}:
        return None
    return text


def canonicalize(raw_id: str, level: Layer) -> str:
    """Normalize one id to the fixed-width form used by `level`."""
    text = raw_id.strip()
    if level is Layer.REGISTRY:
        return text.upper()
    width = CANONICAL_WIDTHS.get(level)
    if width is None:
        raise ValueError(f"Layer {level.value} has no data identifiers")
    if not _NUMERIC_ID.match(text):
        raise ValueError(f"Expected numeric id for {level.label}: '{raw_id}'")
    if len(text) > width:
        raise ValueError(f"Id '{raw_id}' is longer than {width} digits for {level.label}")
    return text.zfill(width)


def classify(raw_ids: Sequence[Any], refs: ReferenceTables) -> Classification:
    """Detect the layer of a whole id column and canonicalize every id.

    Missing ids and unmatched registry names come back as None with an issue
    attached; mixed formats and unusable digit counts are fatal.
    """
    issues: list[Issue] = []
    cleaned: list[str | None] = []
    for idx, raw in enumerate(raw_ids, start=1):
        text = clean_raw_id(raw)
        if text is None:
            issues.append(
                Issue(IssueCode.MISSING_ID, f"Row {idx}: location id is missing; row dropped.")
            )
        cleaned.append(text)

    present = [text for text in cleaned if text is not None]
    if not present:
        raise ClassificationError("No location ids to classify.")

    numeric_flags = [bool(_NUMERIC_ID.match(text)) for text in present]
    if all(numeric_flags):
        level = _detect_numeric_level(present, refs)
        canonical = tuple(
            canonicalize(text, level) if text is not None else None for text in cleaned
        )
    elif not any(numeric_flags):
        level = Layer.REGISTRY
        canonical = tuple(_match_registry(text, refs, issues) for text in cleaned)
    else:
        numeric_examples = [text for text, flag in zip(present, numeric_flags) if flag]
        other_examples = [text for text, flag in zip(present, numeric_flags) if not flag]
        raise MixedIdFormatError(
            "Location ids mix numeric and non-numeric formats: "
            f"numeric [{format_id_list(numeric_examples, limit=3)}], "
            f"other [{format_id_list(other_examples, limit=3)}]"
        )

    _LOGGER.debug("Classified %d ids as %s", len(present), level.label)
    return Classification(level=level, canonical_ids=canonical, issues=tuple(issues))


def _detect_numeric_level(ids: Sequence[str], refs: ReferenceTables) -> Layer:
    width = max(len(text) for text in ids)
    if width <= 2:
        return _state_or_hsa(ids, refs)
    if width == 3:
        return Layer.HSA
    if width in (4, 5):
        return Layer.COUNTY
    if width in (10, 11):
        return Layer.TRACT
    raise InvalidIdLengthError(
        f"Numeric location ids with {width} digits do not match any layer "
        "(expected 1-2 state, 3 HSA, 4-5 county, or 10-11 tract digits)."
    )


def _state_or_hsa(ids: Sequence[str], refs: ReferenceTables) -> Layer:
    # HSA numbers overlap the state code space once leading zeros are lost.
    not_states = sorted({text for text in ids if text.zfill(2) not in refs.states})
    if not not_states:
        return Layer.STATE
    if all(text.zfill(3) in refs.hsas for text in not_states):
        _LOGGER.info(
            "Short numeric ids %s are not state codes; classifying as health service areas.",
            format_id_list(not_states, limit=5),
        )
        return Layer.HSA
    unknown = [text for text in not_states if text.zfill(3) not in refs.hsas]
    raise AmbiguousIdError(
        "Short numeric ids match neither a state code nor an HSA number: "
        + format_id_list(unknown)
        + ". Correct the ids or supply zero-padded codes."
    )


def _match_registry(text: str | None, refs: ReferenceTables, issues: list[Issue]) -> str | None:
    if text is None:
        return None
    upper = text.upper()
    if upper in refs.registries:
        return upper
    alias_match = refs.match_registry_alias(text)
    if alias_match is not None:
        _LOGGER.debug("Registry name '%s' matched alias of %s", text, alias_match)
        return alias_match
    issues.append(
        Issue(
            IssueCode.UNMATCHED_REGISTRY_NAME,
            f"Registry name '{text}' does not match any registry abbreviation or alias; row dropped.",
            raw_id=text,
        )
    )
    return None


def derive_ancestors(level: Layer, canonical_id: str, refs: ReferenceTables) -> AncestorIds | None:
    """Resolve the parent ids of one canonical id; None when its state is unknown."""
    state_id = refs.parent_id(level, canonical_id, Layer.STATE)
    if state_id is None:
        return None

    def _up(ancestor: Layer) -> str | None:
        if not level.is_finer_than(ancestor):
            return None
        return refs.parent_id(level, canonical_id, ancestor)

    return AncestorIds(
        state_id=state_id,
        region_id=_up(Layer.REGION),
        registry_id=_up(Layer.REGISTRY),
        hsa_id=_up(Layer.HSA),
        county_id=_up(Layer.COUNTY),
    )
