"""Domain models shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class SeerMapError(Exception):
    """Base class for fatal errors that abort a mapping run."""


class Layer(str, Enum):
    """Administrative layers, declared from finest to coarsest."""

    TRACT = "tract"
    COUNTY = "county"
    HSA = "hsa"
    REGISTRY = "registry"
    STATE = "state"
    REGION = "region"

    @property
    def rank(self) -> int:
        return _LAYER_ORDER.index(self)

    def is_finer_than(self, other: Layer) -> bool:
        return self.rank < other.rank

    @property
    def label(self) -> str:
        return _LAYER_LABELS[self]


_LAYER_ORDER = (
    Layer.TRACT,
    Layer.COUNTY,
    Layer.HSA,
    Layer.REGISTRY,
    Layer.STATE,
    Layer.REGION,
)
_LAYER_LABELS = {
    Layer.TRACT: "census tract",
    Layer.COUNTY: "county",
    Layer.HSA: "health service area",
    Layer.REGISTRY: "Seer registry",
    Layer.STATE: "state",
    Layer.REGION: "region",
}

LAYERS_FINE_TO_COARSE: tuple[Layer, ...] = _LAYER_ORDER
DATA_LAYERS: frozenset[Layer] = frozenset(_LAYER_ORDER) - {Layer.REGION}
# Loaded for the whole (scoped) country; the rest are loaded per data state.
NATIONAL_LAYERS: frozenset[Layer] = frozenset({Layer.REGION, Layer.STATE, Layer.REGISTRY})


class BoundaryPolicy(str, Enum):
    NONE = "NONE"
    DATA = "DATA"
    COUNTY = "COUNTY"
    HSA = "HSA"
    SEER = "SEER"
    STATE = "STATE"
    REGION = "REGION"
    ALL = "ALL"

    @property
    def layer(self) -> Layer | None:
        return _POLICY_LAYERS.get(self.value)


class ClipPolicy(str, Enum):
    NONE = "NONE"
    DATA = "DATA"
    HSA = "HSA"
    SEER = "SEER"
    STATE = "STATE"
    REGION = "REGION"

    @property
    def layer(self) -> Layer | None:
        return _POLICY_LAYERS.get(self.value)


_POLICY_LAYERS = {
    "COUNTY": Layer.COUNTY,
    "HSA": Layer.HSA,
    "SEER": Layer.REGISTRY,
    "STATE": Layer.STATE,
    "REGION": Layer.REGION,
}


class IssueCode(str, Enum):
    MISSING_ID = "MissingId"
    MISSING_VALUE = "MissingValue"
    INVALID_VALUE = "InvalidValue"
    DUPLICATE_ID = "DuplicateId"
    UNMATCHED_REGISTRY_NAME = "UnmatchedRegistryName"
    INVALID_STATE_CODE = "InvalidStateCode"
    UNMATCHED_BOUNDARY = "UnmatchedBoundary"
    INVALID_POLICY = "InvalidPolicy"
    CLIP_DOWNGRADED = "ClipDowngraded"
    INVALID_PARAMETER = "InvalidParameter"


@dataclass(frozen=True, slots=True)
class Issue:
    """Recoverable problem recorded during a run."""

    code: IssueCode
    message: str
    raw_id: str | None = None

    def format(self) -> str:
        return f"{self.code.value}: {self.message}"


@dataclass(frozen=True, slots=True)
class RegionRow:
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class StateRow:
    id: str
    abbr: str
    name: str
    region_id: str
    territory: bool = False
    county_count: int = 0

    @property
    def in_lower48(self) -> bool:
        return not self.territory and self.abbr not in {"AK", "HI"}


@dataclass(frozen=True, slots=True)
class RegistryRow:
    id: str
    name: str
    state_id: str
    aliases: tuple[str, ...] = ()
    county_count: int = 0


@dataclass(frozen=True, slots=True)
class HsaRow:
    id: str
    name: str
    state_id: str
    registry_id: str | None = None
    county_count: int = 0


@dataclass(frozen=True, slots=True)
class CountyRow:
    id: str
    name: str
    state_id: str
    hsa_id: str | None = None
    registry_id: str | None = None
    tract_count: int = 0


@dataclass(frozen=True, slots=True)
class TractRow:
    """Tract attributes; parents are encoded in the 11-digit id."""

    id: str

    @property
    def county_id(self) -> str:
        return self.id[:5]

    @property
    def state_id(self) -> str:
        return self.id[:2]


@dataclass(frozen=True, slots=True)
class ReferenceTables:
    """The five reference tables of one census-year boundary package."""

    regions: Mapping[str, RegionRow]
    states: Mapping[str, StateRow]
    registries: Mapping[str, RegistryRow]
    hsas: Mapping[str, HsaRow]
    counties: Mapping[str, CountyRow]

    def table(self, layer: Layer) -> Mapping[str, Any]:
        if layer is Layer.REGION:
            return self.regions
        if layer is Layer.STATE:
            return self.states
        if layer is Layer.REGISTRY:
            return self.registries
        if layer is Layer.HSA:
            return self.hsas
        if layer is Layer.COUNTY:
            return self.counties
        raise ValueError("Tract rows are loaded with tract geometry, not with the reference tables")

    def parent_id(self, layer: Layer, item_id: str, ancestor: Layer) -> str | None:
        """Follow foreign keys from one id up to `ancestor`; None when unmapped."""
        if ancestor is layer:
            return item_id
        if not layer.is_finer_than(ancestor):
            raise ValueError(f"{ancestor.value} is not an ancestor of {layer.value}")

        if layer is Layer.TRACT:
            if ancestor is Layer.STATE:
                return item_id[:2]
            return self.parent_id(Layer.COUNTY, item_id[:5], ancestor)

        state_id: str | None
        if layer is Layer.COUNTY:
            county = self.counties.get(item_id)
            if county is None:
                # FIPS prefix still identifies the state.
                state_id = item_id[:2]
                return state_id if ancestor is Layer.STATE else self._via_state(state_id, ancestor)
            if ancestor is Layer.HSA:
                return _known(county.hsa_id, self.hsas)
            if ancestor is Layer.REGISTRY:
                return _known(county.registry_id, self.registries)
            state_id = county.state_id
        elif layer is Layer.HSA:
            hsa = self.hsas.get(item_id)
            if hsa is None:
                return None
            if ancestor is Layer.REGISTRY:
                return _known(hsa.registry_id, self.registries)
            state_id = hsa.state_id
        elif layer is Layer.REGISTRY:
            registry = self.registries.get(item_id)
            if registry is None:
                return None
            state_id = registry.state_id
        else:
            state_id = item_id

        if ancestor is Layer.STATE:
            return state_id
        return self._via_state(state_id, ancestor)

    def _via_state(self, state_id: str, ancestor: Layer) -> str | None:
        if ancestor is not Layer.REGION:
            return None
        state = self.states.get(state_id)
        return state.region_id if state is not None else None

    def scoped(self, *, lower48_only: bool, include_territory: bool) -> ReferenceTables:
        """Prune the state table by the scope flags and drop dependent rows."""
        states = {
            sid: row
            for sid, row in self.states.items()
            if (include_territory or not row.territory) and (not lower48_only or row.in_lower48)
        }
        region_ids = {row.region_id for row in states.values()}
        return ReferenceTables(
            regions={rid: row for rid, row in self.regions.items() if rid in region_ids},
            states=states,
            registries={k: v for k, v in self.registries.items() if v.state_id in states},
            hsas={k: v for k, v in self.hsas.items() if v.state_id in states},
            counties={k: v for k, v in self.counties.items() if v.state_id in states},
        )

    def match_registry_alias(self, name: str) -> str | None:
        """First registry whose alias is contained in `name` (case-insensitive)."""
        needle = name.strip().upper()
        for registry in self.registries.values():
            for alias in registry.aliases:
                if alias.strip().upper() in needle:
                    return registry.id
        return None


def _known(item_id: str | None, table: Mapping[str, Any]) -> str | None:
    # Dangling foreign keys leave the hierarchy partial.
    return item_id if item_id is not None and item_id in table else None


@dataclass(frozen=True, slots=True)
class AncestorIds:
    state_id: str
    region_id: str | None = None
    registry_id: str | None = None
    hsa_id: str | None = None
    county_id: str | None = None

    def for_layer(self, layer: Layer) -> str | None:
        if layer is Layer.STATE:
            return self.state_id
        if layer is Layer.REGION:
            return self.region_id
        if layer is Layer.REGISTRY:
            return self.registry_id
        if layer is Layer.HSA:
            return self.hsa_id
        if layer is Layer.COUNTY:
            return self.county_id
        return None


@dataclass(frozen=True, slots=True)
class DataRow:
    """One row of the user's table, before any validation."""

    row_number: int
    raw_id: str | None
    value: Any
    hatch_value: Any = None


@dataclass(frozen=True, slots=True)
class LocationRecord:
    raw_id: str
    canonical_id: str
    level: Layer
    value: Any
    ancestors: AncestorIds
    row_number: int = 0
    hatch_value: Any = None
    valid: bool = True

    @property
    def state_id(self) -> str:
        return self.ancestors.state_id


@dataclass(frozen=True, slots=True)
class BBox:
    minx: float
    miny: float
    maxx: float
    maxy: float

    @classmethod
    def from_bounds(cls, bounds: Any) -> BBox:
        minx, miny, maxx, maxy = (float(v) for v in bounds)
        return cls(minx=minx, miny=miny, maxx=maxx, maxy=maxy)

    def union(self, other: BBox) -> BBox:
        return BBox(
            minx=min(self.minx, other.minx),
            miny=min(self.miny, other.miny),
            maxx=max(self.maxx, other.maxx),
            maxy=max(self.maxy, other.maxy),
        )

    @property
    def width(self) -> float:
        return self.maxx - self.minx

    @property
    def height(self) -> float:
        return self.maxy - self.miny


@dataclass(frozen=True, slots=True)
class BoundarySet:
    """Per-layer candidate ids: everything loaded, and the part tied to data."""

    layer: Layer
    all_ids: tuple[str, ...]
    data_ids: tuple[str, ...] = field(default_factory=tuple)
