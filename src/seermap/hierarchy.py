"""Resolve which ids to draw per layer from data ids and boundary policies.

Each (layer, policy) pair maps to one of four primitives:

- ``ALL``: every id loaded for the layer.
- ``DATA``: the ids tied to data records at that layer.
- ``BY_ANCESTOR``: every id whose ancestor at the named layer carries data,
  siblings without data included.
- ``ADD_BY_ANCESTOR``: the layer's data ids plus ``BY_ANCESTOR``; keeps data
  ids that fall outside any named grouping (e.g. counties with no registry).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Sequence

from .models import (
    BoundaryPolicy,
    BoundarySet,
    Layer,
    LocationRecord,
    ReferenceTables,
    SeerMapError,
)
from .policies import LEGAL_POLICIES, PolicySet, participating_layers


_LOGGER = logging.getLogger("seermap.hierarchy")


class ResolutionError(SeerMapError):
    """Raised on an internal inconsistency while resolving boundary lists."""


class _Primitive(Enum):
    NOTHING = "nothing"
    ALL = "all"
    DATA = "data"
    BY_ANCESTOR = "by_ancestor"
    ADD_BY_ANCESTOR = "add_by_ancestor"


@dataclass(frozen=True, slots=True)
class _Strategy:
    primitive: _Primitive
    ancestor: Layer | None = None


def _strategy_for(policy: BoundaryPolicy) -> _Strategy:
    if policy is BoundaryPolicy.NONE:
        return _Strategy(_Primitive.NOTHING)
    if policy is BoundaryPolicy.ALL:
        return _Strategy(_Primitive.ALL)
    if policy is BoundaryPolicy.DATA:
        return _Strategy(_Primitive.DATA)
    if policy in (BoundaryPolicy.STATE, BoundaryPolicy.REGION):
        return _Strategy(_Primitive.BY_ANCESTOR, policy.layer)
    return _Strategy(_Primitive.ADD_BY_ANCESTOR, policy.layer)


RESOLUTION_TABLE: Mapping[tuple[Layer, BoundaryPolicy], _Strategy] = {
    (layer, policy): _strategy_for(policy)
    for layer, legal in LEGAL_POLICIES.items()
    for policy in legal
}


def build_boundary_sets(
    level: Layer,
    records: Sequence[LocationRecord],
    refs: ReferenceTables,
    *,
    data_states: Iterable[str],
    tract_ids: Sequence[str] = (),
) -> dict[Layer, BoundarySet]:
    """Compute AllIds and DataIds for every layer participating at `level`.

    `refs` must already be scoped by the state inclusion flags. National layers
    draw candidates from the whole scoped table; HSA and county from the data
    states only; tracts from the loaded tract geometry.
    """
    states_with_data = set(data_states)
    valid = [record for record in records if record.valid]
    record_ids = {record.canonical_id for record in valid}

    sets: dict[Layer, BoundarySet] = {}
    for layer in participating_layers(level):
        all_ids = _candidate_ids(layer, refs, states_with_data, tract_ids)
        if layer is level:
            wanted = record_ids
        elif level.is_finer_than(layer):
            wanted = {record.ancestors.for_layer(layer) for record in valid} - {None}
        else:
            wanted = {
                item_id
                for item_id in all_ids
                if refs.parent_id(layer, item_id, level) in record_ids
            }
        data_ids = tuple(item_id for item_id in all_ids if item_id in wanted)
        missing = wanted - set(data_ids)
        if missing:
            # Data ids are validated against the loaded layers before this point.
            raise ResolutionError(
                f"{layer.label} data ids missing from loaded boundaries: {sorted(missing)}"
            )
        sets[layer] = BoundarySet(layer=layer, all_ids=all_ids, data_ids=data_ids)
        _LOGGER.debug(
            "%s boundary set: %d loaded, %d with data", layer.label, len(all_ids), len(data_ids)
        )
    return sets


def _candidate_ids(
    layer: Layer,
    refs: ReferenceTables,
    data_states: set[str],
    tract_ids: Sequence[str],
) -> tuple[str, ...]:
    if layer is Layer.TRACT:
        return tuple(tract_id for tract_id in tract_ids if tract_id[:2] in data_states)
    if layer is Layer.REGION:
        return tuple(refs.regions)
    if layer is Layer.STATE:
        return tuple(refs.states)
    if layer is Layer.REGISTRY:
        return tuple(refs.registries)
    if layer is Layer.HSA:
        return tuple(k for k, row in refs.hsas.items() if row.state_id in data_states)
    return tuple(k for k, row in refs.counties.items() if row.state_id in data_states)


def resolve(
    level: Layer,
    boundary_sets: Mapping[Layer, BoundarySet],
    refs: ReferenceTables,
    policies: PolicySet,
) -> dict[Layer, tuple[str, ...]]:
    """Return the presentation list (ids to draw) for every participating layer."""
    plists: dict[Layer, tuple[str, ...]] = {}
    for layer in participating_layers(level):
        policy = policies.get(layer)
        strategy = RESOLUTION_TABLE.get((layer, policy))
        if strategy is None:
            raise ResolutionError(f"Policy {policy.value} is not valid for {layer.label} boundaries")
        strategy = _apply_exceptions(level, layer, strategy, policies)
        plists[layer] = _run_strategy(layer, strategy, boundary_sets, refs)
        _LOGGER.debug(
            "%s boundaries: policy=%s -> %d ids", layer.label, policy.value, len(plists[layer])
        )
    return plists


def _apply_exceptions(
    level: Layer,
    layer: Layer,
    strategy: _Strategy,
    policies: PolicySet,
) -> _Strategy:
    # With state data and no full state outline, "all registries" means only
    # those in the states actually rendered.
    if (
        level is Layer.STATE
        and layer is Layer.REGISTRY
        and strategy.primitive is _Primitive.ALL
        and policies.get(Layer.STATE) in (BoundaryPolicy.DATA, BoundaryPolicy.NONE)
    ):
        return _Strategy(_Primitive.BY_ANCESTOR, Layer.STATE)
    return strategy


def _run_strategy(
    layer: Layer,
    strategy: _Strategy,
    boundary_sets: Mapping[Layer, BoundarySet],
    refs: ReferenceTables,
) -> tuple[str, ...]:
    current = boundary_sets[layer]
    if strategy.primitive is _Primitive.NOTHING:
        return ()
    if strategy.primitive is _Primitive.ALL:
        return current.all_ids
    if strategy.primitive is _Primitive.DATA:
        return current.data_ids

    ancestor = strategy.ancestor
    if ancestor is None or ancestor not in boundary_sets:
        raise ResolutionError(
            f"{layer.label} boundaries need {ancestor.value if ancestor else 'an ancestor'} "
            "data ids that were not resolved"
        )
    by_ancestor = _by_ancestor(layer, ancestor, boundary_sets, refs)
    if strategy.primitive is _Primitive.BY_ANCESTOR:
        return by_ancestor
    keep = set(current.data_ids) | set(by_ancestor)
    return tuple(item_id for item_id in current.all_ids if item_id in keep)


def _by_ancestor(
    layer: Layer,
    ancestor: Layer,
    boundary_sets: Mapping[Layer, BoundarySet],
    refs: ReferenceTables,
) -> tuple[str, ...]:
    targets = set(boundary_sets[ancestor].data_ids)
    return tuple(
        item_id
        for item_id in boundary_sets[layer].all_ids
        if refs.parent_id(layer, item_id, ancestor) in targets
    )
