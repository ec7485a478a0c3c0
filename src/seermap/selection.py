"""Subset loaded boundary geometries by the resolved presentation lists."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol

from .hierarchy import ResolutionError
from .models import BBox, Layer, LAYERS_FINE_TO_COARSE, NATIONAL_LAYERS, SeerMapError
from .util import format_id_list


_LOGGER = logging.getLogger("seermap.selection")


class NoDataError(SeerMapError):
    """Raised when no data rows are left to map."""


class LevelLoader(Protocol):
    def load_level(self, layer: Layer, states: Iterable[str] | None = None) -> Any: ...


@dataclass(frozen=True, slots=True)
class SelectionScope:
    """State subsets used when loading national vs per-state layers."""

    national_states: frozenset[str]
    data_states: frozenset[str]

    def states_for(self, layer: Layer) -> frozenset[str]:
        return self.national_states if layer in NATIONAL_LAYERS else self.data_states


@dataclass(frozen=True, slots=True)
class SelectedLayer:
    layer: Layer
    ids: tuple[str, ...] = ()
    geometries: Any = None
    bbox: BBox | None = None
    missing_ids: tuple[str, ...] = ()

    @property
    def active(self) -> bool:
        return self.bbox is not None and bool(self.ids)


@dataclass(frozen=True, slots=True)
class BoundarySelection:
    """Data layer plus the selected boundary overlays of one run."""

    level: Layer
    data: SelectedLayer
    layers: Mapping[Layer, SelectedLayer] = field(default_factory=dict)

    def layer(self, layer: Layer) -> SelectedLayer:
        return self.layers.get(layer, SelectedLayer(layer=layer))

    @property
    def active_layers(self) -> tuple[Layer, ...]:
        return tuple(
            layer for layer in LAYERS_FINE_TO_COARSE if self.layer(layer).active
        )


def select_boundaries(
    level: Layer,
    data_ids: tuple[str, ...],
    plists: Mapping[Layer, tuple[str, ...] | None],
    repository: LevelLoader,
    scope: SelectionScope,
) -> BoundarySelection:
    """Subset every layer's geometries by its list and compute bounding boxes.

    Raises `ResolutionError` when a list holds a null id and `NoDataError` when
    the data layer ends up empty.
    """
    _check_plist(level, data_ids)
    data = _select_layer(level, data_ids, repository, scope)
    if not data.ids:
        raise NoDataError(f"No rows left to map: no {level.label} geometry matched the data ids.")

    layers: dict[Layer, SelectedLayer] = {}
    for layer, plist in plists.items():
        if plist is None:
            layers[layer] = SelectedLayer(layer=layer)
            continue
        _check_plist(layer, plist)
        if not plist:
            layers[layer] = SelectedLayer(layer=layer)
            continue
        selected = _select_layer(layer, plist, repository, scope)
        if not selected.ids:
            _LOGGER.warning(
                "None of the %d requested %s boundaries exist in the loaded geometry.",
                len(plist),
                layer.label,
            )
        layers[layer] = selected
    return BoundarySelection(level=level, data=data, layers=layers)


def _check_plist(layer: Layer, plist: tuple[Any, ...]) -> None:
    bad = [idx for idx, item in enumerate(plist) if _is_missing_id(item)]
    if bad:
        raise ResolutionError(
            f"Resolved {layer.label} boundary list contains null ids at positions {bad[:10]}"
        )


def _is_missing_id(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(value != value)
    except TypeError:
        # pandas.NA refuses truth testing.
        return True


def _select_layer(
    layer: Layer,
    ids: tuple[str, ...],
    repository: LevelLoader,
    scope: SelectionScope,
) -> SelectedLayer:
    loaded = repository.load_level(layer, scope.states_for(layer))
    geometries = loaded.geometries
    wanted = set(ids)
    subset = geometries[geometries.index.isin(wanted)]
    selected_ids = tuple(str(item) for item in subset.index)
    missing = tuple(sorted(wanted - set(selected_ids)))
    if missing:
        _LOGGER.info(
            "%d %s ids have no geometry: %s",
            len(missing),
            layer.label,
            format_id_list(list(missing)),
        )
    bbox = BBox.from_bounds(subset.total_bounds) if len(subset) else None
    return SelectedLayer(
        layer=layer,
        ids=selected_ids,
        geometries=subset,
        bbox=bbox,
        missing_ids=missing,
    )
