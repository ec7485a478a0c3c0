"""Value classification into categories, colors, and legend labels."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Sequence


MAX_CATEGORIES = 11


class CategoryMode(str, Enum):
    COMPUTED = "computed"
    BREAKPOINTS = "breakpoints"
    INDEX = "index"
    COLORS = "colors"


class CategorizationError(ValueError):
    """Raised when values cannot be categorized with the requested settings."""


@dataclass(frozen=True, slots=True)
class Categorization:
    """Per-record category index (0-based) plus per-category color and label."""

    indices: tuple[int, ...]
    colors: tuple[str, ...]
    labels: tuple[str, ...]
    breakpoints: tuple[float, ...] = ()

    @property
    def count(self) -> int:
        return len(self.colors)

    def color_of(self, position: int) -> str:
        return self.colors[self.indices[position]]


def parse_value(value: Any, mode: CategoryMode) -> Any:
    """Normalize one raw value for `mode`; None when it is missing or unusable."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value or value.upper() in {"NA", "NAN", "NULL"}:
            return None

    if mode is CategoryMode.COLORS:
        colors = _require_matplotlib_colors()
        text = str(value)
        return text if colors.is_color_like(text) else None

    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    if mode is CategoryMode.INDEX:
        if not number.is_integer() or not 1 <= number <= MAX_CATEGORIES:
            return None
        return int(number)
    return number


def categorize(
    values: Sequence[Any],
    *,
    mode: CategoryMode,
    count: int = 5,
    breakpoints: Sequence[float] = (),
    labels: Sequence[str] = (),
    palette: str = "-RdYlBu",
    number_format: str = "{:.1f}",
) -> Categorization:
    """Assign every (already parsed) value to a category."""
    if not values:
        raise CategorizationError("No values to categorize")
    if mode is CategoryMode.COMPUTED:
        indices, edges = _quantile_categories(values, count)
        default_labels = _range_labels(edges, number_format)
    elif mode is CategoryMode.BREAKPOINTS:
        indices, edges = _breakpoint_categories(values, breakpoints)
        default_labels = _breakpoint_labels(edges, number_format)
    elif mode is CategoryMode.INDEX:
        n = max(int(v) for v in values)
        indices = tuple(int(v) - 1 for v in values)
        edges = ()
        default_labels = tuple(f"Category {i}" for i in range(1, n + 1))
    else:
        return _color_categories(values, labels)

    n = len(default_labels)
    final_labels = _apply_labels(default_labels, labels)
    return Categorization(
        indices=indices,
        colors=palette_colors(palette, n),
        labels=final_labels,
        breakpoints=tuple(edges),
    )


def _quantile_categories(values: Sequence[Any], count: int) -> tuple[tuple[int, ...], tuple[float, ...]]:
    pd = _require_pandas()
    series = pd.Series([float(v) for v in values])
    if series.nunique() == 1:
        only = float(series.iloc[0])
        return tuple(0 for _ in values), (only, only)
    codes, edges = pd.qcut(series, q=count, labels=False, retbins=True, duplicates="drop")
    return tuple(int(c) for c in codes), tuple(float(e) for e in edges)


def _breakpoint_categories(
    values: Sequence[Any],
    breakpoints: Sequence[float],
) -> tuple[tuple[int, ...], tuple[float, ...]]:
    if not breakpoints:
        raise CategorizationError("Breakpoint categorization needs at least one breakpoint")
    pd = _require_pandas()
    bins = [-math.inf, *breakpoints, math.inf]
    codes = pd.cut(pd.Series([float(v) for v in values]), bins=bins, labels=False, right=True)
    return tuple(int(c) for c in codes), tuple(float(b) for b in breakpoints)


def _color_categories(values: Sequence[Any], labels: Sequence[str]) -> Categorization:
    colors: list[str] = []
    for value in values:
        if value not in colors:
            colors.append(str(value))
    indices = tuple(colors.index(str(v)) for v in values)
    return Categorization(
        indices=indices,
        colors=tuple(colors),
        labels=_apply_labels(tuple(colors), labels),
    )


def _range_labels(edges: Sequence[float], number_format: str) -> tuple[str, ...]:
    if len(edges) == 2 and edges[0] == edges[1]:
        return (number_format.format(edges[0]),)
    return tuple(
        f"{number_format.format(lo)} - {number_format.format(hi)}"
        for lo, hi in zip(edges, edges[1:])
    )


def _breakpoint_labels(breakpoints: Sequence[float], number_format: str) -> tuple[str, ...]:
    labels = [f"<= {number_format.format(breakpoints[0])}"]
    for lo, hi in zip(breakpoints, breakpoints[1:]):
        labels.append(f"{number_format.format(lo)} - {number_format.format(hi)}")
    labels.append(f"> {number_format.format(breakpoints[-1])}")
    return tuple(labels)


def _apply_labels(default_labels: tuple[str, ...], labels: Sequence[str]) -> tuple[str, ...]:
    if not labels:
        return default_labels
    if len(labels) != len(default_labels):
        raise CategorizationError(
            f"Expected {len(default_labels)} category labels, got {len(labels)}"
        )
    return tuple(labels)


def palette_colors(name: str, n: int) -> tuple[str, ...]:
    """Sample `n` hex colors from a matplotlib colormap; a leading '-' reverses it."""
    if n < 1:
        raise CategorizationError("Palette needs at least one color")
    return _palette_colors(name.strip(), n)


@lru_cache(maxsize=64)
def _palette_colors(name: str, n: int) -> tuple[str, ...]:
    reverse = name.startswith("-")
    cmap_name = name[1:] if reverse else name
    matplotlib = _require_matplotlib()
    try:
        cmap = matplotlib.colormaps[cmap_name]
    except KeyError as exc:
        raise CategorizationError(f"Unknown color palette '{cmap_name}'") from exc
    if n == 1:
        positions = [0.5]
    else:
        positions = [i / (n - 1) for i in range(n)]
    if reverse:
        positions = [1.0 - p for p in positions]
    colors = matplotlib.colors
    return tuple(colors.to_hex(cmap(p)) for p in positions)


def _require_pandas() -> Any:
    try:
        import pandas as pd
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("pandas is required for value categorization") from exc
    return pd


def _require_matplotlib() -> Any:
    try:
        import matplotlib
        import matplotlib.colors  # noqa: F401
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for color palettes") from exc
    return matplotlib


def _require_matplotlib_colors() -> Any:
    return _require_matplotlib().colors
