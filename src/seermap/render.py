"""Map rendering: draw command building and matplotlib painting."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Sequence

from .categorize import Categorization
from .config import RenderConfig
from .extent import MapExtent
from .models import Layer, LocationRecord
from .selection import BoundarySelection


_LOGGER = logging.getLogger("seermap.render")

# Border overlays are painted fine to coarse so coarser lines sit on top.
BORDER_PAINT_ORDER = (
    Layer.TRACT,
    Layer.COUNTY,
    Layer.HSA,
    Layer.REGISTRY,
    Layer.STATE,
    Layer.REGION,
)
_EXTENT_MARGIN = 0.02
_LEGEND_EDGE_COLOR = "#666666"


class DrawKind(str, Enum):
    NO_DATA = "no_data"
    FILL = "fill"
    HATCH = "hatch"
    BORDER = "border"


@dataclass(frozen=True, slots=True)
class DrawCommand:
    layer: Layer
    kind: DrawKind
    ids: tuple[str, ...]
    fill_colors: tuple[str, ...] | None
    border_color: str
    line_width: float
    hatch: str | None = None
    zorder: int = 0


@dataclass(frozen=True, slots=True)
class LegendSpec:
    labels: tuple[str, ...]
    colors: tuple[str, ...]
    columns: int
    position: str
    title: str | None = None
    font_size: float = 8.0
    hatch_label: str | None = None
    hatch_pattern: str | None = None
    hatch_color: str | None = None
    no_data_label: str | None = None
    no_data_color: str | None = None


def build_draw_commands(
    selection: BoundarySelection,
    categorization: Categorization,
    records: Sequence[LocationRecord],
    *,
    hatched: Sequence[str],
    render_cfg: RenderConfig,
) -> tuple[DrawCommand, ...]:
    """Turn a boundary selection into ordered paint commands.

    `records` must be the records that were categorized, in the same order.
    """
    if len(records) != len(categorization.indices):
        raise ValueError("Categorization does not match the mapped records")
    style = render_cfg.style
    color_by_id = {
        record.canonical_id: categorization.color_of(pos) for pos, record in enumerate(records)
    }
    data_ids = tuple(item for item in selection.data.ids if item in color_by_id)
    commands: list[DrawCommand] = []
    legend_cfg = render_cfg.legend
    if legend_cfg.no_data_label is not None:
        level_ids = selection.layer(selection.level).ids
        empty_ids = tuple(item for item in level_ids if item not in color_by_id)
        if empty_ids:
            commands.append(
                DrawCommand(
                    layer=selection.level,
                    kind=DrawKind.NO_DATA,
                    ids=empty_ids,
                    fill_colors=tuple(legend_cfg.no_data_color for _ in empty_ids),
                    border_color=style.data_border_color,
                    line_width=style.data_line_width,
                    zorder=0,
                )
            )
    commands.append(
        DrawCommand(
            layer=selection.level,
            kind=DrawKind.FILL,
            ids=data_ids,
            fill_colors=tuple(color_by_id[item] for item in data_ids),
            border_color=style.data_border_color,
            line_width=style.data_line_width,
            zorder=1,
        )
    )

    hatched_set = set(hatched)
    hatch_ids = tuple(item for item in data_ids if item in hatched_set)
    if hatch_ids:
        hatch_cfg = render_cfg.hatch
        commands.append(
            DrawCommand(
                layer=selection.level,
                kind=DrawKind.HATCH,
                ids=hatch_ids,
                fill_colors=None,
                border_color=hatch_cfg.color,
                line_width=hatch_cfg.line_width,
                hatch=hatch_cfg.hatch,
                zorder=2,
            )
        )

    for zorder, layer in enumerate(BORDER_PAINT_ORDER, start=3):
        selected = selection.layer(layer)
        if not selected.active:
            continue
        commands.append(
            DrawCommand(
                layer=layer,
                kind=DrawKind.BORDER,
                ids=selected.ids,
                fill_colors=None,
                border_color=style.border_colors[layer],
                line_width=style.line_widths[layer],
                zorder=zorder,
            )
        )
    return tuple(commands)


def build_legend(categorization: Categorization, render_cfg: RenderConfig) -> LegendSpec | None:
    legend_cfg = render_cfg.legend
    if not legend_cfg.enabled:
        return None
    hatch_cfg = render_cfg.hatch
    hatch_label: str | None = None
    if hatch_cfg.enabled:
        hatch_label = f"value {hatch_cfg.comparison} {hatch_cfg.threshold:g}"
    return LegendSpec(
        labels=categorization.labels,
        colors=categorization.colors,
        columns=legend_cfg.columns,
        position=legend_cfg.position,
        title=legend_cfg.title,
        font_size=legend_cfg.font_size,
        hatch_label=hatch_label,
        hatch_pattern=hatch_cfg.hatch if hatch_cfg.enabled else None,
        hatch_color=hatch_cfg.color if hatch_cfg.enabled else None,
        no_data_label=legend_cfg.no_data_label,
        no_data_color=legend_cfg.no_data_color,
    )


def padded_limits(extent: MapExtent, margin: float = _EXTENT_MARGIN) -> tuple[float, float, float, float]:
    x0, x1 = extent.x_range
    y0, y1 = extent.y_range
    pad = max(x1 - x0, y1 - y0) * margin
    if pad <= 0:
        pad = 1.0
    return (x0 - pad, x1 + pad, y0 - pad, y1 + pad)


class MapRenderer:
    """Paints draw commands onto one static image."""

    def __init__(self, cfg: RenderConfig) -> None:
        self.cfg = cfg

    def render(
        self,
        commands: Sequence[DrawCommand],
        *,
        selection: BoundarySelection,
        extent: MapExtent,
        legend: LegendSpec | None,
        output_path: Path,
    ) -> Path:
        plt = _require_pyplot()
        image = self.cfg.image
        rc = {"hatch.linewidth": self.cfg.hatch.line_width}
        with plt.rc_context(rc):
            fig, ax = plt.subplots(
                figsize=(image.width_px / image.dpi, image.height_px / image.dpi),
                dpi=image.dpi,
            )
            try:
                _apply_background(fig, ax, image.background)
                for command in commands:
                    self._paint(ax, command, selection)

                x0, x1, y0, y1 = padded_limits(extent)
                ax.set_xlim(x0, x1)
                ax.set_ylim(y0, y1)
                ax.set_aspect("equal")
                ax.set_axis_off()
                if legend is not None:
                    _draw_legend(ax, legend)
                if self.cfg.title:
                    ax.set_title("\n".join(self.cfg.title), fontsize=11)

                output_path.parent.mkdir(parents=True, exist_ok=True)
                fig.savefig(
                    output_path,
                    dpi=image.dpi,
                    format=image.format,
                    transparent=image.background.casefold() == "transparent",
                    bbox_inches="tight",
                )
            finally:
                plt.close(fig)
        _LOGGER.debug("Rendered %d draw commands to %s", len(commands), output_path)
        return output_path

    def _paint(self, ax: Any, command: DrawCommand, selection: BoundarySelection) -> None:
        frame = _frame_for(command, selection)
        if frame is None or not len(frame):
            return
        if command.kind in (DrawKind.FILL, DrawKind.NO_DATA):
            assert command.fill_colors is not None
            groups: dict[str, list[str]] = {}
            for item_id, color in zip(command.ids, command.fill_colors):
                groups.setdefault(color, []).append(item_id)
            for color, ids in groups.items():
                frame.loc[ids].plot(
                    ax=ax,
                    color=color,
                    edgecolor=command.border_color,
                    linewidth=command.line_width,
                    zorder=command.zorder,
                )
        elif command.kind is DrawKind.HATCH:
            frame.plot(
                ax=ax,
                facecolor="none",
                edgecolor=command.border_color,
                hatch=command.hatch,
                linewidth=0.0,
                zorder=command.zorder,
            )
        else:
            frame.plot(
                ax=ax,
                facecolor="none",
                edgecolor=command.border_color,
                linewidth=command.line_width,
                zorder=command.zorder,
            )


def _frame_for(command: DrawCommand, selection: BoundarySelection) -> Any | None:
    if command.kind in (DrawKind.FILL, DrawKind.HATCH):
        geometries = selection.data.geometries
    else:
        geometries = selection.layer(command.layer).geometries
    if geometries is None:
        return None
    return geometries.loc[list(command.ids)]


def _draw_legend(ax: Any, legend: LegendSpec) -> None:
    patch_cls = _require_patch()
    handles = [
        patch_cls(facecolor=color, edgecolor=_LEGEND_EDGE_COLOR, label=label)
        for color, label in zip(legend.colors, legend.labels)
    ]
    if legend.hatch_label is not None:
        handles.append(
            patch_cls(
                facecolor="white",
                edgecolor=legend.hatch_color or _LEGEND_EDGE_COLOR,
                hatch=legend.hatch_pattern,
                label=legend.hatch_label,
            )
        )
    if legend.no_data_label is not None:
        handles.append(
            patch_cls(
                facecolor=legend.no_data_color,
                edgecolor=_LEGEND_EDGE_COLOR,
                label=legend.no_data_label,
            )
        )
    ax.legend(
        handles=handles,
        loc=legend.position,
        ncol=legend.columns,
        fontsize=legend.font_size,
        title=legend.title,
        frameon=False,
    )


def _apply_background(fig: Any, ax: Any, background: str) -> None:
    if background.casefold() == "transparent":
        fig.patch.set_alpha(0.0)
        ax.patch.set_alpha(0.0)
        return
    fig.patch.set_facecolor(background)
    ax.set_facecolor(background)


def _require_pyplot() -> Any:
    try:
        import matplotlib

        matplotlib.use("Agg", force=False)
        import matplotlib.pyplot as plt
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for map rendering") from exc
    return plt


def _require_patch() -> Any:
    try:
        from matplotlib.patches import Patch
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for legend rendering") from exc
    return Patch
