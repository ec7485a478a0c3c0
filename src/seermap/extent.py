"""Plot extent from per-layer bounding boxes and the clip policy."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Mapping

from .models import BBox, ClipPolicy, Issue, IssueCode, Layer
from .selection import BoundarySelection


_LOGGER = logging.getLogger("seermap.extent")


@dataclass(frozen=True, slots=True)
class MapExtent:
    x_range: tuple[float, float]
    y_range: tuple[float, float]
    clip: ClipPolicy
    issues: tuple[Issue, ...] = ()

    @property
    def aspect(self) -> float:
        height = self.y_range[1] - self.y_range[0]
        width = self.x_range[1] - self.x_range[0]
        if height <= 0:
            return math.inf if width > 0 else 1.0
        return width / height

    @property
    def bbox(self) -> BBox:
        return BBox(self.x_range[0], self.y_range[0], self.x_range[1], self.y_range[1])


def effective_clip_policy(
    clip: ClipPolicy,
    data_level: Layer,
    layer_boxes: Mapping[Layer, BBox],
) -> tuple[ClipPolicy, list[Issue]]:
    """Downgrade clip values that cannot apply to this data to DATA."""
    target = clip.layer
    if target is None:
        return clip, []
    if not data_level.is_finer_than(target):
        issue = Issue(
            IssueCode.CLIP_DOWNGRADED,
            f"clip {clip.value} is not coarser than the {data_level.label} data; clipping to DATA.",
        )
        return ClipPolicy.DATA, [issue]
    if target not in layer_boxes:
        issue = Issue(
            IssueCode.CLIP_DOWNGRADED,
            f"clip {clip.value} needs {target.label} boundaries, which are not drawn; "
            "clipping to DATA.",
        )
        return ClipPolicy.DATA, [issue]
    return clip, []


def compute_extent_from_boxes(
    data_box: BBox,
    layer_boxes: Mapping[Layer, BBox],
    clip: ClipPolicy,
    data_level: Layer,
) -> MapExtent:
    """Union the boxes named by `clip`.

    NONE keeps every drawn layer visible; DATA is the tightest extent; a layer
    value unions the data box with that layer's box.
    """
    effective, issues = effective_clip_policy(clip, data_level, layer_boxes)
    box = data_box
    if effective is ClipPolicy.NONE:
        for layer_box in layer_boxes.values():
            box = box.union(layer_box)
    elif effective is not ClipPolicy.DATA and effective.layer is not None:
        box = box.union(layer_boxes[effective.layer])

    for issue in issues:
        _LOGGER.warning(issue.message)
    return MapExtent(
        x_range=(box.minx, box.maxx),
        y_range=(box.miny, box.maxy),
        clip=effective,
        issues=tuple(issues),
    )


def compute_extent(selection: BoundarySelection, clip: ClipPolicy) -> MapExtent:
    data_box = selection.data.bbox
    if data_box is None:
        raise ValueError("Data layer has no bounding box")
    layer_boxes = {
        layer: selected.bbox
        for layer, selected in selection.layers.items()
        if selected.active and selected.bbox is not None
    }
    return compute_extent_from_boxes(data_box, layer_boxes, clip, selection.level)
