"""Typed configuration loader for map run YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, cast

import yaml

from .boundaries import SUPPORTED_CENSUS_YEARS
from .categorize import CategoryMode, MAX_CATEGORIES
from .models import Layer
from .policies import POLICY_KEYS


DEFAULT_CATEGORY_COUNT = 5
DEFAULT_LINE_WIDTHS: Mapping[Layer, float] = {
    Layer.TRACT: 0.2,
    Layer.COUNTY: 0.4,
    Layer.HSA: 0.6,
    Layer.REGISTRY: 0.9,
    Layer.STATE: 1.2,
    Layer.REGION: 1.8,
}
DEFAULT_BORDER_COLORS: Mapping[Layer, str] = {
    Layer.TRACT: "#b0b0b0",
    Layer.COUNTY: "#8c8c8c",
    Layer.HSA: "#5f5f5f",
    Layer.REGISTRY: "#303030",
    Layer.STATE: "#111111",
    Layer.REGION: "#000000",
}
DEFAULT_HATCH_DENSITY = 3
HATCH_COMPARISONS = ("<", "<=", ">", ">=", "==", "!=")
_HATCH_PATTERN_CHARS = set("/\\|-+xXoO.*")
LEGEND_POSITIONS = (
    "best",
    "upper right",
    "upper left",
    "lower left",
    "lower right",
    "right",
    "center left",
    "center right",
    "lower center",
    "upper center",
    "center",
)


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected mapping for '{field_name}'")
    return cast(Mapping[str, Any], value)


def _optional_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    return _mapping(value, field_name)


def _str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def _optional_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    return _str(value, field_name)


def _bool(value: Any, field_name: str, default: bool = False) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValueError(f"Expected bool for '{field_name}'")
    return value


def _path_from_cfg(value: Any, field_name: str, root_dir: Path) -> Path:
    raw = _str(value, field_name)
    p = Path(raw)
    return p if p.is_absolute() else root_dir / p


def _number_or_default(
    value: Any,
    field_name: str,
    default: float,
    notes: list[str],
    *,
    minimum: float,
    maximum: float,
    integer: bool = False,
) -> Any:
    """Numeric map parameter; invalid values revert to the default with a note."""
    if value is None:
        return default
    valid_type = isinstance(value, int) if integer else isinstance(value, (int, float))
    if isinstance(value, bool) or not valid_type or not (minimum <= value <= maximum):
        notes.append(
            f"{field_name}={value!r} is invalid (expected {minimum}..{maximum}); using {default}."
        )
        return default
    return int(value) if integer else float(value)


@dataclass(frozen=True, slots=True)
class PathsConfig:
    boundary_root: Path
    output_dir: Path
    logs_dir: Path

    @property
    def build_directories(self) -> tuple[Path, ...]:
        return (self.output_dir, self.logs_dir)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> PathsConfig:
        return cls(
            boundary_root=_path_from_cfg(raw.get("boundary_root"), "paths.boundary_root", root_dir),
            output_dir=_path_from_cfg(raw.get("output_dir", "build/maps"), "paths.output_dir", root_dir),
            logs_dir=_path_from_cfg(raw.get("logs_dir", "build/logs"), "paths.logs_dir", root_dir),
        )


@dataclass(frozen=True, slots=True)
class DataConfig:
    id_column: str
    value_column: str
    hatch_column: str | None = None
    delimiter: str = ","

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> DataConfig:
        delimiter = raw.get("delimiter", ",")
        if not isinstance(delimiter, str) or len(delimiter) != 1:
            raise ValueError("Expected single-character string for 'data.delimiter'")
        return cls(
            id_column=_str(raw.get("id_column"), "data.id_column"),
            value_column=_str(raw.get("value_column"), "data.value_column"),
            hatch_column=_optional_str(raw.get("hatch_column"), "data.hatch_column"),
            delimiter=delimiter,
        )


@dataclass(frozen=True, slots=True)
class MapConfig:
    census_year: int
    crs: str | None
    boundaries: Mapping[str, Any]
    clip: Any
    lower48_only: bool
    include_territory: bool

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> MapConfig:
        census_year = raw.get("census_year", 2010)
        if census_year not in SUPPORTED_CENSUS_YEARS:
            years = ", ".join(str(y) for y in SUPPORTED_CENSUS_YEARS)
            raise ValueError(f"map.census_year must be one of {years}")

        crs = _optional_str(raw.get("crs"), "map.crs")
        if crs is not None:
            crs_factory = _require_pyproj_crs()
            try:
                crs_factory.from_user_input(crs)
            except Exception as exc:
                raise ValueError(f"Invalid map.crs '{crs}': {exc}") from exc

        # Policy strings stay raw here; they are checked once per run against the data level.
        boundaries = _optional_mapping(raw.get("boundaries"), "map.boundaries")
        unknown = sorted(set(boundaries) - set(POLICY_KEYS.values()))
        if unknown:
            raise ValueError(f"Unknown layer(s) in map.boundaries: {', '.join(unknown)}")

        return cls(
            census_year=int(census_year),
            crs=crs,
            boundaries=dict(boundaries),
            clip=raw.get("clip"),
            lower48_only=_bool(raw.get("lower48_only"), "map.lower48_only"),
            include_territory=_bool(raw.get("include_territory"), "map.include_territory"),
        )


@dataclass(frozen=True, slots=True)
class CategoriesConfig:
    mode: CategoryMode
    count: int
    breakpoints: tuple[float, ...] = ()
    labels: tuple[str, ...] = ()
    palette: str = "-RdYlBu"
    number_format: str = "{:.1f}"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], notes: list[str]) -> CategoriesConfig:
        mode_raw = raw.get("mode", CategoryMode.COMPUTED.value)
        try:
            mode = CategoryMode(str(mode_raw).strip().lower())
        except ValueError as exc:
            modes = ", ".join(m.value for m in CategoryMode)
            raise ValueError(f"categories.mode must be one of {modes}") from exc

        count = _number_or_default(
            raw.get("count"),
            "categories.count",
            DEFAULT_CATEGORY_COUNT,
            notes,
            minimum=1,
            maximum=MAX_CATEGORIES,
            integer=True,
        )

        bp_raw = raw.get("breakpoints") or []
        if not isinstance(bp_raw, list) or not all(
            isinstance(v, (int, float)) and not isinstance(v, bool) for v in bp_raw
        ):
            raise ValueError("Expected list of numbers for 'categories.breakpoints'")
        breakpoints = tuple(float(v) for v in bp_raw)
        if any(nxt <= prev for prev, nxt in zip(breakpoints, breakpoints[1:])):
            raise ValueError("categories.breakpoints must be strictly increasing")
        if mode is CategoryMode.BREAKPOINTS and not breakpoints:
            raise ValueError("categories.breakpoints is required for mode 'breakpoints'")
        if len(breakpoints) + 1 > MAX_CATEGORIES:
            raise ValueError(f"categories.breakpoints allows at most {MAX_CATEGORIES - 1} values")

        labels_raw = raw.get("labels") or []
        if not isinstance(labels_raw, list):
            raise ValueError("Expected list for 'categories.labels'")
        labels = tuple(_str(item, f"categories.labels[{i}]") for i, item in enumerate(labels_raw))

        number_format = raw.get("number_format", "{:.1f}")
        try:
            _str(number_format, "categories.number_format").format(1.0)
        except (IndexError, KeyError, ValueError) as exc:
            raise ValueError(f"Invalid categories.number_format '{number_format}'") from exc

        return cls(
            mode=mode,
            count=count,
            breakpoints=breakpoints,
            labels=labels,
            palette=_str(raw.get("palette", "-RdYlBu"), "categories.palette"),
            number_format=number_format,
        )


@dataclass(frozen=True, slots=True)
class HatchConfig:
    enabled: bool = False
    comparison: str = "<"
    threshold: float = 0.05
    pattern: str = "/"
    density: int = DEFAULT_HATCH_DENSITY
    color: str = "#4d4d4d"
    line_width: float = 0.5

    @property
    def hatch(self) -> str:
        return self.pattern * self.density

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], notes: list[str]) -> HatchConfig:
        comparison = str(raw.get("comparison", "<")).strip()
        if comparison not in HATCH_COMPARISONS:
            raise ValueError(f"hatch.comparison must be one of {', '.join(HATCH_COMPARISONS)}")
        threshold = raw.get("threshold", 0.05)
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise ValueError("Expected number for 'hatch.threshold'")
        pattern = _str(raw.get("pattern", "/"), "hatch.pattern")
        if not set(pattern) <= _HATCH_PATTERN_CHARS:
            raise ValueError(f"hatch.pattern '{pattern}' uses characters matplotlib cannot hatch")
        return cls(
            enabled=_bool(raw.get("enabled"), "hatch.enabled"),
            comparison=comparison,
            threshold=float(threshold),
            pattern=pattern,
            density=_number_or_default(
                raw.get("density"),
                "hatch.density",
                DEFAULT_HATCH_DENSITY,
                notes,
                minimum=1,
                maximum=10,
                integer=True,
            ),
            color=_str(raw.get("color", "#4d4d4d"), "hatch.color"),
            line_width=_number_or_default(
                raw.get("line_width"), "hatch.line_width", 0.5, notes, minimum=0.05, maximum=5.0
            ),
        )


@dataclass(frozen=True, slots=True)
class StyleConfig:
    line_widths: Mapping[Layer, float] = field(default_factory=lambda: dict(DEFAULT_LINE_WIDTHS))
    border_colors: Mapping[Layer, str] = field(default_factory=lambda: dict(DEFAULT_BORDER_COLORS))
    data_border_color: str = "#ffffff"
    data_line_width: float = 0.1

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], notes: list[str]) -> StyleConfig:
        widths_raw = _optional_mapping(raw.get("line_widths"), "style.line_widths")
        colors_raw = _optional_mapping(raw.get("border_colors"), "style.border_colors")
        line_widths: dict[Layer, float] = {}
        border_colors: dict[Layer, str] = {}
        for layer, key in POLICY_KEYS.items():
            line_widths[layer] = _number_or_default(
                widths_raw.get(key),
                f"style.line_widths.{key}",
                DEFAULT_LINE_WIDTHS[layer],
                notes,
                minimum=0.01,
                maximum=10.0,
            )
            color = colors_raw.get(key)
            border_colors[layer] = (
                _str(color, f"style.border_colors.{key}")
                if color is not None
                else DEFAULT_BORDER_COLORS[layer]
            )
        return cls(
            line_widths=line_widths,
            border_colors=border_colors,
            data_border_color=_str(
                raw.get("data_border_color", "#ffffff"), "style.data_border_color"
            ),
            data_line_width=_number_or_default(
                raw.get("data_line_width"),
                "style.data_line_width",
                0.1,
                notes,
                minimum=0.0,
                maximum=10.0,
            ),
        )


@dataclass(frozen=True, slots=True)
class LegendConfig:
    enabled: bool = True
    position: str = "lower right"
    columns: int = 1
    title: str | None = None
    font_size: float = 8.0
    no_data_label: str | None = None
    no_data_color: str = "#e6e6e6"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], notes: list[str]) -> LegendConfig:
        position = str(raw.get("position", "lower right")).strip().lower()
        if position not in LEGEND_POSITIONS:
            raise ValueError(f"legend.position must be one of {', '.join(LEGEND_POSITIONS)}")
        return cls(
            enabled=_bool(raw.get("enabled"), "legend.enabled", default=True),
            position=position,
            columns=_number_or_default(
                raw.get("columns"), "legend.columns", 1, notes, minimum=1, maximum=8, integer=True
            ),
            title=_optional_str(raw.get("title"), "legend.title"),
            font_size=_number_or_default(
                raw.get("font_size"), "legend.font_size", 8.0, notes, minimum=4.0, maximum=24.0
            ),
            no_data_label=_optional_str(raw.get("no_data_label"), "legend.no_data_label"),
            no_data_color=_str(raw.get("no_data_color", "#e6e6e6"), "legend.no_data_color"),
        )


@dataclass(frozen=True, slots=True)
class ImageConfig:
    width_px: int = 1600
    height_px: int = 1000
    dpi: int = 200
    format: str = "png"
    background: str = "white"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], notes: list[str]) -> ImageConfig:
        image_format = str(raw.get("format", "png")).strip().lower()
        if image_format not in {"png", "pdf", "svg"}:
            raise ValueError("image.format must be one of png, pdf, svg")
        return cls(
            width_px=_number_or_default(
                raw.get("width_px"), "image.width_px", 1600, notes, minimum=100, maximum=20000, integer=True
            ),
            height_px=_number_or_default(
                raw.get("height_px"), "image.height_px", 1000, notes, minimum=100, maximum=20000, integer=True
            ),
            dpi=_number_or_default(
                raw.get("dpi"), "image.dpi", 200, notes, minimum=50, maximum=1200, integer=True
            ),
            format=image_format,
            background=_str(raw.get("background", "white"), "image.background"),
        )


@dataclass(frozen=True, slots=True)
class RenderConfig:
    style: StyleConfig
    legend: LegendConfig
    image: ImageConfig
    hatch: HatchConfig
    title: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BuildConfig:
    write_manifest: bool = True

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> BuildConfig:
        return cls(write_manifest=_bool(raw.get("write_manifest"), "build.write_manifest", True))


def _title_lines(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        lines = [value]
    elif isinstance(value, list):
        lines = [_str(item, f"title[{idx}]") for idx, item in enumerate(value)]
    else:
        raise ValueError("Expected string or list for 'title'")
    if len(lines) > 2:
        raise ValueError("title allows at most two lines")
    return tuple(line.strip() for line in lines)


@dataclass(frozen=True, slots=True)
class AppConfig:
    source_path: Path
    paths: PathsConfig
    data: DataConfig
    map: MapConfig
    categories: CategoriesConfig
    render: RenderConfig
    build: BuildConfig
    notes: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], source_path: Path) -> AppConfig:
        root_dir = source_path.parent.resolve()
        notes: list[str] = []
        render = RenderConfig(
            style=StyleConfig.from_mapping(_optional_mapping(raw.get("style"), "style"), notes),
            legend=LegendConfig.from_mapping(_optional_mapping(raw.get("legend"), "legend"), notes),
            image=ImageConfig.from_mapping(_optional_mapping(raw.get("image"), "image"), notes),
            hatch=HatchConfig.from_mapping(_optional_mapping(raw.get("hatch"), "hatch"), notes),
            title=_title_lines(raw.get("title")),
        )
        categories = CategoriesConfig.from_mapping(
            _optional_mapping(raw.get("categories"), "categories"), notes
        )
        data = DataConfig.from_mapping(_mapping(raw.get("data"), "data"))
        if render.hatch.enabled and data.hatch_column is None:
            raise ValueError("hatch.enabled requires data.hatch_column")
        return cls(
            source_path=source_path.resolve(),
            paths=PathsConfig.from_mapping(_mapping(raw.get("paths"), "paths"), root_dir),
            data=data,
            map=MapConfig.from_mapping(_optional_mapping(raw.get("map"), "map")),
            categories=categories,
            render=render,
            build=BuildConfig.from_mapping(_optional_mapping(raw.get("build"), "build")),
            notes=tuple(notes),
        )


def load_config(path: str | Path) -> AppConfig:
    """Load and validate the YAML config file into typed settings."""
    cfg_path = Path(path).resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if not isinstance(raw, Mapping):
        raise ValueError("Top-level config must be a YAML mapping")
    return AppConfig.from_mapping(cast(Mapping[str, Any], raw), cfg_path)


def _require_pyproj_crs() -> Any:
    try:
        from pyproj import CRS
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("pyproj is required to validate map.crs") from exc
    return CRS
