"""Typed configuration loader for `config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, cast

import yaml

from .filters import Predicate, predicate_from_mapping


LAYER_KINDS = ("points", "density", "polygon")
GEOCODER_PROVIDERS = ("nominatim", "gazetteer", "chained", "none")
OUTPUT_FORMATS = ("png", "html")


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected mapping for '{field_name}'")
    return cast(Mapping[str, Any], value)


def _opt_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    return _mapping(value, field_name)


def _str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def _opt_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    return _str(value, field_name)


def _int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Expected integer for '{field_name}'")
    return value


def _float(value: Any, field_name: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ValueError(f"Expected float for '{field_name}'")


def _str_list(value: Any, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValueError(f"Expected list for '{field_name}'")
    out: list[str] = []
    for idx, item in enumerate(value):
        out.append(_str(item, f"{field_name}[{idx}]"))
    return tuple(out)


def _path_from_cfg(value: Any, field_name: str, root_dir: Path) -> Path:
    raw = _str(value, field_name)
    p = Path(raw)
    return p if p.is_absolute() else root_dir / p


def _opt_path(value: Any, field_name: str, root_dir: Path) -> Path | None:
    if value is None:
        return None
    return _path_from_cfg(value, field_name, root_dir)


def _style(value: Any, field_name: str) -> dict[str, Any]:
    raw = _opt_mapping(value, field_name)
    out: dict[str, Any] = {}
    for key, item in raw.items():
        out[_str(key, f"{field_name} key")] = item
    return out


@dataclass(frozen=True, slots=True)
class ProjectConfig:
    title: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ProjectConfig:
        return cls(title=_str(raw.get("title"), "project.title"))


@dataclass(frozen=True, slots=True)
class PathsConfig:
    records: Path
    output_dir: Path
    logs_dir: Path
    gazetteer: Path | None = None
    boundaries: Mapping[int, Path] = field(default_factory=dict)

    @property
    def build_directories(self) -> tuple[Path, ...]:
        return (self.output_dir, self.logs_dir)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> PathsConfig:
        boundaries_raw = _opt_mapping(raw.get("boundaries"), "paths.boundaries")
        boundaries: dict[int, Path] = {}
        for level_raw, path_raw in boundaries_raw.items():
            level = _int(level_raw, "paths.boundaries key")
            if level < 0:
                raise ValueError("paths.boundaries keys must be admin levels >= 0")
            boundaries[level] = _path_from_cfg(path_raw, f"paths.boundaries.{level}", root_dir)
        return cls(
            records=_path_from_cfg(raw.get("records"), "paths.records", root_dir),
            output_dir=_path_from_cfg(raw.get("output_dir"), "paths.output_dir", root_dir),
            logs_dir=_path_from_cfg(raw.get("logs_dir", "logs"), "paths.logs_dir", root_dir),
            gazetteer=_opt_path(raw.get("gazetteer"), "paths.gazetteer", root_dir),
            boundaries=boundaries,
        )


@dataclass(frozen=True, slots=True)
class RecordsConfig:
    id_column: str | None
    latitude_column: str | None
    longitude_column: str | None
    place_column: str | None
    delimiter: str = ","
    encoding: str = "utf-8"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> RecordsConfig:
        lat_col = _opt_str(raw.get("latitude_column"), "records.latitude_column")
        lon_col = _opt_str(raw.get("longitude_column"), "records.longitude_column")
        place_col = _opt_str(raw.get("place_column"), "records.place_column")
        if (lat_col is None) != (lon_col is None):
            raise ValueError(
                "records.latitude_column and records.longitude_column must be set together"
            )
        if lat_col is None and place_col is None:
            raise ValueError(
                "records needs latitude/longitude columns, a place_column, or both"
            )
        delimiter = raw.get("delimiter", ",")
        if not isinstance(delimiter, str) or len(delimiter) != 1:
            raise ValueError("records.delimiter must be a single character")
        return cls(
            id_column=_opt_str(raw.get("id_column"), "records.id_column"),
            latitude_column=lat_col,
            longitude_column=lon_col,
            place_column=place_col,
            delimiter=delimiter,
            encoding=_str(raw.get("encoding", "utf-8"), "records.encoding"),
        )


@dataclass(frozen=True, slots=True)
class GeocoderConfig:
    provider: str
    base_url: str
    user_agent: str
    request_timeout_s: float
    min_request_interval_s: float
    max_retries: int
    retry_backoff_s: float
    max_workers: int
    country_codes: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> GeocoderConfig:
        provider = _str(raw.get("provider", "nominatim"), "geocoder.provider").casefold()
        if provider not in GEOCODER_PROVIDERS:
            raise ValueError(
                "geocoder.provider must be one of: " + ", ".join(GEOCODER_PROVIDERS)
            )
        request_timeout_s = _float(raw.get("request_timeout_s", 10.0), "geocoder.request_timeout_s")
        min_request_interval_s = _float(
            raw.get("min_request_interval_s", 1.0),
            "geocoder.min_request_interval_s",
        )
        max_retries = _int(raw.get("max_retries", 3), "geocoder.max_retries")
        retry_backoff_s = _float(raw.get("retry_backoff_s", 1.0), "geocoder.retry_backoff_s")
        max_workers = _int(raw.get("max_workers", 1), "geocoder.max_workers")
        if request_timeout_s <= 0:
            raise ValueError("geocoder.request_timeout_s must be > 0")
        if min_request_interval_s < 0:
            raise ValueError("geocoder.min_request_interval_s must be >= 0")
        if max_retries < 0:
            raise ValueError("geocoder.max_retries must be >= 0")
        if retry_backoff_s <= 0:
            raise ValueError("geocoder.retry_backoff_s must be > 0")
        if max_workers < 1:
            raise ValueError("geocoder.max_workers must be >= 1")
        return cls(
            provider=provider,
            base_url=_str(
                raw.get("base_url", "https://nominatim.openstreetmap.org/search"),
                "geocoder.base_url",
            ),
            user_agent=_str(raw.get("user_agent", "geolayers/0.1"), "geocoder.user_agent"),
            request_timeout_s=request_timeout_s,
            min_request_interval_s=min_request_interval_s,
            max_retries=max_retries,
            retry_backoff_s=retry_backoff_s,
            max_workers=max_workers,
            country_codes=tuple(
                code.casefold() for code in _str_list(raw.get("country_codes"), "geocoder.country_codes")
            ),
        )


@dataclass(frozen=True, slots=True)
class BasemapConfig:
    provider: str
    center: tuple[float, float] | None
    zoom: int

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> BasemapConfig:
        center_raw = raw.get("center")
        center: tuple[float, float] | None
        if center_raw is None:
            center = None
        else:
            if not isinstance(center_raw, list) or len(center_raw) != 2:
                raise ValueError("basemap.center must be a [lat, lon] pair")
            lat = _float(center_raw[0], "basemap.center[0]")
            lon = _float(center_raw[1], "basemap.center[1]")
            if lat < -90.0 or lat > 90.0:
                raise ValueError("basemap.center latitude must be between -90 and 90")
            if lon < -180.0 or lon > 180.0:
                raise ValueError("basemap.center longitude must be between -180 and 180")
            center = (lat, lon)
        zoom = _int(raw.get("zoom", 4), "basemap.zoom")
        if zoom < 0 or zoom > 20:
            raise ValueError("basemap.zoom must be between 0 and 20")
        return cls(
            provider=_str(raw.get("provider", "CartoDB.Positron"), "basemap.provider"),
            center=center,
            zoom=zoom,
        )


@dataclass(frozen=True, slots=True)
class CompositionConfig:
    density_min_points: int
    point_style: Mapping[str, Any]
    density_style: Mapping[str, Any]
    polygon_style: Mapping[str, Any]

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> CompositionConfig:
        density_min_points = _int(
            raw.get("density_min_points", 2), "composition.density_min_points"
        )
        if density_min_points < 1:
            raise ValueError("composition.density_min_points must be >= 1")
        return cls(
            density_min_points=density_min_points,
            point_style=_style(raw.get("point_style"), "composition.point_style"),
            density_style=_style(raw.get("density_style"), "composition.density_style"),
            polygon_style=_style(raw.get("polygon_style"), "composition.polygon_style"),
        )


@dataclass(frozen=True, slots=True)
class RenderImageConfig:
    width_px: int
    height_px: int
    dpi: int
    background: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> RenderImageConfig:
        width_px = _int(raw.get("width_px", 1600), "render.image.width_px")
        height_px = _int(raw.get("height_px", 1000), "render.image.height_px")
        dpi = _int(raw.get("dpi", 200), "render.image.dpi")
        if width_px < 1 or height_px < 1 or dpi < 1:
            raise ValueError("render.image width_px, height_px and dpi must be >= 1")
        return cls(
            width_px=width_px,
            height_px=height_px,
            dpi=dpi,
            background=_str(raw.get("background", "white"), "render.image.background"),
        )


@dataclass(frozen=True, slots=True)
class RenderConfig:
    image: RenderImageConfig
    formats: tuple[str, ...]
    output_stem: str
    density_gridsize: int

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> RenderConfig:
        formats = tuple(
            item.casefold() for item in _str_list(raw.get("formats", ["html"]), "render.formats")
        )
        if not formats:
            raise ValueError("render.formats must list at least one output format")
        unknown = sorted(set(formats) - set(OUTPUT_FORMATS))
        if unknown:
            raise ValueError(
                "Unsupported render.formats: "
                + ", ".join(unknown)
                + " (expected: "
                + ", ".join(OUTPUT_FORMATS)
                + ")"
            )
        density_gridsize = _int(raw.get("density_gridsize", 40), "render.density_gridsize")
        if density_gridsize < 2:
            raise ValueError("render.density_gridsize must be >= 2")
        return cls(
            image=RenderImageConfig.from_mapping(_opt_mapping(raw.get("image"), "render.image")),
            formats=formats,
            output_stem=_str(raw.get("output_stem", "map"), "render.output_stem"),
            density_gridsize=density_gridsize,
        )


@dataclass(frozen=True, slots=True)
class LayerConfig:
    name: str
    kind: str
    where: Predicate | None = None
    style: Mapping[str, Any] = field(default_factory=dict)
    group: str | None = None
    popup: str | None = None
    region: str | None = None
    admin_level: int = 0
    tooltip: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], idx: int) -> LayerConfig:
        prefix = f"layers[{idx}]"
        kind = _str(raw.get("kind"), f"{prefix}.kind").casefold()
        if kind not in LAYER_KINDS:
            raise ValueError(f"{prefix}.kind must be one of: " + ", ".join(LAYER_KINDS))
        where_raw = raw.get("where")
        where = (
            predicate_from_mapping(_mapping(where_raw, f"{prefix}.where"))
            if where_raw is not None
            else None
        )
        region = _opt_str(raw.get("region"), f"{prefix}.region")
        admin_level = _int(raw.get("admin_level", 0), f"{prefix}.admin_level")
        if kind == "polygon":
            if region is None:
                raise ValueError(f"{prefix}.region is required for polygon layers")
            if where is not None:
                raise ValueError(f"{prefix}.where is not supported for polygon layers")
        if admin_level < 0:
            raise ValueError(f"{prefix}.admin_level must be >= 0")
        return cls(
            name=_str(raw.get("name"), f"{prefix}.name"),
            kind=kind,
            where=where,
            style=_style(raw.get("style"), f"{prefix}.style"),
            group=_opt_str(raw.get("group"), f"{prefix}.group"),
            popup=_opt_str(raw.get("popup"), f"{prefix}.popup"),
            region=region,
            admin_level=admin_level,
            tooltip=_opt_str(raw.get("tooltip"), f"{prefix}.tooltip"),
        )


@dataclass(frozen=True, slots=True)
class AppConfig:
    source_path: Path
    project: ProjectConfig
    paths: PathsConfig
    records: RecordsConfig
    geocoder: GeocoderConfig
    basemap: BasemapConfig
    composition: CompositionConfig
    render: RenderConfig
    layers: tuple[LayerConfig, ...]

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], source_path: Path) -> AppConfig:
        root_dir = source_path.parent.resolve()
        layers_raw = raw.get("layers")
        if not isinstance(layers_raw, list) or not layers_raw:
            raise ValueError("Expected non-empty list for 'layers'")
        layers = tuple(
            LayerConfig.from_mapping(_mapping(item, f"layers[{idx}]"), idx)
            for idx, item in enumerate(layers_raw)
        )
        names = [layer.name for layer in layers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError("Duplicate layer names: " + ", ".join(duplicates))
        return cls(
            source_path=source_path.resolve(),
            project=ProjectConfig.from_mapping(_mapping(raw.get("project"), "project")),
            paths=PathsConfig.from_mapping(_mapping(raw.get("paths"), "paths"), root_dir),
            records=RecordsConfig.from_mapping(_mapping(raw.get("records"), "records")),
            geocoder=GeocoderConfig.from_mapping(_opt_mapping(raw.get("geocoder"), "geocoder")),
            basemap=BasemapConfig.from_mapping(_opt_mapping(raw.get("basemap"), "basemap")),
            composition=CompositionConfig.from_mapping(
                _opt_mapping(raw.get("composition"), "composition")
            ),
            render=RenderConfig.from_mapping(_opt_mapping(raw.get("render"), "render")),
            layers=layers,
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
