"""Static PNG rendering of a MapSpec (matplotlib + contextily)."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol, Sequence

from .config import RenderConfig
from .models import BasemapSpec, DensityLayer, MapSpec, PolygonLayer, RecordSet


_LOGGER = logging.getLogger("geolayers.render")

NO_BASEMAP = "none"

# Web Mercator: full world width in metres and the y clamp at +/-85.0511 deg.
_WORLD_WIDTH_M = 40_075_016.685578
_MERCATOR_MAX_Y = 20_037_508.342789
_TILE_SIZE_PX = 256.0
_SEGMENT_JUMP_THRESHOLD_M = 2_500_000.0
_EXTENT_PADDING_RATIO = 0.08
_EXTENT_MIN_SPAN_M = 5_000.0


@dataclass(frozen=True, slots=True)
class RenderOutcome:
    path: Path
    warnings: tuple[str, ...] = ()


class MapRenderer(Protocol):
    """What the pipeline needs from a map sink."""

    def create_basemap(self, basemap: BasemapSpec) -> Any: ...

    def render(self, map_spec: MapSpec, output_path: Path) -> RenderOutcome: ...


def resolve_tile_provider(name: str) -> Any | None:
    """Look up an xyzservices provider such as `CartoDB.Positron`; `none` disables tiles."""
    if name.strip().casefold() == NO_BASEMAP:
        return None
    providers = _require_xyzservices_providers()
    try:
        return providers.query_name(name)
    except ValueError as exc:
        raise ValueError(f"Unknown basemap provider '{name}'") from exc


@dataclass(frozen=True, slots=True)
class _ProjectedPoints:
    xs: tuple[float, ...]
    ys: tuple[float, ...]


class StaticMapRenderer:
    """Deterministic renderer for one map PNG in Web Mercator."""

    def __init__(self, cfg: RenderConfig) -> None:
        self.cfg = cfg
        self._basemap_failure: str | None = None

    @property
    def basemap_warning(self) -> str | None:
        return self._basemap_failure

    def create_basemap(self, basemap: BasemapSpec) -> Any | None:
        return resolve_tile_provider(basemap.provider)

    def render(self, map_spec: MapSpec, output_path: Path) -> RenderOutcome:
        plt, colors = _require_matplotlib()
        transformer = _require_pyproj_transformer()
        width_px = self.cfg.image.width_px
        height_px = self.cfg.image.height_px
        dpi = self.cfg.image.dpi
        source = self.create_basemap(map_spec.basemap)
        failure_before = self._basemap_failure

        projected = [_project_layer(layer, transformer) for layer in map_spec.layers]
        extent = _compute_extent(
            projected,
            basemap=map_spec.basemap,
            transformer=transformer,
            width_px=width_px,
            height_px=height_px,
        )

        fig, ax = plt.subplots(figsize=(width_px / dpi, height_px / dpi), dpi=dpi)
        fig.subplots_adjust(left=0.0, right=1.0, bottom=0.0, top=1.0)
        try:
            _apply_background(fig=fig, ax=ax, background=self.cfg.image.background)
            ax.set_xlim(extent[0], extent[1])
            ax.set_ylim(extent[2], extent[3])
            ax.set_aspect("equal", adjustable="box")
            ax.axis("off")
            self._draw_basemap(ax=ax, source=source)

            for idx, (layer, shapes) in enumerate(zip(map_spec.layers, projected)):
                zorder = 2 + idx
                if isinstance(layer, PolygonLayer):
                    _draw_polygon_layer(ax=ax, geometry=shapes, style=layer.style, zorder=zorder)
                elif isinstance(layer, DensityLayer):
                    if not layer.is_empty:
                        _draw_density_layer(
                            ax=ax,
                            points=shapes,
                            style=layer.style,
                            gridsize=self.cfg.density_gridsize,
                            extent=extent,
                            zorder=zorder,
                        )
                else:
                    _draw_point_layer(
                        ax=ax, colors=colors, points=shapes, style=layer.style, zorder=zorder
                    )

            ax.set_xlim(extent[0], extent[1])
            ax.set_ylim(extent[2], extent[3])
            if map_spec.title:
                ax.text(
                    0.01,
                    0.99,
                    map_spec.title,
                    transform=ax.transAxes,
                    ha="left",
                    va="top",
                    fontsize=11,
                    zorder=100,
                    bbox={"facecolor": "white", "alpha": 0.8, "edgecolor": "none", "pad": 3.0},
                )

            output_path.parent.mkdir(parents=True, exist_ok=True)
            fig.savefig(
                output_path,
                dpi=dpi,
                format="png",
                transparent=self.cfg.image.background.casefold() == "transparent",
            )
        finally:
            plt.close(fig)

        warnings: list[str] = []
        if self._basemap_failure is not None and self._basemap_failure != failure_before:
            warnings.append(self._basemap_failure)
        _LOGGER.info("Wrote static map %s (%d layers)", output_path, len(map_spec.layers))
        return RenderOutcome(path=output_path, warnings=tuple(warnings))

    def _draw_basemap(self, *, ax: Any, source: Any | None) -> None:
        if source is None or self._basemap_failure is not None:
            return
        contextily = _require_contextily()
        x0, x1 = ax.get_xlim()
        y0, y1 = ax.get_ylim()
        try:
            image, extent = contextily.bounds2img(
                x0,
                y0,
                x1,
                y1,
                zoom="auto",
                source=source,
                ll=False,
                use_cache=True,
                n_connections=4,
                max_retries=1,
            )
            ax.imshow(image, extent=extent, interpolation="bilinear", zorder=0, alpha=1.0)
            ax.set_xlim(x0, x1)
            ax.set_ylim(y0, y1)
        except Exception as exc:
            self._basemap_failure = (
                "Basemap loading failed once and was disabled for remaining renders: "
                f"{exc}"
            )
            _LOGGER.warning(self._basemap_failure)


def _project_layer(layer: Any, transformer: Any) -> Any:
    if isinstance(layer, PolygonLayer):
        shapely_transform = _require_shapely_transform()
        return shapely_transform(transformer.transform, layer.geometry)
    return _project_records(layer.records, transformer)


def _project_records(records: RecordSet, transformer: Any) -> _ProjectedPoints:
    xs: list[float] = []
    ys: list[float] = []
    for record in records:
        if record.latitude is None or record.longitude is None:
            continue
        x, y = transformer.transform(record.longitude, record.latitude)
        xs.append(float(x))
        ys.append(max(min(float(y), _MERCATOR_MAX_Y), -_MERCATOR_MAX_Y))
    return _ProjectedPoints(xs=tuple(xs), ys=tuple(ys))


def _data_bounds(projected: Sequence[Any]) -> tuple[float, float, float, float] | None:
    xs: list[float] = []
    ys: list[float] = []
    for shapes in projected:
        if isinstance(shapes, _ProjectedPoints):
            xs.extend(shapes.xs)
            ys.extend(shapes.ys)
        elif shapes is not None and not shapes.is_empty:
            min_x, min_y, max_x, max_y = [float(item) for item in shapes.bounds]
            xs.extend((min_x, max_x))
            ys.extend(max(min(y, _MERCATOR_MAX_Y), -_MERCATOR_MAX_Y) for y in (min_y, max_y))
    if not xs:
        return None
    return (min(xs), min(ys), max(xs), max(ys))


def _compute_extent(
    projected: Sequence[Any],
    *,
    basemap: BasemapSpec,
    transformer: Any,
    width_px: int,
    height_px: int,
) -> tuple[float, float, float, float]:
    """Fit the data with padding, or fall back to the basemap center and zoom."""
    target_ratio = width_px / height_px
    bounds = _data_bounds(projected)
    if bounds is None:
        lat, lon = basemap.center or (0.0, 0.0)
        cx, cy = transformer.transform(lon, lat)
        metres_per_px = _WORLD_WIDTH_M / (_TILE_SIZE_PX * (2 ** basemap.zoom))
        half_w = width_px * metres_per_px / 2.0
        half_h = height_px * metres_per_px / 2.0
        x0, x1, y0, y1 = (cx - half_w, cx + half_w, cy - half_h, cy + half_h)
    else:
        min_x, min_y, max_x, max_y = bounds
        pad_x = max((max_x - min_x) * _EXTENT_PADDING_RATIO, _EXTENT_MIN_SPAN_M / 2.0)
        pad_y = max((max_y - min_y) * _EXTENT_PADDING_RATIO, _EXTENT_MIN_SPAN_M / 2.0)
        x0, x1, y0, y1 = (min_x - pad_x, max_x + pad_x, min_y - pad_y, max_y + pad_y)

    x0, x1, y0, y1 = _fit_extent_aspect(x0=x0, x1=x1, y0=y0, y1=y1, target_ratio=target_ratio)
    return (x0, x1, max(y0, -_MERCATOR_MAX_Y), min(y1, _MERCATOR_MAX_Y))


def _fit_extent_aspect(
    *,
    x0: float,
    x1: float,
    y0: float,
    y1: float,
    target_ratio: float,
) -> tuple[float, float, float, float]:
    width = max(x1 - x0, 1e-6)
    height = max(y1 - y0, 1e-6)
    current_ratio = width / height

    if current_ratio < target_ratio:
        needed_width = target_ratio * height
        expand = max((needed_width - width) / 2.0, 0.0)
        x0 -= expand
        x1 += expand
        return (x0, x1, y0, y1)

    needed_height = width / target_ratio
    expand = max((needed_height - height) / 2.0, 0.0)
    y0 -= expand
    y1 += expand
    return (x0, x1, y0, y1)


def _draw_point_layer(
    *, ax: Any, colors: Any, points: _ProjectedPoints, style: Any, zorder: int
) -> None:
    if not points.xs:
        return
    color = style.get("color", "#1f77b4")
    radius = float(style.get("radius", 4.0))
    face = (
        colors.to_rgba(color, float(style.get("fill_opacity", 0.7)))
        if style.get("fill", True)
        else "none"
    )
    ax.scatter(
        points.xs,
        points.ys,
        s=(radius * 2.0) ** 2,
        facecolors=face,
        edgecolors=[colors.to_rgba(color, float(style.get("opacity", 0.9)))],
        linewidths=0.6,
        zorder=zorder,
    )


def _draw_density_layer(
    *,
    ax: Any,
    points: _ProjectedPoints,
    style: Any,
    gridsize: int,
    extent: tuple[float, float, float, float],
    zorder: int,
) -> None:
    ax.hexbin(
        points.xs,
        points.ys,
        gridsize=gridsize,
        extent=extent,
        mincnt=1,
        cmap=style.get("cmap", "inferno"),
        alpha=float(style.get("opacity", 0.6)),
        linewidths=0.0,
        zorder=zorder,
    )


def _draw_polygon_layer(*, ax: Any, geometry: Any, style: Any, zorder: int) -> None:
    if style.get("fill", True):
        fill_color = style.get("fill_color", style.get("color", "#999999"))
        for polygon in _explode_polygons(geometry):
            xs = [float(x) for x, _ in polygon.exterior.coords]
            ys = [float(y) for _, y in polygon.exterior.coords]
            ax.fill(
                xs,
                ys,
                color=fill_color,
                alpha=float(style.get("fill_opacity", 0.15)),
                linewidth=0.0,
                zorder=zorder,
            )
    weight = float(style.get("weight", 1.2))
    if weight > 0:
        _draw_geometry_outline(
            ax=ax,
            geometry=geometry,
            color=style.get("color", "#333333"),
            line_width=weight,
            alpha=float(style.get("opacity", 1.0)),
            zorder=zorder,
        )


def _draw_geometry_outline(
    *,
    ax: Any,
    geometry: Any,
    color: str,
    line_width: float,
    alpha: float = 1.0,
    zorder: int = 1,
) -> None:
    for ring in _iter_linear_rings(geometry):
        if len(ring) < 2:
            continue
        for segment in _split_ring_segments(ring):
            if len(segment) < 2:
                continue
            ax.plot(
                [float(point[0]) for point in segment],
                [float(point[1]) for point in segment],
                color=color,
                linewidth=line_width,
                alpha=alpha,
                zorder=zorder,
                solid_joinstyle="round",
                solid_capstyle="round",
            )


def _split_ring_segments(
    ring: Sequence[tuple[float, float]],
) -> tuple[tuple[tuple[float, float], ...], ...]:
    """Break a projected ring wherever it jumps across the antimeridian."""
    if len(ring) < 2:
        return ()
    segments: list[list[tuple[float, float]]] = []
    current: list[tuple[float, float]] = [ring[0]]
    for point in ring[1:]:
        if _is_large_segment_jump(current[-1], point):
            if len(current) >= 2:
                segments.append(current)
            current = [point]
            continue
        current.append(point)
    if len(current) >= 2:
        segments.append(current)
    return tuple(tuple(segment) for segment in segments)


def _is_large_segment_jump(left: tuple[float, float], right: tuple[float, float]) -> bool:
    dx = abs(float(right[0]) - float(left[0]))
    dy = abs(float(right[1]) - float(left[1]))
    if dx > _SEGMENT_JUMP_THRESHOLD_M:
        return True
    return math.hypot(dx, dy) > _SEGMENT_JUMP_THRESHOLD_M * 1.1


def _explode_polygons(geometry: Any) -> list[Any]:
    geom_type = getattr(geometry, "geom_type", "")
    if geom_type == "Polygon":
        return [geometry]
    if geom_type in ("MultiPolygon", "GeometryCollection"):
        out: list[Any] = []
        for part in geometry.geoms:
            out.extend(_explode_polygons(part))
        return out
    return []


def _iter_linear_rings(geometry: Any) -> list[list[tuple[float, float]]]:
    rings: list[list[tuple[float, float]]] = []
    for polygon in _explode_polygons(geometry):
        rings.append([(float(x), float(y)) for x, y in polygon.exterior.coords])
        for interior in polygon.interiors:
            rings.append([(float(x), float(y)) for x, y in interior.coords])
    return rings


def _apply_background(*, fig: Any, ax: Any, background: str) -> None:
    if background.casefold() == "transparent":
        fig.patch.set_facecolor("white")
        fig.patch.set_alpha(0.0)
        ax.set_facecolor((1.0, 1.0, 1.0, 0.0))
    else:
        fig.patch.set_facecolor(background)
        ax.set_facecolor(background)


def _require_matplotlib() -> tuple[Any, Any]:
    try:
        import matplotlib

        matplotlib.use("Agg", force=False)
        import matplotlib.colors as colors
        import matplotlib.pyplot as plt
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for static map rendering") from exc
    return (plt, colors)


@lru_cache(maxsize=1)
def _require_contextily() -> Any:
    try:
        import contextily as ctx
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("contextily is required for basemap tiles") from exc
    return ctx


@lru_cache(maxsize=1)
def _require_xyzservices_providers() -> Any:
    try:
        from xyzservices import providers
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("xyzservices is required for basemap provider lookup") from exc
    return providers


def _require_shapely_transform() -> Any:
    try:
        from shapely.ops import transform
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("shapely is required for geometry projection in rendering") from exc
    return transform


@lru_cache(maxsize=1)
def _require_pyproj_transformer() -> Any:
    try:
        from pyproj import Transformer
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("pyproj is required for Web Mercator projection in rendering") from exc
    return Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)
