"""Interactive HTML rendering of a MapSpec (folium / Leaflet)."""

from __future__ import annotations

import html
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

from .models import BasemapSpec, DensityLayer, Layer, MapSpec, PolygonLayer, Record
from .render import RenderOutcome, resolve_tile_provider


_LOGGER = logging.getLogger("geolayers.interactive")

_POPUP_MAX_WIDTH = 300
_HEAT_GRADIENT_STOPS = (0.2, 0.4, 0.6, 0.8, 1.0)


class InteractiveMapRenderer:
    """Writes a self-contained Leaflet page with one toggleable group per layer group."""

    def create_basemap(self, basemap: BasemapSpec) -> Any:
        folium = _require_folium()
        center = basemap.center or (0.0, 0.0)
        fmap = folium.Map(location=list(center), zoom_start=basemap.zoom, tiles=None)
        provider = resolve_tile_provider(basemap.provider)
        if provider is not None:
            folium.TileLayer(
                tiles=provider.build_url(),
                attr=provider.html_attribution,
                name=provider.name,
                overlay=False,
                control=True,
                max_zoom=provider.get("max_zoom", 19),
            ).add_to(fmap)
        return fmap

    def render(self, map_spec: MapSpec, output_path: Path) -> RenderOutcome:
        folium = _require_folium()
        fmap = self.create_basemap(map_spec.basemap)
        if map_spec.title:
            fmap.get_root().html.add_child(
                folium.Element(
                    '<h3 style="position:absolute;top:8px;left:56px;z-index:1000;'
                    'margin:0;padding:4px 8px;background:rgba(255,255,255,0.85);'
                    f'font-family:sans-serif;">{html.escape(map_spec.title)}</h3>'
                )
            )

        groups: dict[str, Any] = {}
        for layer in map_spec.layers:
            label = layer.group or layer.name
            group = groups.get(label)
            if group is None:
                group = folium.FeatureGroup(name=label, show=True)
                groups[label] = group
            self._add_layer(folium, group, layer)

        for group in groups.values():
            group.add_to(fmap)
        if len(groups) > 1:
            folium.LayerControl(collapsed=False).add_to(fmap)

        output_path.parent.mkdir(parents=True, exist_ok=True)
        fmap.save(str(output_path))
        _LOGGER.info(
            "Wrote interactive map %s (%d layers in %d groups)",
            output_path,
            len(map_spec.layers),
            len(groups),
        )
        return RenderOutcome(path=output_path)

    def _add_layer(self, folium: Any, group: Any, layer: Layer) -> None:
        if isinstance(layer, PolygonLayer):
            _add_polygon_layer(folium, group, layer)
        elif isinstance(layer, DensityLayer):
            if not layer.is_empty:
                _add_density_layer(group, layer)
        else:
            for record in layer.records:
                _add_point(folium, group, record, layer.style, layer.popup)


def _add_point(
    folium: Any,
    group: Any,
    record: Record,
    style: Mapping[str, Any],
    popup: Any,
) -> None:
    if record.latitude is None or record.longitude is None:
        return
    popup_obj = None
    if popup is not None:
        popup_obj = folium.Popup(html.escape(popup(record)), max_width=_POPUP_MAX_WIDTH)
    color = style.get("color", "#1f77b4")
    folium.CircleMarker(
        location=(record.latitude, record.longitude),
        radius=float(style.get("radius", 4.0)),
        color=color,
        opacity=float(style.get("opacity", 0.9)),
        weight=1,
        fill=bool(style.get("fill", True)),
        fill_color=style.get("fill_color", color),
        fill_opacity=float(style.get("fill_opacity", 0.7)),
        popup=popup_obj,
    ).add_to(group)


def _add_density_layer(group: Any, layer: DensityLayer) -> None:
    heat_map = _require_heatmap()
    data = [
        [record.latitude, record.longitude]
        for record in layer.records
        if record.latitude is not None and record.longitude is not None
    ]
    heat_map(
        data,
        radius=float(layer.style.get("radius", 18.0)),
        blur=float(layer.style.get("blur", 14.0)),
        min_opacity=float(layer.style.get("opacity", 0.6)),
        gradient=heat_gradient(str(layer.style.get("cmap", "inferno"))),
    ).add_to(group)


def _add_polygon_layer(folium: Any, group: Any, layer: PolygonLayer) -> None:
    mapping = _require_shapely_mapping()
    feature = {
        "type": "Feature",
        "properties": {"name": layer.name, "region_id": layer.region_id},
        "geometry": mapping(layer.geometry),
    }
    style = {
        "color": layer.style.get("color", "#333333"),
        "weight": float(layer.style.get("weight", 1.2)),
        "opacity": float(layer.style.get("opacity", 1.0)),
        "fill": bool(layer.style.get("fill", True)),
        "fillColor": layer.style.get("fill_color", layer.style.get("color", "#999999")),
        "fillOpacity": float(layer.style.get("fill_opacity", 0.15)),
    }
    folium.GeoJson(
        {"type": "FeatureCollection", "features": [feature]},
        name=layer.name,
        style_function=lambda _feature: style,
        tooltip=html.escape(layer.tooltip) if layer.tooltip else None,
    ).add_to(group)


@lru_cache(maxsize=None)
def heat_gradient(cmap_name: str) -> dict[float, str]:
    """Sample a matplotlib colormap into a Leaflet.heat gradient."""
    try:
        import matplotlib
        from matplotlib.colors import to_hex
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for heatmap gradients") from exc
    try:
        cmap = matplotlib.colormaps[cmap_name]
    except KeyError as exc:
        raise ValueError(f"Unknown colormap '{cmap_name}'") from exc
    return {stop: to_hex(cmap(stop)) for stop in _HEAT_GRADIENT_STOPS}


@lru_cache(maxsize=1)
def _require_folium() -> Any:
    try:
        import folium
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("folium is required for interactive map rendering") from exc
    return folium


def _require_heatmap() -> Any:
    try:
        from folium.plugins import HeatMap
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("folium is required for heatmap layers") from exc
    return HeatMap


def _require_shapely_mapping() -> Any:
    try:
        from shapely.geometry import mapping
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("shapely is required for GeoJSON export") from exc
    return mapping
