"""Layer composition: an ordered builder that produces a MapSpec."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .models import (
    BasemapSpec,
    CompositionWarning,
    DensityLayer,
    Layer,
    MapSpec,
    PointLayer,
    PolygonLayer,
    PopupFn,
    RecordSet,
)
from .styles import normalize_style


_LOGGER = logging.getLogger("geolayers.compose")


class CompositionError(RuntimeError):
    """Raised when a map would contain no usable data."""


@dataclass(frozen=True, slots=True)
class CompositionResult:
    map_spec: MapSpec
    warnings: tuple[CompositionWarning, ...] = ()

    @property
    def excluded_total(self) -> int:
        return sum(warning.excluded_count for warning in self.warnings)


class LayerComposer:
    """Collect layers in draw order, then `build()` them into a MapSpec.

    Records without coordinates are left out of point and density layers and
    counted per layer. A density layer with fewer than `density_min_points`
    usable records is kept as an empty, degraded layer.
    """

    def __init__(
        self,
        *,
        density_min_points: int = 2,
        default_styles: Mapping[str, Mapping[str, Any]] | None = None,
        title: str = "",
    ) -> None:
        if density_min_points < 1:
            raise ValueError("density_min_points must be >= 1")
        self.density_min_points = density_min_points
        self.default_styles = dict(default_styles or {})
        self.title = title
        self._layers: list[Layer] = []
        self._warnings: list[CompositionWarning] = []
        self._record_layers = 0
        self._usable_records = 0

    @property
    def layers(self) -> tuple[Layer, ...]:
        return tuple(self._layers)

    def add_points(
        self,
        records: RecordSet,
        style: Mapping[str, Any] | None = None,
        *,
        name: str | None = None,
        group: str | None = None,
        popup: PopupFn | None = None,
    ) -> LayerComposer:
        layer_name = name or records.name
        located, excluded = self._split_located(records, layer_name)
        self._layers.append(
            PointLayer(
                name=layer_name,
                records=located,
                style=self._style("points", style),
                group=group,
                popup=popup,
                excluded_count=excluded,
            )
        )
        if excluded:
            self._warnings.append(CompositionWarning(layer_name=layer_name, excluded_count=excluded))
        return self

    def add_density(
        self,
        records: RecordSet,
        style: Mapping[str, Any] | None = None,
        *,
        name: str | None = None,
        group: str | None = None,
        popup: PopupFn | None = None,
    ) -> LayerComposer:
        layer_name = name or records.name
        located, excluded = self._split_located(records, layer_name)
        degraded = len(located) < self.density_min_points
        if degraded:
            _LOGGER.info(
                "Density layer '%s' has %d usable point(s) (< %d); leaving it empty",
                layer_name,
                len(located),
                self.density_min_points,
            )
            located = located.derive(())
        self._layers.append(
            DensityLayer(
                name=layer_name,
                records=located,
                style=self._style("density", style),
                group=group,
                popup=popup,
                excluded_count=excluded,
                degraded=degraded,
            )
        )
        if excluded or degraded:
            self._warnings.append(
                CompositionWarning(layer_name=layer_name, excluded_count=excluded, degraded=degraded)
            )
        return self

    def add_polygons(
        self,
        geometry: Any,
        style: Mapping[str, Any] | None = None,
        *,
        name: str,
        group: str | None = None,
        tooltip: str | None = None,
        region_id: str | None = None,
        admin_level: int | None = None,
    ) -> LayerComposer:
        if geometry is None or bool(getattr(geometry, "is_empty", False)):
            raise ValueError(f"Polygon layer '{name}' needs a non-empty geometry")
        self._layers.append(
            PolygonLayer(
                name=name,
                geometry=geometry,
                style=self._style("polygon", style),
                group=group,
                tooltip=tooltip,
                region_id=region_id,
                admin_level=admin_level,
            )
        )
        return self

    def build(self, basemap: BasemapSpec) -> CompositionResult:
        if not self._layers:
            raise CompositionError("No layers were added; nothing to render")
        if self._record_layers and self._usable_records == 0:
            raise CompositionError(
                "No usable records remain after excluding rows without coordinates"
            )
        if basemap.center is None:
            basemap = BasemapSpec(
                provider=basemap.provider,
                center=_auto_center(self._layers),
                zoom=basemap.zoom,
            )
        spec = MapSpec(basemap=basemap, layers=tuple(self._layers), title=self.title)
        for warning in self._warnings:
            _LOGGER.warning(warning.message)
        return CompositionResult(map_spec=spec, warnings=tuple(self._warnings))

    def _style(self, kind: str, style: Mapping[str, Any] | None) -> Mapping[str, Any]:
        return normalize_style(style, kind=kind, defaults=self.default_styles.get(kind))

    def _split_located(self, records: RecordSet, layer_name: str) -> tuple[RecordSet, int]:
        located = records.located
        excluded = len(records) - len(located)
        self._record_layers += 1
        self._usable_records += len(located)
        _LOGGER.debug(
            "Layer '%s': %d usable record(s), %d excluded", layer_name, len(located), excluded
        )
        return (records.derive(located, name=layer_name), excluded)


def _auto_center(layers: tuple[Layer, ...]) -> tuple[float, float]:
    lats: list[float] = []
    lons: list[float] = []
    for layer in layers:
        if isinstance(layer, (PointLayer, DensityLayer)):
            for record in layer.records:
                if record.latitude is not None and record.longitude is not None:
                    lats.append(record.latitude)
                    lons.append(record.longitude)
    if not lats:
        for layer in layers:
            if isinstance(layer, PolygonLayer):
                centroid = layer.geometry.centroid
                lats.append(float(centroid.y))
                lons.append(float(centroid.x))
    if not lats:
        return (0.0, 0.0)
    return (round(sum(lats) / len(lats), 6), round(sum(lons) / len(lons), 6))
