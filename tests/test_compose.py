"""Tests for the layer composer."""

from __future__ import annotations

import pytest
from shapely.geometry import Polygon, box

from conftest import make_record_set
from geolayers.compose import CompositionError, LayerComposer
from geolayers.models import BasemapSpec, DensityLayer, PointLayer, PolygonLayer, RecordSet
from geolayers.styles import PopupTemplate


BASEMAP = BasemapSpec(provider="none", center=None, zoom=5)


class TestPointLayers:
    def test_null_coordinates_are_excluded_and_counted(self) -> None:
        records = make_record_set(
            [{"id": "a"}, {"id": "b"}, {"id": "c"}],
            coordinates=[(1.0, 2.0), (None, None), (3.0, 4.0)],
        )
        result = LayerComposer().add_points(records, name="pts").build(BASEMAP)

        layer = result.map_spec.layers[0]
        assert isinstance(layer, PointLayer)
        assert layer.excluded_count == 1
        assert [record["id"] for record in layer.records] == ["a", "c"]
        assert len(result.warnings) == 1
        assert result.warnings[0].excluded_count == 1
        assert result.excluded_total == 1

    def test_style_merges_defaults(self, events: RecordSet) -> None:
        composer = LayerComposer(default_styles={"points": {"radius": 9}})
        spec = composer.add_points(events, {"color": "red"}).build(BASEMAP).map_spec

        style = spec.layers[0].style
        assert style["color"] == "red"
        assert style["radius"] == 9.0

    def test_name_defaults_to_record_set_name(self, events: RecordSet) -> None:
        spec = LayerComposer().add_points(events).build(BASEMAP).map_spec
        assert spec.layers[0].name == "events"

    def test_popup_kept(self, events: RecordSet) -> None:
        popup = PopupTemplate("{id}")
        spec = LayerComposer().add_points(events, popup=popup).build(BASEMAP).map_spec
        layer = spec.layers[0]
        assert layer.popup is popup
        assert layer.to_dict()["popup"] == "{id}"


class TestDensityLayers:
    def test_single_record_gives_empty_layer(self) -> None:
        records = make_record_set([{"id": "a"}], coordinates=[(1.0, 2.0)])
        result = LayerComposer().add_density(records, name="heat").build(BASEMAP)

        layer = result.map_spec.layers[0]
        assert isinstance(layer, DensityLayer)
        assert layer.is_empty
        assert layer.degraded
        assert result.warnings[0].degraded

    def test_enough_points(self, events: RecordSet) -> None:
        result = LayerComposer().add_density(events, name="heat").build(BASEMAP)

        layer = result.map_spec.layers[0]
        assert not layer.is_empty
        assert not layer.degraded
        assert result.warnings == ()

    def test_custom_minimum(self, events: RecordSet) -> None:
        layer = LayerComposer(density_min_points=10).add_density(events).build(BASEMAP).map_spec.layers[0]
        assert layer.is_empty


class TestPolygonLayers:
    def test_polygon_layer(self) -> None:
        geometry = box(0.0, 0.0, 2.0, 2.0)
        spec = (
            LayerComposer()
            .add_polygons(geometry, {"fill_color": "#00ff00"}, name="area", region_id="XYZ", admin_level=0)
            .build(BASEMAP)
            .map_spec
        )

        layer = spec.layers[0]
        assert isinstance(layer, PolygonLayer)
        assert layer.style["fill_color"] == "#00ff00"
        assert spec.basemap.center == (1.0, 1.0)
        assert layer.to_dict()["geometry_wkt"].startswith("POLYGON")

    def test_empty_geometry_rejected(self) -> None:
        with pytest.raises(ValueError):
            LayerComposer().add_polygons(Polygon(), name="empty")


class TestBuild:
    def test_layers_keep_insertion_order(self, events: RecordSet) -> None:
        spec = (
            LayerComposer()
            .add_polygons(box(29.0, 45.0, 35.0, 51.0), name="outline")
            .add_density(events, name="heat", group="Density")
            .add_points(events, name="pts", group="Events")
            .build(BASEMAP)
            .map_spec
        )
        assert [layer.name for layer in spec.layers] == ["outline", "heat", "pts"]
        assert spec.groups == ("Density", "Events")

    def test_no_layers(self) -> None:
        with pytest.raises(CompositionError):
            LayerComposer().build(BASEMAP)

    def test_no_usable_records(self) -> None:
        records = make_record_set([{"id": "a"}, {"id": "b"}])
        with pytest.raises(CompositionError):
            LayerComposer().add_points(records).build(BASEMAP)

    def test_one_usable_layer_is_enough(self, events: RecordSet) -> None:
        empty = make_record_set([{"id": "z"}], name="empty")
        spec = LayerComposer().add_points(empty).add_points(events).build(BASEMAP).map_spec
        assert len(spec.layers) == 2
        assert len(spec.layers[0].records) == 0

    def test_auto_center_from_points(self, events: RecordSet) -> None:
        spec = LayerComposer().add_points(events).build(BASEMAP).map_spec
        assert spec.basemap.center == (48.0, 32.0)

    def test_explicit_center_kept(self, events: RecordSet) -> None:
        basemap = BasemapSpec(provider="none", center=(10.0, 20.0), zoom=3)
        spec = LayerComposer(title="T").add_points(events).build(basemap).map_spec
        assert spec.basemap == basemap
        assert spec.title == "T"

    def test_to_dict_is_deterministic(self, events: RecordSet) -> None:
        def build() -> dict:
            return LayerComposer().add_points(events, name="pts").build(BASEMAP).map_spec.to_dict()

        assert build() == build()

    def test_bad_minimum(self) -> None:
        with pytest.raises(ValueError):
            LayerComposer(density_min_points=0)
