"""End-to-end tests for the pipeline runner."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Callable

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import box

from conftest import StubGeocoder, make_record_set
from geolayers.boundaries import BoundaryRepository
from geolayers.config import load_config
from geolayers.models import MapSpec
from geolayers.pipeline import (
    MAP_SPEC_FILENAME,
    format_pipeline_lines,
    resolved_frame,
    run_pipeline,
    run_resolve,
)
from geolayers.render import RenderOutcome


PLACES = {"Kharkiv": (49.99, 36.23), "Odesa": (46.48, 30.72)}


@pytest.fixture()
def boundaries() -> BoundaryRepository:
    admin0 = gpd.GeoDataFrame(
        {"ADM0_A3": ["UKR"], "NAME": ["Ukraine"], "geometry": [box(22.0, 44.0, 40.0, 52.0)]},
        crs="EPSG:4326",
    )
    return BoundaryRepository.from_frames({0: admin0})


class RecordingRenderer:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.rendered: list[tuple[MapSpec, Path]] = []

    def create_basemap(self, basemap: Any) -> None:
        return None

    def render(self, map_spec: MapSpec, output_path: Path) -> RenderOutcome:
        if self.fail:
            raise RuntimeError("disk full")
        self.rendered.append((map_spec, output_path))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text("rendered", encoding="utf-8")
        return RenderOutcome(path=output_path, warnings=("tiles skipped",))


class TestRunPipeline:
    def test_builds_spec_and_html(self, write_config: Callable[..., Path]) -> None:
        cfg = load_config(write_config())
        geocoder = StubGeocoder(PLACES)

        report = run_pipeline(cfg, geocoder=geocoder)

        assert report.ok, report.errors
        assert sorted(geocoder.calls) == ["Atlantis", "Kharkiv", "Odesa"]
        assert report.summary["records_loaded"] == 5
        assert report.summary["records_resolved"] == 4
        assert report.summary["layers"] == 2
        assert report.outputs["html"] == cfg.paths.output_dir / "events.html"
        assert "L.circleMarker(" in report.outputs["html"].read_text(encoding="utf-8")

        spec_path = report.outputs["map_spec"]
        assert spec_path.name == MAP_SPEC_FILENAME
        assert hashlib.sha256(spec_path.read_bytes()).hexdigest() == report.map_spec_sha256
        payload = json.loads(spec_path.read_text(encoding="utf-8"))
        assert payload == json.loads(json.dumps(report.map_spec.to_dict()))
        assert [layer["name"] for layer in payload["layers"]] == ["All", "Strikes"]

    def test_strike_layer_is_subset(self, write_config: Callable[..., Path]) -> None:
        report = run_pipeline(load_config(write_config()), geocoder=StubGeocoder(PLACES))

        strikes = report.map_spec.layers[1]
        assert [record["event_id"] for record in strikes.records] == ["EV-1", "EV-3"]
        assert strikes.records[1].latitude == pytest.approx(49.99)

    def test_resolution_problems_are_warnings(self, write_config: Callable[..., Path]) -> None:
        report = run_pipeline(load_config(write_config()), geocoder=StubGeocoder(PLACES))

        assert report.ok
        assert report.resolution_warning.failed_place_names == ("Atlantis",)
        assert report.resolution_warning.missing_place_rows == (4,)
        assert any("Atlantis" in msg for msg in report.warnings)
        assert any("neither coordinates nor a place name" in msg for msg in report.warnings)
        assert any(msg.startswith("[compose]") for msg in report.warnings)

    def test_same_input_same_spec(self, write_config: Callable[..., Path]) -> None:
        cfg = load_config(write_config())

        first = run_pipeline(cfg, geocoder=StubGeocoder(PLACES))
        second = run_pipeline(cfg, geocoder=StubGeocoder(PLACES))

        assert first.map_spec.to_dict() == second.map_spec.to_dict()
        assert first.map_spec_sha256 == second.map_spec_sha256

    def test_geocoding_disabled(self, write_config: Callable[..., Path]) -> None:
        geocoder = StubGeocoder(PLACES)
        report = run_pipeline(load_config(write_config()), geocoder=geocoder, geocode=False)

        assert geocoder.calls == []
        assert report.summary["records_resolved"] == 1
        # A single located strike still gives one usable layer.
        assert report.ok
        assert report.map_spec.layers[0].degraded

    def test_injected_renderers(self, write_config: Callable[..., Path]) -> None:
        cfg = load_config(write_config())
        png = RecordingRenderer()
        html = RecordingRenderer()

        report = run_pipeline(
            cfg,
            geocoder=StubGeocoder(PLACES),
            renderers={"png": png, "html": html},
            formats=["PNG", "html", "png"],
        )

        assert report.ok
        assert [path.name for _, path in png.rendered] == ["events.png"]
        assert [path.name for _, path in html.rendered] == ["events.html"]
        assert png.rendered[0][0] is html.rendered[0][0]
        assert report.summary["outputs_written"] == 2
        assert "[render:png] tiles skipped" in report.warnings

    def test_renderer_failure_stops_run(self, write_config: Callable[..., Path]) -> None:
        cfg = load_config(write_config())
        html = RecordingRenderer()

        report = run_pipeline(
            cfg,
            geocoder=StubGeocoder(PLACES),
            renderers={"png": RecordingRenderer(fail=True), "html": html},
            formats=["png", "html"],
        )

        assert not report.ok
        assert report.errors == ["[render:png] disk full"]
        assert html.rendered == []
        assert report.outputs["map_spec"].exists()

    def test_unsupported_format(self, write_config: Callable[..., Path]) -> None:
        geocoder = StubGeocoder(PLACES)
        report = run_pipeline(load_config(write_config()), geocoder=geocoder, formats=["svg"])

        assert not report.ok
        assert "Unsupported output format 'svg'" in report.errors[0]
        assert geocoder.calls == []

    def test_missing_records_file(self, write_config: Callable[..., Path], events_csv: Path) -> None:
        cfg = load_config(write_config())
        events_csv.unlink()

        report = run_pipeline(cfg, geocoder=StubGeocoder(PLACES))

        assert not report.ok
        assert report.errors[0].startswith("[load]")
        assert report.map_spec is None

    def test_missing_columns(self, write_config: Callable[..., Path]) -> None:
        records = {
            "id_column": "event_id",
            "latitude_column": "lat",
            "longitude_column": "lon",
        }
        report = run_pipeline(load_config(write_config(records=records)), geocoder=StubGeocoder())

        assert not report.ok
        assert report.errors[0].startswith("[load]")

    def test_no_usable_records(self, write_config: Callable[..., Path]) -> None:
        layers = [{"name": "Riots", "kind": "points", "where": {"field": "category", "equals": "RIOT"}}]
        report = run_pipeline(
            load_config(write_config(layers=layers)),
            geocoder=StubGeocoder(PLACES),
            geocode=False,
        )

        assert not report.ok
        assert report.errors[0].startswith("[compose]")

    def test_polygon_layers(
        self,
        write_config: Callable[..., Path],
        boundaries: BoundaryRepository,
    ) -> None:
        layers = [
            {"name": "Ukraine", "kind": "polygon", "region": "ukr", "tooltip": "Ukraine"},
            {"name": "Nowhere", "kind": "polygon", "region": "ATL"},
            {"name": "Strikes", "kind": "points", "where": {"field": "category", "equals": "STRIKE"}},
        ]
        report = run_pipeline(
            load_config(write_config(layers=layers)),
            geocoder=StubGeocoder(PLACES),
            boundaries=boundaries,
        )

        assert report.ok, report.errors
        assert [layer.name for layer in report.map_spec.layers] == ["Ukraine", "Strikes"]
        assert any("Layer 'Nowhere' skipped" in msg for msg in report.warnings)

    def test_report_lines(self, write_config: Callable[..., Path]) -> None:
        report = run_pipeline(load_config(write_config()), geocoder=StubGeocoder(PLACES))
        lines = format_pipeline_lines(report)

        assert lines[-1] == "[OK] Pipeline completed with no errors."
        assert any(line.startswith("[WARN] [resolve]") for line in lines)


class TestRunResolve:
    def test_writes_resolved_csv(self, write_config: Callable[..., Path]) -> None:
        cfg = load_config(write_config())

        report = run_resolve(cfg, geocoder=StubGeocoder(PLACES))

        assert report.ok
        target = report.outputs["csv"]
        assert target == cfg.paths.output_dir / "events.resolved.csv"
        frame = pd.read_csv(target)
        assert list(frame["event_id"]) == ["EV-1", "EV-2", "EV-3", "EV-4", "EV-5"]
        assert frame.loc[1, "latitude"] == pytest.approx(46.48)
        assert frame.loc[2, "longitude"] == pytest.approx(36.23)
        assert pd.isna(frame.loc[3, "latitude"])

    def test_explicit_output_path(self, write_config: Callable[..., Path], tmp_path: Path) -> None:
        target = tmp_path / "elsewhere" / "resolved.csv"
        report = run_resolve(load_config(write_config()), output_path=target, geocode=False)

        assert report.outputs["csv"] == target
        assert target.exists()


def test_resolved_frame_adds_coordinate_columns() -> None:
    records = make_record_set([{"id": "a"}, {"id": "b"}], coordinates=[(1.0, 2.0), (None, None)])
    frame = resolved_frame(records, latitude_column="lat", longitude_column="lon")

    assert list(frame.columns) == ["id", "lat", "lon"]
    assert frame.loc[0, "lat"] == 1.0
    assert pd.isna(frame.loc[1, "lon"])
