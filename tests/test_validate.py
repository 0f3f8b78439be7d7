"""Tests for config and input validation."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import geopandas as gpd
from shapely.geometry import box

from geolayers.config import load_config
from geolayers.validate import Validator, format_report_lines


PATHS = {"records": "events.csv", "output_dir": "out", "logs_dir": "logs"}


def _polygon_layers(region: str = "UKR") -> list[dict]:
    return [
        {"name": "Outline", "kind": "polygon", "region": region},
        {"name": "Strikes", "kind": "points"},
    ]


class TestValidator:
    def test_clean_config(self, write_config: Callable[..., Path]) -> None:
        report = Validator(load_config(write_config())).run()

        assert report.ok, report.errors
        assert report.warnings == []
        assert list(format_report_lines(report))[-1] == "[OK] Validation completed with no errors."

    def test_missing_record_file(self, write_config: Callable[..., Path], events_csv: Path) -> None:
        cfg = load_config(write_config())
        events_csv.unlink()

        report = Validator(cfg).run()
        assert any(msg.startswith("Missing record file") for msg in report.errors)

    def test_missing_location_columns(self, write_config: Callable[..., Path]) -> None:
        records = {"latitude_column": "lat", "longitude_column": "lon"}
        report = Validator(load_config(write_config(records=records))).run()

        assert not report.ok
        assert "Missing location columns" in report.errors[0]

    def test_partial_location_columns_warn(self, write_config: Callable[..., Path]) -> None:
        records = {"latitude_column": "lat", "longitude_column": "lon", "place_column": "location"}
        report = Validator(load_config(write_config(records=records))).run()

        assert report.ok
        assert any("lat, lon" in msg for msg in report.warnings)

    def test_layer_fields_not_in_file(self, write_config: Callable[..., Path]) -> None:
        layers = [
            {
                "name": "Deadly",
                "kind": "points",
                "where": {"field": "victims", "gt": 0},
                "popup": "{event_id}: {region}",
            }
        ]
        report = Validator(load_config(write_config(layers=layers))).run()

        assert report.ok
        assert any("region, victims" in msg for msg in report.warnings)

    def test_bad_popup_template(self, write_config: Callable[..., Path]) -> None:
        layers = [{"name": "Bad", "kind": "points", "popup": "{0}"}]
        report = Validator(load_config(write_config(layers=layers))).run()

        assert any(msg.startswith("Layer 'Bad' popup") for msg in report.errors)

    def test_gazetteer_required(self, write_config: Callable[..., Path]) -> None:
        report = Validator(load_config(write_config(geocoder={"provider": "gazetteer"}))).run()
        assert any("requires paths.gazetteer" in msg for msg in report.errors)

    def test_gazetteer_loaded(self, write_config: Callable[..., Path], tmp_path: Path) -> None:
        (tmp_path / "gaz.yaml").write_text("Kharkiv: [49.99, 36.23]\n", encoding="utf-8")
        cfg = load_config(
            write_config(paths={**PATHS, "gazetteer": "gaz.yaml"}, geocoder={"provider": "gazetteer"})
        )

        report = Validator(cfg).run()
        assert report.ok
        assert any("1 gazetteer entries" in msg for msg in report.infos)

    def test_unknown_basemap(self, write_config: Callable[..., Path]) -> None:
        report = Validator(load_config(write_config(basemap={"provider": "Nope.Nothing"}))).run()
        assert any("Unknown basemap provider" in msg for msg in report.errors)


class TestBoundaryChecks:
    def test_level_without_file(self, write_config: Callable[..., Path]) -> None:
        report = Validator(load_config(write_config(layers=_polygon_layers()))).run()
        assert any("without a boundary file: 0" in msg for msg in report.errors)

    def test_missing_file_warns_unless_strict(self, write_config: Callable[..., Path]) -> None:
        cfg = load_config(
            write_config(paths={**PATHS, "boundaries": {0: "admin0.geojson"}}, layers=_polygon_layers())
        )

        relaxed = Validator(cfg).run()
        assert relaxed.ok
        assert any("Missing dataset file" in msg for msg in relaxed.warnings)

        strict = Validator(cfg).run(strict_data_files=True)
        assert any("Missing dataset file" in msg for msg in strict.errors)

    def test_strict_checks_regions(self, write_config: Callable[..., Path], tmp_path: Path) -> None:
        gpd.GeoDataFrame(
            {"ADM0_A3": ["UKR"], "geometry": [box(22.0, 44.0, 40.0, 52.0)]},
            crs="EPSG:4326",
        ).to_file(tmp_path / "admin0.geojson", driver="GeoJSON")
        paths = {**PATHS, "boundaries": {0: "admin0.geojson"}}

        found = Validator(load_config(write_config(paths=paths, layers=_polygon_layers()))).run(
            strict_data_files=True
        )
        assert found.ok, found.errors

        missing = Validator(load_config(write_config(paths=paths, layers=_polygon_layers("ATL")))).run(
            strict_data_files=True
        )
        assert any("ATL(level 0)" in msg for msg in missing.errors)
