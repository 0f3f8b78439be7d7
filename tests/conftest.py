"""Shared fixtures for geolayers tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

import pytest
import yaml

from geolayers.geocode import GeocodeError, normalize_place_name
from geolayers.models import Record, RecordSet


class StubGeocoder:
    """Deterministic in-memory geocoder that counts calls per place name."""

    def __init__(
        self,
        places: Mapping[str, tuple[float, float]] | None = None,
        *,
        errors: Sequence[str] = (),
    ) -> None:
        self.places = {normalize_place_name(k): v for k, v in (places or {}).items()}
        self.errors = {normalize_place_name(name) for name in errors}
        self.calls: list[str] = []
        self.closed = False

    def geocode(self, place: str) -> tuple[float, float] | None:
        self.calls.append(place)
        key = normalize_place_name(place)
        if key in self.errors:
            raise GeocodeError(f"service unavailable for {place}")
        return self.places.get(key)

    def close(self) -> None:
        self.closed = True


def make_record_set(
    rows: Sequence[Mapping[str, Any]],
    *,
    name: str = "records",
    coordinates: Sequence[tuple[float | None, float | None]] | None = None,
) -> RecordSet:
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    records = []
    for idx, row in enumerate(rows):
        lat, lon = coordinates[idx] if coordinates is not None else (None, None)
        records.append(Record(index=idx, fields=dict(row), latitude=lat, longitude=lon))
    return RecordSet(name=name, columns=tuple(columns), records=tuple(records))


@pytest.fixture()
def stub_geocoder() -> StubGeocoder:
    return StubGeocoder({"X": (5.0, 6.0), "Kharkiv": (49.99, 36.23), "Odesa": (46.48, 30.72)})


@pytest.fixture()
def events() -> RecordSet:
    """Five located events, two of them strikes."""
    return make_record_set(
        [
            {"id": "a", "category": "STRIKE", "fatalities": 0},
            {"id": "b", "category": "RIOT", "fatalities": 3},
            {"id": "c", "category": "STRIKE", "fatalities": 1},
            {"id": "d", "category": "PROTEST", "fatalities": None},
            {"id": "e", "category": "riot", "fatalities": 12},
        ],
        name="events",
        coordinates=[(50.0, 30.0), (49.0, 31.0), (48.0, 32.0), (47.0, 33.0), (46.0, 34.0)],
    )


@pytest.fixture()
def events_csv(tmp_path: Path) -> Path:
    path = tmp_path / "events.csv"
    path.write_text(
        "event_id,category,fatalities,location,latitude,longitude\n"
        "EV-1,STRIKE,0,Kharkiv,49.99,36.23\n"
        "EV-2,RIOT,2,Odesa,,\n"
        "EV-3,STRIKE,0,Kharkiv,,\n"
        "EV-4,PROTEST,,Atlantis,,\n"
        "EV-5,PROTEST,1,,,\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture()
def write_config(tmp_path: Path, events_csv: Path) -> Callable[..., Path]:
    """Write a config.yaml next to the events CSV; keyword args replace sections."""

    def _write(**sections: Any) -> Path:
        raw: dict[str, Any] = {
            "project": {"title": "Test map"},
            "paths": {"records": events_csv.name, "output_dir": "out", "logs_dir": "logs"},
            "records": {
                "id_column": "event_id",
                "latitude_column": "latitude",
                "longitude_column": "longitude",
                "place_column": "location",
            },
            "geocoder": {"provider": "none"},
            "basemap": {"provider": "none", "zoom": 5},
            "render": {
                "formats": ["html"],
                "output_stem": "events",
                "image": {"width_px": 320, "height_px": 200, "dpi": 80},
            },
            "layers": [
                {"name": "All", "kind": "density"},
                {
                    "name": "Strikes",
                    "kind": "points",
                    "group": "Events",
                    "where": {"field": "category", "equals": "STRIKE"},
                    "popup": "{event_id} {category}",
                },
            ],
        }
        raw.update(sections)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(raw, sort_keys=False), encoding="utf-8")
        return path

    return _write
