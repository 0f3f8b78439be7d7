"""Domain models shared across pipeline modules."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, ClassVar, Iterator, Mapping, Sequence


PopupFn = Callable[["Record"], str]


def _check_coordinate(value: Any, *, lower: float, upper: float, field_name: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Expected numeric value for '{field_name}'")
    out = float(value)
    if math.isnan(out):
        return None
    if out < lower or out > upper:
        raise ValueError(f"{field_name} must be between {lower:g} and {upper:g}, got {out}")
    return out


@dataclass(frozen=True, slots=True)
class Record:
    """One source row plus its resolved WGS84 coordinates."""

    index: int
    fields: Mapping[str, Any]
    latitude: float | None = None
    longitude: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(
            self,
            "latitude",
            _check_coordinate(self.latitude, lower=-90.0, upper=90.0, field_name="latitude"),
        )
        object.__setattr__(
            self,
            "longitude",
            _check_coordinate(self.longitude, lower=-180.0, upper=180.0, field_name="longitude"),
        )

    def __getitem__(self, name: str) -> Any:
        return self.fields[name]

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def with_coordinates(self, latitude: float | None, longitude: float | None) -> Record:
        return replace(self, latitude=latitude, longitude=longitude)


@dataclass(frozen=True, slots=True)
class RecordSet:
    """Ordered, immutable collection of records sharing one schema."""

    name: str
    columns: tuple[str, ...]
    records: tuple[Record, ...] = ()

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    def __getitem__(self, idx: int) -> Record:
        return self.records[idx]

    def derive(self, records: Sequence[Record], *, name: str | None = None) -> RecordSet:
        return RecordSet(
            name=self.name if name is None else name,
            columns=self.columns,
            records=tuple(records),
        )

    @property
    def located(self) -> tuple[Record, ...]:
        return tuple(record for record in self.records if record.has_coordinates)


@dataclass(frozen=True, slots=True)
class ResolutionFailure:
    place_name: str
    reason: str
    row_indices: tuple[int, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "place_name": self.place_name,
            "reason": self.reason,
            "row_indices": list(self.row_indices),
        }


@dataclass(frozen=True, slots=True)
class ResolutionWarning:
    """Non-fatal batch of coordinate resolution problems for one run."""

    failures: tuple[ResolutionFailure, ...] = ()
    missing_place_rows: tuple[int, ...] = ()
    invalid_coordinate_rows: tuple[int, ...] = ()

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def failed_place_names(self) -> tuple[str, ...]:
        return tuple(failure.place_name for failure in self.failures)

    @property
    def unresolved_rows(self) -> tuple[int, ...]:
        rows = set(self.missing_place_rows)
        for failure in self.failures:
            rows.update(failure.row_indices)
        return tuple(sorted(rows))

    def __bool__(self) -> bool:
        return bool(self.failures or self.missing_place_rows or self.invalid_coordinate_rows)

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_count": self.failure_count,
            "failures": [failure.to_dict() for failure in self.failures],
            "missing_place_rows": list(self.missing_place_rows),
            "invalid_coordinate_rows": list(self.invalid_coordinate_rows),
        }


@dataclass(frozen=True, slots=True)
class CompositionWarning:
    layer_name: str
    excluded_count: int = 0
    degraded: bool = False

    @property
    def message(self) -> str:
        parts: list[str] = []
        if self.excluded_count:
            parts.append(f"{self.excluded_count} record(s) without coordinates excluded")
        if self.degraded:
            parts.append("too few points for a density surface; layer left empty")
        return f"Layer '{self.layer_name}': " + "; ".join(parts)


def describe_popup(popup: PopupFn | None) -> str | None:
    if popup is None:
        return None
    template = getattr(popup, "template", None)
    if isinstance(template, str):
        return template
    module = getattr(popup, "__module__", "")
    qualname = getattr(popup, "__qualname__", type(popup).__qualname__)
    return f"{module}.{qualname}" if module else qualname


def _point_rows(records: RecordSet) -> list[list[Any]]:
    return [[record.index, record.latitude, record.longitude] for record in records]


@dataclass(frozen=True, slots=True)
class PointLayer:
    kind: ClassVar[str] = "points"

    name: str
    records: RecordSet
    style: Mapping[str, Any] = field(default_factory=dict)
    group: str | None = None
    popup: PopupFn | None = None
    excluded_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "group": self.group,
            "style": dict(sorted(self.style.items())),
            "popup": describe_popup(self.popup),
            "excluded_count": self.excluded_count,
            "points": _point_rows(self.records),
        }


@dataclass(frozen=True, slots=True)
class DensityLayer:
    kind: ClassVar[str] = "density"

    name: str
    records: RecordSet
    style: Mapping[str, Any] = field(default_factory=dict)
    group: str | None = None
    popup: PopupFn | None = None
    excluded_count: int = 0
    degraded: bool = False

    @property
    def is_empty(self) -> bool:
        return len(self.records) == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "group": self.group,
            "style": dict(sorted(self.style.items())),
            "popup": describe_popup(self.popup),
            "excluded_count": self.excluded_count,
            "degraded": self.degraded,
            "points": _point_rows(self.records),
        }


@dataclass(frozen=True, slots=True)
class PolygonLayer:
    kind: ClassVar[str] = "polygon"

    name: str
    geometry: Any
    style: Mapping[str, Any] = field(default_factory=dict)
    group: str | None = None
    tooltip: str | None = None
    region_id: str | None = None
    admin_level: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "group": self.group,
            "style": dict(sorted(self.style.items())),
            "tooltip": self.tooltip,
            "region_id": self.region_id,
            "admin_level": self.admin_level,
            "geometry_wkt": getattr(self.geometry, "wkt", None),
        }


Layer = PointLayer | DensityLayer | PolygonLayer


@dataclass(frozen=True, slots=True)
class BasemapSpec:
    """Tile provider plus initial view. `center` is (lat, lon)."""

    provider: str
    center: tuple[float, float] | None = None
    zoom: int = 4

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "center": list(self.center) if self.center is not None else None,
            "zoom": self.zoom,
        }


@dataclass(frozen=True, slots=True)
class MapSpec:
    """Everything a renderer needs, in draw order (last layer on top)."""

    basemap: BasemapSpec
    layers: tuple[Layer, ...]
    title: str = ""

    @property
    def groups(self) -> tuple[str, ...]:
        seen: list[str] = []
        for layer in self.layers:
            if layer.group is not None and layer.group not in seen:
                seen.append(layer.group)
        return tuple(seen)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "basemap": self.basemap.to_dict(),
            "layers": [layer.to_dict() for layer in self.layers],
        }
