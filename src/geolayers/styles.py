"""Style descriptor normalization and popup templates."""

from __future__ import annotations

import string
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

from .models import Record


DEFAULT_STYLES: Mapping[str, Mapping[str, Any]] = MappingProxyType(
    {
        "points": MappingProxyType(
            {"color": "#1f77b4", "radius": 4.0, "opacity": 0.9, "fill": True, "fill_opacity": 0.7}
        ),
        "density": MappingProxyType({"radius": 18.0, "blur": 14.0, "opacity": 0.6, "cmap": "inferno"}),
        "polygon": MappingProxyType(
            {"color": "#333333", "weight": 1.2, "fill": True, "fill_color": "#999999", "fill_opacity": 0.15}
        ),
    }
)

_COLOR_KEYS = {"color", "fill_color", "cmap"}
_UNIT_KEYS = {"opacity", "fill_opacity"}
_POSITIVE_KEYS = {"radius", "blur"}
_NON_NEGATIVE_KEYS = {"weight"}
_BOOL_KEYS = {"fill"}
_ALLOWED_KEYS = _COLOR_KEYS | _UNIT_KEYS | _POSITIVE_KEYS | _NON_NEGATIVE_KEYS | _BOOL_KEYS


def _number(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Style '{key}' must be numeric")
    return float(value)


def _check_value(key: str, value: Any) -> Any:
    if key in _COLOR_KEYS:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Style '{key}' must be a non-empty string")
        return value.strip()
    if key in _BOOL_KEYS:
        if not isinstance(value, bool):
            raise ValueError(f"Style '{key}' must be true or false")
        return value
    number = _number(value, key)
    if key in _UNIT_KEYS and not 0.0 <= number <= 1.0:
        raise ValueError(f"Style '{key}' must be between 0 and 1")
    if key in _POSITIVE_KEYS and number <= 0.0:
        raise ValueError(f"Style '{key}' must be > 0")
    if key in _NON_NEGATIVE_KEYS and number < 0.0:
        raise ValueError(f"Style '{key}' must be >= 0")
    return number


def normalize_style(
    raw: Mapping[str, Any] | None,
    *,
    kind: str,
    defaults: Mapping[str, Any] | None = None,
) -> Mapping[str, Any]:
    """Merge `raw` over the defaults for `kind` and validate every key."""
    if kind not in DEFAULT_STYLES:
        raise ValueError(f"Unknown layer kind '{kind}'")
    merged: dict[str, Any] = dict(DEFAULT_STYLES[kind])
    for source in (defaults or {}, raw or {}):
        for key, value in source.items():
            if key not in _ALLOWED_KEYS:
                raise ValueError(
                    f"Unknown style key '{key}' (allowed: {', '.join(sorted(_ALLOWED_KEYS))})"
                )
            merged[key] = _check_value(key, value)
    return MappingProxyType(dict(sorted(merged.items())))


class _RecordFormatter(string.Formatter):
    def get_value(self, key: int | str, args: Any, kwargs: Mapping[str, Any]) -> Any:
        if isinstance(key, int):
            raise ValueError("Popup templates only accept named fields")
        return kwargs.get(key)

    def get_field(self, field_name: str, args: Any, kwargs: Mapping[str, Any]) -> Any:
        # Plain names only; no attribute or index access into values.
        if not _is_plain_field(field_name):
            raise ValueError(f"Popup fields must be plain column names, got '{field_name}'")
        return (self.get_value(field_name, args, kwargs), field_name)

    def format_field(self, value: Any, format_spec: str) -> Any:
        if value is None:
            return ""
        try:
            return super().format_field(value, format_spec)
        except (ValueError, TypeError):
            # Spec does not fit this value's type (e.g. `.0f` on text).
            return str(value)


_FORMATTER = _RecordFormatter()


def _is_plain_field(field_name: str) -> bool:
    return bool(field_name) and not field_name.isdigit() and not any(ch in field_name for ch in ".[]")


def _template_fields(template: str) -> list[str]:
    """Field names in order, including those nested in format specs."""
    names: list[str] = []
    for _, field_name, format_spec, _ in _FORMATTER.parse(template):
        if field_name is None:
            continue
        names.append(field_name)
        if format_spec:
            names.extend(_template_fields(format_spec))
    return names


@dataclass(frozen=True, slots=True)
class PopupTemplate:
    """`str.format`-style template over record fields; nulls render empty.

    Besides the record's own columns, `index`, `latitude` and `longitude`
    are available unless a column of the same name exists.
    """

    template: str

    def __post_init__(self) -> None:
        if not isinstance(self.template, str) or not self.template.strip():
            raise ValueError("Popup template must be a non-empty string")
        for field_name in _template_fields(self.template):
            if not _is_plain_field(field_name):
                raise ValueError(
                    f"Popup template needs plain named fields, got '{field_name}' in '{self.template}'"
                )
        for _, _, _, conversion in _FORMATTER.parse(self.template):
            if conversion not in (None, "r", "s", "a"):
                raise ValueError(f"Unknown conversion '!{conversion}' in popup template '{self.template}'")

    @property
    def field_names(self) -> tuple[str, ...]:
        names: list[str] = []
        for field_name in _template_fields(self.template):
            if field_name not in names:
                names.append(field_name)
        return tuple(names)

    def __call__(self, record: Record) -> str:
        values: dict[str, Any] = {
            "index": record.index,
            "latitude": record.latitude,
            "longitude": record.longitude,
        }
        values.update(record.fields)
        return _FORMATTER.vformat(self.template, (), values)
