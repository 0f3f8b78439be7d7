"""Tests for style normalization and popup templates."""

from __future__ import annotations

import pytest

from geolayers.models import Record
from geolayers.styles import DEFAULT_STYLES, PopupTemplate, normalize_style


class TestNormalizeStyle:
    def test_defaults_for_kind(self) -> None:
        style = normalize_style(None, kind="points")
        assert dict(style) == dict(sorted(DEFAULT_STYLES["points"].items()))

    def test_layer_overrides_config_defaults(self) -> None:
        style = normalize_style(
            {"color": "red"},
            kind="points",
            defaults={"color": "blue", "radius": 7},
        )
        assert style["color"] == "red"
        assert style["radius"] == 7.0

    def test_result_is_read_only(self) -> None:
        style = normalize_style({"radius": 3}, kind="density")
        with pytest.raises(TypeError):
            style["radius"] = 4  # type: ignore[index]

    @pytest.mark.parametrize(
        "raw",
        [
            {"colour": "red"},
            {"opacity": 1.5},
            {"radius": 0},
            {"weight": -1},
            {"fill": "yes"},
            {"color": ""},
            {"radius": True},
        ],
    )
    def test_invalid_values(self, raw: dict) -> None:
        with pytest.raises(ValueError):
            normalize_style(raw, kind="points")

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError):
            normalize_style({}, kind="lines")


class TestPopupTemplate:
    def test_formats_record_fields(self) -> None:
        record = Record(index=3, fields={"name": "Lviv", "count": 4}, latitude=49.84, longitude=24.03)
        popup = PopupTemplate("{name}: {count} events at {latitude:.1f}, {longitude:.1f} (#{index})")

        assert popup(record) == "Lviv: 4 events at 49.8, 24.0 (#3)"

    def test_nulls_and_missing_fields_render_empty(self) -> None:
        record = Record(index=0, fields={"name": "Lviv", "notes": None})
        assert PopupTemplate("{name} [{notes}] [{absent}]")(record) == "Lviv [] []"

    def test_record_field_shadows_builtin(self) -> None:
        record = Record(index=0, fields={"index": "row-a"})
        assert PopupTemplate("{index}")(record) == "row-a"

    def test_field_names(self) -> None:
        assert PopupTemplate("{a} {b:>{width}} {a}").field_names == ("a", "b", "width")

    def test_format_spec_mismatch_falls_back_to_text(self) -> None:
        record = Record(index=0, fields={"fatalities": "unknown", "count": 2.5})
        popup = PopupTemplate("{fatalities:.0f} dead, {count:d} reports")

        assert popup(record) == "unknown dead, 2.5 reports"

    def test_format_spec_applied_when_it_fits(self) -> None:
        record = Record(index=0, fields={"fatalities": 3.0})
        assert PopupTemplate("{fatalities:.0f}")(record) == "3"

    @pytest.mark.parametrize(
        "template",
        ["", "   ", "{0}", "{}", "{notes.__class__}", "{notes[0]}", "{a:{b.c}}", "{a!x}"],
    )
    def test_rejects_bad_templates(self, template: str) -> None:
        with pytest.raises(ValueError):
            PopupTemplate(template)

    def test_same_input_same_output(self) -> None:
        record = Record(index=1, fields={"name": "Odesa"})
        popup = PopupTemplate("{name}")
        assert popup(record) == popup(record)
