"""End-to-end runner: load, resolve, subset, compose, render."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

import pandas as pd

from .boundaries import BoundaryNotFound, BoundaryRepository
from .compose import CompositionError, LayerComposer
from .config import OUTPUT_FORMATS, AppConfig, LayerConfig
from .filters import subset
from .geocode import CoordinateResolver, Geocoder, ResolutionResult, build_geocoder
from .interactive import InteractiveMapRenderer
from .loader import LoadError, load_records_from_config
from .models import BasemapSpec, MapSpec, RecordSet, ResolutionWarning
from .render import MapRenderer, StaticMapRenderer
from .styles import PopupTemplate
from .util import format_name_list, write_json


_LOGGER = logging.getLogger("geolayers.pipeline")

MAP_SPEC_FILENAME = "map_spec.json"


@dataclass(slots=True)
class PipelineReport:
    output_dir: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)
    map_spec: MapSpec | None = None
    map_spec_sha256: str | None = None
    resolution_warning: ResolutionWarning | None = None
    outputs: dict[str, Path] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)


def default_renderers(cfg: AppConfig) -> dict[str, MapRenderer]:
    return {"png": StaticMapRenderer(cfg.render), "html": InteractiveMapRenderer()}


def run_pipeline(
    cfg: AppConfig,
    *,
    geocoder: Geocoder | None = None,
    boundaries: BoundaryRepository | None = None,
    renderers: Mapping[str, MapRenderer] | None = None,
    formats: Sequence[str] | None = None,
    geocode: bool = True,
) -> PipelineReport:
    """Run every stage once and report what happened.

    `geocoder` overrides the collaborator named in config; with
    `geocode=False` place names are not looked up at all.
    """
    report = PipelineReport(output_dir=cfg.paths.output_dir)
    t0 = time.perf_counter()

    chosen_formats = _select_formats(report, formats or cfg.render.formats)
    if not report.ok:
        return report

    records = _load_stage(cfg, report)
    if records is None:
        return report

    resolution = _resolve_stage(cfg, report, records, geocoder=geocoder, geocode=geocode)
    if resolution is None:
        return report

    map_spec = _compose_stage(cfg, report, resolution.records, boundaries=boundaries)
    if map_spec is None:
        return report

    spec_payload = map_spec.to_dict()
    report.map_spec = map_spec
    spec_path = cfg.paths.output_dir / MAP_SPEC_FILENAME
    report.map_spec_sha256 = write_json(spec_path, spec_payload)
    report.outputs["map_spec"] = spec_path
    report.add_info(f"Map spec written to {spec_path} (sha256={report.map_spec_sha256[:12]})")

    active_renderers = dict(renderers) if renderers is not None else default_renderers(cfg)
    for fmt in chosen_formats:
        renderer = active_renderers.get(fmt)
        if renderer is None:
            report.add_error(f"[render:{fmt}] No renderer registered for this format.")
            return report
        output_path = cfg.paths.output_dir / f"{cfg.render.output_stem}.{fmt}"
        try:
            outcome = renderer.render(map_spec, output_path)
        except Exception as exc:
            _LOGGER.exception("Renderer for %s failed", fmt)
            report.add_error(f"[render:{fmt}] {exc}")
            return report
        report.outputs[fmt] = outcome.path
        for message in outcome.warnings:
            report.add_warning(f"[render:{fmt}] {message}")
        report.add_info(f"[render:{fmt}] wrote {outcome.path}")

    report.summary["outputs_written"] = len(chosen_formats)
    report.add_info(
        "Pipeline summary: "
        + ", ".join(f"{key}={value}" for key, value in sorted(report.summary.items()))
        + f" ({time.perf_counter() - t0:.2f}s)"
    )
    return report


def run_resolve(
    cfg: AppConfig,
    *,
    output_path: Path | None = None,
    geocoder: Geocoder | None = None,
    geocode: bool = True,
) -> PipelineReport:
    """Load and resolve only, then write the records with coordinates as CSV."""
    report = PipelineReport(output_dir=cfg.paths.output_dir)
    records = _load_stage(cfg, report)
    if records is None:
        return report
    resolution = _resolve_stage(cfg, report, records, geocoder=geocoder, geocode=geocode)
    if resolution is None:
        return report

    target = output_path or cfg.paths.output_dir / f"{cfg.render.output_stem}.resolved.csv"
    frame = resolved_frame(
        resolution.records,
        latitude_column=cfg.records.latitude_column or "latitude",
        longitude_column=cfg.records.longitude_column or "longitude",
    )
    target.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(target, index=False, sep=cfg.records.delimiter, encoding=cfg.records.encoding)
    report.outputs["csv"] = target
    report.add_info(f"Resolved records written to {target}")
    return report


def resolved_frame(
    records: RecordSet,
    *,
    latitude_column: str = "latitude",
    longitude_column: str = "longitude",
) -> pd.DataFrame:
    """Records as a DataFrame in source order, coordinates in the given columns."""
    rows: list[dict[str, Any]] = []
    for record in records:
        row = dict(record.fields)
        row[latitude_column] = record.latitude
        row[longitude_column] = record.longitude
        rows.append(row)
    columns = list(records.columns)
    for col in (latitude_column, longitude_column):
        if col not in columns:
            columns.append(col)
    return pd.DataFrame(rows, columns=columns)


def build_layers(
    cfg: AppConfig,
    records: RecordSet,
    composer: LayerComposer,
    *,
    boundaries: BoundaryRepository,
    report: PipelineReport,
) -> None:
    """Add one layer per `layers:` entry, in config order."""
    for layer_cfg in cfg.layers:
        if layer_cfg.kind == "polygon":
            _add_polygon_layer(composer, layer_cfg, boundaries=boundaries, report=report)
            continue

        selected = subset(records, layer_cfg.where, name=layer_cfg.name)
        popup = PopupTemplate(layer_cfg.popup) if layer_cfg.popup else None
        add = composer.add_density if layer_cfg.kind == "density" else composer.add_points
        add(
            selected,
            layer_cfg.style,
            name=layer_cfg.name,
            group=layer_cfg.group,
            popup=popup,
        )
        report.add_info(
            f"Layer '{layer_cfg.name}' ({layer_cfg.kind}): {len(selected)} of {len(records)} records"
        )


def format_pipeline_lines(report: PipelineReport) -> Sequence[str]:
    lines: list[str] = []
    lines.extend(f"[INFO] {msg}" for msg in report.infos)
    lines.extend(f"[WARN] {msg}" for msg in report.warnings)
    lines.extend(f"[ERROR] {msg}" for msg in report.errors)
    if report.ok:
        lines.append("[OK] Pipeline completed with no errors.")
    return lines


def _select_formats(report: PipelineReport, formats: Sequence[str]) -> tuple[str, ...]:
    chosen: list[str] = []
    for item in formats:
        fmt = item.strip().casefold()
        if fmt not in OUTPUT_FORMATS:
            report.add_error(
                f"Unsupported output format '{item}' (expected: {', '.join(OUTPUT_FORMATS)})"
            )
            continue
        if fmt not in chosen:
            chosen.append(fmt)
    if not chosen and report.ok:
        report.add_error("No output formats selected.")
    return tuple(chosen)


def _load_stage(cfg: AppConfig, report: PipelineReport) -> RecordSet | None:
    try:
        records = load_records_from_config(cfg.records, cfg.paths.records)
    except LoadError as exc:
        report.add_error(f"[load] {exc}")
        return None
    report.summary["records_loaded"] = len(records)
    report.add_info(f"[load] {len(records)} records from {cfg.paths.records}")
    return records


def _resolve_stage(
    cfg: AppConfig,
    report: PipelineReport,
    records: RecordSet,
    *,
    geocoder: Geocoder | None,
    geocode: bool,
) -> ResolutionResult | None:
    if not geocode:
        active: Geocoder | None = None
        report.add_info("[resolve] Geocoding disabled; only explicit coordinates are used.")
    elif geocoder is not None:
        active = geocoder
    else:
        try:
            active = build_geocoder(cfg)
        except (OSError, ValueError) as exc:
            report.add_error(f"[resolve] Failed initializing geocoder: {exc}")
            return None

    with CoordinateResolver(active, max_workers=cfg.geocoder.max_workers) as resolver:
        result = resolver.resolve(
            records,
            latitude_field=cfg.records.latitude_column,
            longitude_field=cfg.records.longitude_column,
            place_field=cfg.records.place_column,
        )

    report.summary.update(result.summary)
    warning = result.warning
    report.resolution_warning = warning
    if warning.failures:
        report.add_warning(
            f"[resolve] {warning.failure_count} place name(s) could not be geocoded: "
            + format_name_list(list(warning.failed_place_names))
        )
    if warning.missing_place_rows:
        report.add_warning(
            f"[resolve] {len(warning.missing_place_rows)} row(s) have neither coordinates nor a place name"
        )
    if warning.invalid_coordinate_rows:
        report.add_warning(
            f"[resolve] {len(warning.invalid_coordinate_rows)} row(s) had unusable coordinates"
        )
    report.add_info(
        f"[resolve] {result.summary.get('records_resolved', 0)}/{len(records)} records have coordinates"
    )
    return result


def _compose_stage(
    cfg: AppConfig,
    report: PipelineReport,
    records: RecordSet,
    *,
    boundaries: BoundaryRepository | None,
) -> MapSpec | None:
    composer = LayerComposer(
        density_min_points=cfg.composition.density_min_points,
        default_styles={
            "points": cfg.composition.point_style,
            "density": cfg.composition.density_style,
            "polygon": cfg.composition.polygon_style,
        },
        title=cfg.project.title,
    )
    repo = boundaries if boundaries is not None else BoundaryRepository(cfg.paths.boundaries)
    try:
        build_layers(cfg, records, composer, boundaries=repo, report=report)
        result = composer.build(
            BasemapSpec(
                provider=cfg.basemap.provider,
                center=cfg.basemap.center,
                zoom=cfg.basemap.zoom,
            )
        )
    except CompositionError as exc:
        report.add_error(f"[compose] {exc}")
        return None
    except ValueError as exc:
        report.add_error(f"[compose] Invalid layer configuration: {exc}")
        return None
    except (OSError, RuntimeError) as exc:
        report.add_error(f"[compose] Failed loading boundaries: {exc}")
        return None

    for warning in result.warnings:
        report.add_warning(f"[compose] {warning.message}")
    report.summary["layers"] = len(result.map_spec.layers)
    report.summary["records_excluded"] = result.excluded_total
    return result.map_spec


def _add_polygon_layer(
    composer: LayerComposer,
    layer_cfg: LayerConfig,
    *,
    boundaries: BoundaryRepository,
    report: PipelineReport,
) -> None:
    region = layer_cfg.region or ""
    try:
        geometry = boundaries.get_boundary(region, layer_cfg.admin_level)
    except BoundaryNotFound as exc:
        report.add_warning(f"[compose] Layer '{layer_cfg.name}' skipped: {exc}")
        return
    composer.add_polygons(
        geometry,
        layer_cfg.style,
        name=layer_cfg.name,
        group=layer_cfg.group,
        tooltip=layer_cfg.tooltip,
        region_id=region,
        admin_level=layer_cfg.admin_level,
    )
    report.add_info(
        f"Layer '{layer_cfg.name}' (polygon): region {region} at admin level {layer_cfg.admin_level}"
    )
