"""Validation layer for config and input datasets."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import pandas as pd

from .boundaries import BoundaryNotFound, BoundaryRepository
from .config import AppConfig
from .filters import predicate_fields
from .geocode import load_gazetteer
from .loader import LoadError, check_columns
from .render import resolve_tile_provider
from .styles import PopupTemplate, normalize_style
from .util import format_name_list


@dataclass(slots=True)
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)


class Validator:
    """Checks config and input files without geocoding or rendering anything."""

    def __init__(self, cfg: AppConfig) -> None:
        self.cfg = cfg

    def run(self, *, strict_data_files: bool = False) -> ValidationReport:
        report = ValidationReport()
        columns = self._validate_records(report)
        self._validate_layers(report, columns=columns)
        self._validate_gazetteer(report)
        self._validate_basemap(report)
        self._validate_boundaries(report, strict_data_files=strict_data_files)
        return report

    def _validate_records(self, report: ValidationReport) -> tuple[str, ...]:
        path = self.cfg.paths.records
        if not path.exists():
            report.add_error(f"Missing record file: {path}")
            return ()
        try:
            header = pd.read_csv(
                path,
                sep=self.cfg.records.delimiter,
                encoding=self.cfg.records.encoding,
                nrows=0,
            )
        except Exception as exc:
            report.add_error(f"Failed reading record file header '{path}': {exc}")
            return ()
        columns = tuple(str(col).strip() for col in header.columns)
        try:
            check_columns(
                columns,
                id_column=self.cfg.records.id_column,
                latitude_column=self.cfg.records.latitude_column,
                longitude_column=self.cfg.records.longitude_column,
                place_column=self.cfg.records.place_column,
                path=path,
            )
        except LoadError as exc:
            report.add_error(str(exc))
            return columns
        report.add_info(f"Record file {path} has {len(columns)} columns")

        configured = (
            self.cfg.records.latitude_column,
            self.cfg.records.longitude_column,
            self.cfg.records.place_column,
        )
        absent = [col for col in configured if col is not None and col not in columns]
        if absent:
            report.add_warning(
                "Configured location columns not present (falling back to the others): "
                + format_name_list(absent)
            )
        return columns

    def _validate_layers(self, report: ValidationReport, *, columns: tuple[str, ...]) -> None:
        known = set(columns) | {"index", "latitude", "longitude"}
        for layer in self.cfg.layers:
            try:
                normalize_style(layer.style, kind=layer.kind)
            except ValueError as exc:
                report.add_error(f"Layer '{layer.name}' style: {exc}")

            referenced: list[str] = []
            if layer.where is not None:
                referenced.extend(predicate_fields(layer.where))
            if layer.popup is not None:
                try:
                    referenced.extend(PopupTemplate(layer.popup).field_names)
                except ValueError as exc:
                    report.add_error(f"Layer '{layer.name}' popup: {exc}")
            if not columns:
                continue
            missing = sorted({name for name in referenced if name not in known})
            if missing:
                report.add_warning(
                    f"Layer '{layer.name}' references columns not in the record file: "
                    + format_name_list(missing)
                )
        report.add_info(f"Checked {len(self.cfg.layers)} layer definitions")

    def _validate_gazetteer(self, report: ValidationReport) -> None:
        path = self.cfg.paths.gazetteer
        if path is None:
            if self.cfg.geocoder.provider in ("gazetteer", "chained"):
                report.add_error(
                    f"geocoder.provider '{self.cfg.geocoder.provider}' requires paths.gazetteer"
                )
            return
        if not path.exists():
            report.add_error(f"Missing gazetteer file: {path}")
            return
        try:
            entries = load_gazetteer(path)
        except Exception as exc:
            report.add_error(f"Failed parsing gazetteer '{path}': {exc}")
            return
        report.add_info(f"Loaded {len(entries)} gazetteer entries from {path}")

    def _validate_basemap(self, report: ValidationReport) -> None:
        try:
            resolve_tile_provider(self.cfg.basemap.provider)
        except ValueError as exc:
            report.add_error(str(exc))
            return
        report.add_info(f"Basemap provider: {self.cfg.basemap.provider}")

    def _validate_boundaries(self, report: ValidationReport, *, strict_data_files: bool) -> None:
        polygon_layers = [layer for layer in self.cfg.layers if layer.kind == "polygon"]
        if not polygon_layers:
            return
        levels = sorted({layer.admin_level for layer in polygon_layers})
        unconfigured = [level for level in levels if level not in self.cfg.paths.boundaries]
        if unconfigured:
            report.add_error(
                "Polygon layers use admin levels without a boundary file: "
                + format_name_list([str(level) for level in unconfigured])
            )
        for level in levels:
            path = self.cfg.paths.boundaries.get(level)
            if path is not None:
                self._check_exists(report, path, as_error=strict_data_files)
        if not strict_data_files:
            return

        repo = BoundaryRepository(self.cfg.paths.boundaries)
        missing_regions: list[str] = []
        for layer in polygon_layers:
            path = self.cfg.paths.boundaries.get(layer.admin_level)
            if path is None or not path.exists():
                continue
            try:
                repo.get_boundary(layer.region or "", layer.admin_level)
            except BoundaryNotFound:
                missing_regions.append(f"{layer.region}(level {layer.admin_level})")
            except Exception as exc:
                report.add_error(f"Failed loading boundaries for level {layer.admin_level}: {exc}")
                return
        if missing_regions:
            report.add_error(
                "Regions not found in boundary files: " + format_name_list(sorted(missing_regions))
            )

    @staticmethod
    def _check_exists(report: ValidationReport, path: Path, *, as_error: bool) -> None:
        if path.exists():
            return
        msg = f"Missing dataset file: {path}"
        if as_error:
            report.add_error(msg)
        else:
            report.add_warning(msg)


def format_report_lines(report: ValidationReport) -> Iterable[str]:
    for info in report.infos:
        yield f"[INFO] {info}"
    for warning in report.warnings:
        yield f"[WARN] {warning}"
    for error in report.errors:
        yield f"[ERROR] {error}"
    if report.ok:
        yield "[OK] Validation completed with no errors."
