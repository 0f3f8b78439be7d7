"""Administrative boundary lookup over GeoPandas-readable files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence


_LOGGER = logging.getLogger("geolayers.boundaries")


class BoundaryNotFound(LookupError):
    """Raised when a region/admin-level pair has no geometry."""


class BoundaryRepository:
    """Region geometry by identifier and admin level (0 = country).

    One file per admin level, read lazily and kept for the lifetime of the
    repository. Identifiers are matched case-insensitively against ISO code
    columns first, then GADM-style GID columns, then name columns.
    """

    ISO_COLUMNS = (
        "ADM0_A3",
        "ISO_A3",
        "ISO_A3_EH",
        "ISO3",
        "GID_0",
        "SOV_A3",
        "ADM0_A3_US",
        "WB_A3",
        "ISO_A2",
        "ISO2",
        "iso_3166_2",
        "ISO_3166_2",
    )
    CODE_COLUMNS = ("GID_1", "GID_2", "GID_3", "HASC_1", "HASC_2", "adm1_code", "code", "CODE")
    NAME_COLUMNS = (
        "NAME",
        "NAME_EN",
        "ADMIN",
        "NAME_0",
        "NAME_1",
        "NAME_2",
        "NAME_3",
        "name",
        "name_en",
    )

    def __init__(self, level_paths: Mapping[int, Path]) -> None:
        self.level_paths = dict(level_paths)
        self._frames: dict[int, Any] = {}

    @classmethod
    def from_frames(cls, frames: Mapping[int, Any]) -> BoundaryRepository:
        repo = cls({})
        for level, frame in frames.items():
            repo._frames[level] = _to_wgs84(frame)
        return repo

    @property
    def levels(self) -> tuple[int, ...]:
        return tuple(sorted(set(self.level_paths) | set(self._frames)))

    def load_level(self, level: int) -> Any:
        """Return the GeoDataFrame for one admin level, reading it once."""
        frame = self._frames.get(level)
        if frame is not None:
            return frame
        path = self.level_paths.get(level)
        if path is None:
            raise BoundaryNotFound(f"No boundary file configured for admin level {level}")
        gpd = self._require_geopandas()
        _LOGGER.info("Reading admin level %d boundaries from %s", level, path)
        frame = _to_wgs84(gpd.read_file(path))
        self._frames[level] = frame
        return frame

    def get_boundary(self, region_id: str, level: int = 0) -> Any:
        """Return the merged (multi)polygon for `region_id` at `level`."""
        needle = region_id.strip().casefold()
        if not needle:
            raise BoundaryNotFound("Empty region identifier")
        frame = self.load_level(level)

        for column in self._match_columns(frame):
            values = frame[column].astype(str).str.strip().str.casefold()
            rows = frame[values == needle]
            if len(rows) == 0:
                continue
            geometry = _merge_geometries(rows.geometry)
            if geometry is None:
                continue
            _LOGGER.debug(
                "Boundary '%s' (level %d) matched column %s (%d rows)",
                region_id,
                level,
                column,
                len(rows),
            )
            return geometry
        raise BoundaryNotFound(f"Region '{region_id}' not found at admin level {level}")

    def _match_columns(self, frame: Any) -> list[str]:
        existing = [str(col) for col in frame.columns if str(col) != "geometry"]
        ordered: list[str] = []
        iso_col = _select_best_iso_column(frame, self.ISO_COLUMNS)
        if iso_col is not None:
            ordered.append(iso_col)
        for candidates in (self.ISO_COLUMNS, self.CODE_COLUMNS, self.NAME_COLUMNS):
            for col in _existing_columns(existing, candidates):
                if col not in ordered:
                    ordered.append(col)
        return ordered

    @staticmethod
    def _require_geopandas() -> Any:
        try:
            import geopandas as gpd
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError("geopandas is required for boundary loading") from exc
        return gpd


def _to_wgs84(frame: Any) -> Any:
    crs = getattr(frame, "crs", None)
    if crs is None:
        return frame
    if crs.to_epsg() == 4326:
        return frame
    return frame.to_crs(epsg=4326)


def _existing_columns(columns: Iterable[str], candidates: Sequence[str]) -> list[str]:
    by_lower = {col.lower(): col for col in columns}
    out: list[str] = []
    for candidate in candidates:
        match = by_lower.get(candidate.lower())
        if match and match not in out:
            out.append(match)
    return out


def _merge_geometries(geometries: Iterable[Any]) -> Any | None:
    valid = [geometry for geometry in geometries if _is_valid_geometry(geometry)]
    if not valid:
        return None
    if len(valid) == 1:
        return valid[0]
    unary_union = _require_shapely_unary_union()
    merged = unary_union(valid)
    return merged if _is_valid_geometry(merged) else None


def _is_valid_geometry(geometry: Any) -> bool:
    if geometry is None:
        return False
    if hasattr(geometry, "is_empty") and bool(geometry.is_empty):
        return False
    return True


def _select_best_iso_column(dataframe: Any, preferred_columns: Sequence[str]) -> str | None:
    """Pick the ISO-like column whose values look most like country codes."""
    existing = [str(col) for col in dataframe.columns]
    candidates = _existing_columns(existing, preferred_columns)
    for candidate in _heuristic_iso_candidates(existing):
        if candidate not in candidates:
            candidates.append(candidate)
    if not candidates:
        return None

    best_col: str | None = None
    best_score: tuple[int, int] | None = None
    for candidate in candidates:
        score = _score_iso_values(dataframe[candidate].tolist())
        if best_score is None or score > best_score:
            best_col = candidate
            best_score = score
    if best_col is None or best_score is None or best_score[0] == 0:
        return None
    return best_col


def _score_iso_values(values: list[Any]) -> tuple[int, int]:
    valid: list[str] = []
    for value in values:
        if value is None:
            continue
        normalized = str(value).strip().upper()
        if len(normalized) in (2, 3) and normalized.isalpha():
            valid.append(normalized)
    return (len(valid), len(set(valid)))


def _heuristic_iso_candidates(columns: Iterable[str]) -> list[str]:
    candidates: list[str] = []
    for original in columns:
        norm = "".join(ch for ch in original.upper() if ch.isalnum())
        if "A3" not in norm and "A2" not in norm:
            continue
        if any(token in norm for token in ("ISO", "ADM0", "SOV", "WB", "BRK", "GU", "SU")):
            candidates.append(original)
    return candidates


def _require_shapely_unary_union() -> Any:
    try:
        from shapely.ops import unary_union
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("shapely is required for boundary geometry union") from exc
    return unary_union
