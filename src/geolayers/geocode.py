"""Place-name geocoding collaborators and the per-run coordinate resolver."""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

import requests
import yaml

from .config import AppConfig, GeocoderConfig
from .models import Record, RecordSet, ResolutionFailure, ResolutionWarning


_RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}

_LOGGER = logging.getLogger("geolayers.geocode")


class GeocodeError(RuntimeError):
    """Transport-level lookup failure: network error, timeout, rate limit."""


class Geocoder(Protocol):
    def geocode(self, place: str) -> tuple[float, float] | None:
        """Return (lat, lon) for `place`, or None when it is not found."""
        ...


def normalize_place_name(value: Any) -> str:
    return " ".join(str(value).split()).casefold()


def _valid_lat_lon(lat: float, lon: float) -> bool:
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


class NominatimGeocoder:
    """OpenStreetMap Nominatim search client with pacing and retries."""

    def __init__(self, cfg: GeocoderConfig, *, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": cfg.user_agent})
        self._min_request_interval_s = max(float(cfg.min_request_interval_s), 0.0)
        self._max_retries = max(int(cfg.max_retries), 0)
        self._retry_backoff_s = max(float(cfg.retry_backoff_s), 0.01)
        self._last_request_started_at: float | None = None
        self._slot_lock = threading.Lock()

    def geocode(self, place: str) -> tuple[float, float] | None:
        params: dict[str, Any] = {"q": place, "format": "jsonv2", "limit": 1}
        if self.cfg.country_codes:
            params["countrycodes"] = ",".join(self.cfg.country_codes)
        response = self._request_get(self.cfg.base_url, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise GeocodeError(f"Invalid JSON from geocoder for '{place}'") from exc
        if not isinstance(payload, list):
            raise GeocodeError(f"Unexpected geocoder payload for '{place}'")
        if not payload:
            return None
        first = payload[0]
        if not isinstance(first, Mapping):
            raise GeocodeError(f"Unexpected geocoder result for '{place}'")
        try:
            return (float(first["lat"]), float(first["lon"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodeError(f"Geocoder result for '{place}' has no usable lat/lon") from exc

    def close(self) -> None:
        self._session.close()

    def _request_get(self, url: str, *, params: Mapping[str, Any]) -> requests.Response:
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            self._wait_for_request_slot()
            try:
                response = self._session.get(
                    url,
                    params=params,
                    timeout=self.cfg.request_timeout_s,
                )
            except requests.RequestException as exc:
                if attempt >= self._max_retries:
                    raise GeocodeError(f"Geocoder request failed: {exc}") from exc
                delay_s = self._retry_backoff_s * (2**attempt)
                _LOGGER.warning(
                    "Geocoder request error (%s); retrying in %.1fs (%d/%d)",
                    exc,
                    delay_s,
                    attempt + 1,
                    self._max_retries,
                )
                time.sleep(delay_s)
                continue

            if response.status_code not in _RETRYABLE_HTTP_STATUS:
                try:
                    response.raise_for_status()
                except requests.HTTPError as exc:
                    raise GeocodeError(f"Geocoder HTTP error: {exc}") from exc
                return response
            if attempt >= self._max_retries:
                status = response.status_code
                response.close()
                if status == 429:
                    raise GeocodeError("Geocoder rate limit exceeded (HTTP 429)")
                raise GeocodeError(f"Geocoder unavailable (HTTP {status})")
            delay_s = self._compute_retry_delay_s(response=response, attempt=attempt)
            _LOGGER.warning(
                "Retryable response %s for %s; retrying in %.1fs (%d/%d)",
                response.status_code,
                response.url,
                delay_s,
                attempt + 1,
                self._max_retries,
            )
            response.close()
            time.sleep(delay_s)
        raise GeocodeError("Geocoder retry loop exhausted")

    def _wait_for_request_slot(self) -> None:
        with self._slot_lock:
            if self._min_request_interval_s <= 0:
                self._last_request_started_at = time.monotonic()
                return
            now = time.monotonic()
            if self._last_request_started_at is not None:
                elapsed = now - self._last_request_started_at
                if elapsed < self._min_request_interval_s:
                    time.sleep(self._min_request_interval_s - elapsed)
            self._last_request_started_at = time.monotonic()

    def _compute_retry_delay_s(self, *, response: requests.Response, attempt: int) -> float:
        retry_after_s = _parse_retry_after_seconds(response.headers.get("Retry-After"))
        exponential_s = self._retry_backoff_s * (2**attempt)
        chosen = max(exponential_s, retry_after_s)
        return min(chosen, 300.0)


class GazetteerGeocoder:
    """Offline lookup table keyed by normalized place name."""

    def __init__(self, entries: Mapping[str, tuple[float, float]]) -> None:
        self._entries = {normalize_place_name(name): coords for name, coords in entries.items()}

    @classmethod
    def from_file(cls, path: Path) -> GazetteerGeocoder:
        return cls(load_gazetteer(path))

    def __len__(self) -> int:
        return len(self._entries)

    def geocode(self, place: str) -> tuple[float, float] | None:
        return self._entries.get(normalize_place_name(place))


class ChainedGeocoder:
    """Ask each collaborator in turn; the first hit wins."""

    def __init__(self, geocoders: Sequence[Geocoder]) -> None:
        if not geocoders:
            raise ValueError("ChainedGeocoder needs at least one geocoder")
        self.geocoders = tuple(geocoders)

    def geocode(self, place: str) -> tuple[float, float] | None:
        for geocoder in self.geocoders:
            result = geocoder.geocode(place)
            if result is not None:
                return result
        return None

    def close(self) -> None:
        for geocoder in self.geocoders:
            _close_geocoder(geocoder)


def load_gazetteer(path: Path) -> dict[str, tuple[float, float]]:
    """Load `place: [lat, lon]` (or `{lat, lon}`) entries from YAML."""
    if not path.exists():
        raise FileNotFoundError(f"Gazetteer file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Expected mapping in {path}")

    out: dict[str, tuple[float, float]] = {}
    for name_raw, value in raw.items():
        if not isinstance(name_raw, str) or not name_raw.strip():
            raise ValueError(f"Gazetteer keys must be non-empty strings in {path}")
        if isinstance(value, Mapping):
            lat_raw, lon_raw = value.get("lat"), value.get("lon")
        elif isinstance(value, list) and len(value) == 2:
            lat_raw, lon_raw = value
        else:
            raise ValueError(f"Gazetteer entry '{name_raw}' must be [lat, lon] or {{lat, lon}}")
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (lat_raw, lon_raw)):
            raise ValueError(f"Gazetteer entry '{name_raw}' needs numeric lat/lon")
        lat, lon = float(lat_raw), float(lon_raw)
        if not _valid_lat_lon(lat, lon):
            raise ValueError(f"Gazetteer entry '{name_raw}' is outside WGS84 bounds")
        key = normalize_place_name(name_raw)
        if key in out:
            raise ValueError(f"Duplicate gazetteer entry '{name_raw}' in {path}")
        out[key] = (lat, lon)
    return out


def build_geocoder(cfg: AppConfig) -> Geocoder | None:
    """Instantiate the geocoding collaborator named in config."""
    provider = cfg.geocoder.provider
    if provider == "none":
        return None
    if provider == "nominatim":
        return NominatimGeocoder(cfg.geocoder)
    if cfg.paths.gazetteer is None:
        raise ValueError(f"geocoder.provider '{provider}' requires paths.gazetteer")
    gazetteer = GazetteerGeocoder.from_file(cfg.paths.gazetteer)
    if provider == "gazetteer":
        return gazetteer
    return ChainedGeocoder([gazetteer, NominatimGeocoder(cfg.geocoder)])


@dataclass(frozen=True, slots=True)
class _CacheEntry:
    coordinates: tuple[float, float] | None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    records: RecordSet
    warning: ResolutionWarning
    summary: Mapping[str, int] = field(default_factory=dict)


class CoordinateResolver:
    """Fill in record coordinates, geocoding each distinct place name once.

    The cache lives on the instance, so one resolver corresponds to one
    pipeline run. With `max_workers > 1` distinct names are looked up on a
    bounded thread pool; cache writes stay on the calling thread.
    """

    def __init__(self, geocoder: Geocoder | None, *, max_workers: int = 1) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.geocoder = geocoder
        self.max_workers = max_workers
        self._cache: dict[str, _CacheEntry] = {}
        self.lookups = 0

    def __enter__(self) -> CoordinateResolver:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        if self.geocoder is not None:
            _close_geocoder(self.geocoder)
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def resolve(
        self,
        records: RecordSet,
        *,
        latitude_field: str | None = None,
        longitude_field: str | None = None,
        place_field: str | None = None,
    ) -> ResolutionResult:
        explicit: dict[int, tuple[float, float]] = {}
        invalid_rows: list[int] = []
        missing_place_rows: list[int] = []
        pending: dict[str, list[int]] = {}
        spellings: dict[str, str] = {}

        for pos, record in enumerate(records):
            coords, invalid = _explicit_coordinates(record, latitude_field, longitude_field)
            if invalid:
                invalid_rows.append(record.index)
                _LOGGER.warning(
                    "Row %d has unusable coordinates (%r, %r); falling back to place name",
                    record.index,
                    record.get(latitude_field) if latitude_field else None,
                    record.get(longitude_field) if longitude_field else None,
                )
            if coords is not None:
                explicit[pos] = coords
                continue

            place_raw = record.get(place_field) if place_field else None
            if place_raw is None or not str(place_raw).strip():
                missing_place_rows.append(record.index)
                continue
            key = normalize_place_name(place_raw)
            pending.setdefault(key, []).append(pos)
            spellings.setdefault(key, " ".join(str(place_raw).split()))

        lookups_before = self.lookups
        cache_hits = sum(1 for key in pending if key in self._cache)
        self._fill_cache([(key, spellings[key]) for key in pending if key not in self._cache])

        resolved: list[Record] = []
        by_pos: dict[int, tuple[float, float] | None] = dict(explicit)
        for key, positions in pending.items():
            entry = self._cache[key]
            for pos in positions:
                by_pos[pos] = entry.coordinates
        for pos, record in enumerate(records):
            coords = by_pos.get(pos)
            if coords is None:
                resolved.append(record.with_coordinates(None, None))
            else:
                resolved.append(record.with_coordinates(coords[0], coords[1]))

        failures = tuple(
            ResolutionFailure(
                place_name=spellings[key],
                reason=self._cache[key].reason or "not found",
                row_indices=tuple(records[pos].index for pos in positions),
            )
            for key, positions in pending.items()
            if self._cache[key].coordinates is None
        )
        warning = ResolutionWarning(
            failures=failures,
            missing_place_rows=tuple(missing_place_rows),
            invalid_coordinate_rows=tuple(invalid_rows),
        )
        summary = {
            "records_total": len(records),
            "records_explicit": len(explicit),
            "records_resolved": sum(1 for record in resolved if record.has_coordinates),
            "records_unresolved": sum(1 for record in resolved if not record.has_coordinates),
            "places_distinct": len(pending),
            "places_failed": len(failures),
            "geocoder_calls": self.lookups - lookups_before,
            "cache_hits": cache_hits,
        }
        _LOGGER.info(
            "Resolved %d/%d records (%d explicit, %d distinct places, %d geocoder calls, %d failed)",
            summary["records_resolved"],
            summary["records_total"],
            summary["records_explicit"],
            summary["places_distinct"],
            summary["geocoder_calls"],
            summary["places_failed"],
        )
        return ResolutionResult(records=records.derive(resolved), warning=warning, summary=summary)

    def _fill_cache(self, todo: Sequence[tuple[str, str]]) -> None:
        if not todo:
            return
        if self.geocoder is not None:
            self.lookups += len(todo)
        if self.max_workers == 1 or len(todo) == 1:
            for key, spelling in todo:
                self._store(key, self._lookup_one(spelling))
            return

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(todo))) as pool:
            futures = {pool.submit(self._lookup_one, spelling): key for key, spelling in todo}
            for future in as_completed(futures):
                self._store(futures[future], future.result())

    def _store(self, key: str, entry: _CacheEntry) -> None:
        if key not in self._cache:
            self._cache[key] = entry

    def _lookup_one(self, place: str) -> _CacheEntry:
        if self.geocoder is None:
            return _CacheEntry(coordinates=None, reason="no geocoder configured")
        try:
            result = self.geocoder.geocode(place)
        except GeocodeError as exc:
            _LOGGER.warning("Geocoding '%s' failed: %s", place, exc)
            return _CacheEntry(coordinates=None, reason=str(exc))
        except Exception as exc:
            _LOGGER.exception("Geocoder raised unexpectedly for '%s'", place)
            return _CacheEntry(coordinates=None, reason=f"{type(exc).__name__}: {exc}")
        if result is None:
            _LOGGER.debug("No geocoding match for '%s'", place)
            return _CacheEntry(coordinates=None, reason="not found")
        try:
            lat_raw, lon_raw = result
            lat, lon = float(lat_raw), float(lon_raw)
        except (TypeError, ValueError) as exc:
            _LOGGER.warning("Geocoder returned a malformed result for '%s': %r", place, result)
            return _CacheEntry(coordinates=None, reason=f"malformed result {result!r}: {exc}")
        if not _valid_lat_lon(lat, lon):
            return _CacheEntry(coordinates=None, reason=f"out-of-range result ({lat}, {lon})")
        return _CacheEntry(coordinates=(lat, lon))


def _explicit_coordinates(
    record: Record,
    latitude_field: str | None,
    longitude_field: str | None,
) -> tuple[tuple[float, float] | None, bool]:
    """Return (coords, invalid) for the record's own coordinate fields."""
    if latitude_field is None or longitude_field is None:
        return (None, False)
    lat_raw = record.get(latitude_field)
    lon_raw = record.get(longitude_field)
    if lat_raw is None and lon_raw is None:
        return (None, False)
    try:
        lat = float(lat_raw)
        lon = float(lon_raw)
    except (TypeError, ValueError):
        return (None, True)
    if math.isnan(lat) and math.isnan(lon):
        return (None, False)
    if not _valid_lat_lon(lat, lon):
        return (None, True)
    return ((lat, lon), False)


def _close_geocoder(geocoder: Any) -> None:
    close = getattr(geocoder, "close", None)
    if callable(close):
        close()


def _parse_retry_after_seconds(raw: str | None) -> float:
    if raw is None:
        return 0.0
    value = raw.strip()
    if not value:
        return 0.0
    try:
        parsed = float(value)
    except ValueError:
        return 0.0
    return max(parsed, 0.0)
