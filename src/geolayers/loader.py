"""Tabular record loading."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

import pandas as pd

from .config import RecordsConfig
from .models import Record, RecordSet


_LOGGER = logging.getLogger("geolayers.loader")


class LoadError(RuntimeError):
    """Raised when the record source is unreadable or lacks required columns."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


def load_records(
    path: str | Path,
    *,
    id_column: str | None = None,
    latitude_column: str | None = None,
    longitude_column: str | None = None,
    place_column: str | None = None,
    delimiter: str = ",",
    encoding: str = "utf-8",
    name: str | None = None,
) -> RecordSet:
    """Read a delimited file into a RecordSet, keeping source row order.

    Identifier and place-name columns are kept as text; every other column
    is converted to numbers when all of its non-empty values parse.
    """
    source = Path(path)
    if not source.exists():
        raise LoadError(f"Record file not found: {source}", path=source)

    text_columns = {col for col in (id_column, place_column) if col is not None}
    try:
        frame = pd.read_csv(
            source,
            sep=delimiter,
            encoding=encoding,
            dtype=str,
            skipinitialspace=True,
        )
    except pd.errors.EmptyDataError as exc:
        raise LoadError(f"Record file is empty: {source}", path=source) from exc
    except (pd.errors.ParserError, UnicodeDecodeError, LookupError, OSError) as exc:
        raise LoadError(f"Failed reading record file '{source}': {exc}", path=source) from exc

    for col in frame.columns:
        if col in text_columns:
            continue
        try:
            frame[col] = pd.to_numeric(frame[col])
        except (ValueError, TypeError):
            continue

    return records_from_frame(
        frame,
        name=name or source.stem,
        id_column=id_column,
        latitude_column=latitude_column,
        longitude_column=longitude_column,
        place_column=place_column,
        path=source,
    )


def load_records_from_config(cfg: RecordsConfig, path: Path, *, name: str | None = None) -> RecordSet:
    return load_records(
        path,
        id_column=cfg.id_column,
        latitude_column=cfg.latitude_column,
        longitude_column=cfg.longitude_column,
        place_column=cfg.place_column,
        delimiter=cfg.delimiter,
        encoding=cfg.encoding,
        name=name,
    )


def records_from_frame(
    frame: Any,
    *,
    name: str,
    id_column: str | None = None,
    latitude_column: str | None = None,
    longitude_column: str | None = None,
    place_column: str | None = None,
    path: Path | None = None,
) -> RecordSet:
    """Convert a DataFrame into records after checking the column contract."""
    columns = tuple(str(col) for col in frame.columns)
    check_columns(
        columns,
        id_column=id_column,
        latitude_column=latitude_column,
        longitude_column=longitude_column,
        place_column=place_column,
        path=path,
    )

    cleaned = frame.astype(object).where(frame.notna(), None)
    records = tuple(
        Record(index=idx, fields={str(key): value for key, value in row.items()})
        for idx, row in enumerate(cleaned.to_dict(orient="records"))
    )
    _LOGGER.info("Loaded %d records (%d columns) for '%s'", len(records), len(columns), name)
    return RecordSet(name=name, columns=columns, records=records)


def check_columns(
    columns: Iterable[str],
    *,
    id_column: str | None,
    latitude_column: str | None,
    longitude_column: str | None,
    place_column: str | None,
    path: Path | None,
) -> None:
    present = set(columns)
    label = str(path) if path is not None else "records"
    if id_column is not None and id_column not in present:
        raise LoadError(f"Missing identifier column '{id_column}' in {label}", path=path)

    has_coords = (
        latitude_column is not None
        and longitude_column is not None
        and latitude_column in present
        and longitude_column in present
    )
    has_place = place_column is not None and place_column in present
    if has_coords or has_place:
        return

    wanted: list[str] = []
    if latitude_column is not None and longitude_column is not None:
        wanted.append(f"'{latitude_column}'+'{longitude_column}'")
    if place_column is not None:
        wanted.append(f"'{place_column}'")
    if not wanted:
        raise LoadError(
            "No coordinate or place-name columns configured for loading", path=path
        )
    raise LoadError(
        f"Missing location columns in {label}: need {' or '.join(wanted)}; "
        f"found {', '.join(sorted(present)) or 'none'}",
        path=path,
    )
