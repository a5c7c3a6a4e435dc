"""Normalize the response shapes returned by database drivers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from .errors import QueryExecutionError
from .models import DEFAULT_COLUMN_TYPE, ColumnMetadata


@dataclass(frozen=True, slots=True)
class NormalizedResult:
    """Uniform ``{columns, column_metadata, rows}`` view of a driver response."""

    columns: tuple[str, ...]
    column_metadata: tuple[ColumnMetadata, ...]
    rows: tuple[dict[str, Any], ...]


EMPTY_RESULT = NormalizedResult(columns=(), column_metadata=(), rows=())


def normalize_result(raw: Any) -> NormalizedResult:
    """Convert a typed result object or a raw envelope into a `NormalizedResult`.

    Typed objects expose ``get_columns()`` / ``get_rows()``. Envelopes are
    mappings carrying ``status`` and ``responseData.results``; an ``error``
    status raises `QueryExecutionError` with the reported message and a
    non-tabular first entry yields an empty result.
    """

    if raw is None:
        return EMPTY_RESULT
    if callable(getattr(raw, "get_rows", None)) and callable(getattr(raw, "get_columns", None)):
        metadata = _column_metadata(raw.get_columns())
        columns = tuple(column.name for column in metadata)
        rows = tuple(_row_dict(row, columns) for row in raw.get_rows())
        return NormalizedResult(columns=columns, column_metadata=metadata, rows=rows)
    if is_envelope(raw):
        result_set = _first_result_set(raw)
        if result_set is None:
            return EMPTY_RESULT
        metadata = _column_metadata(result_set.get("columns") or ())
        columns = tuple(column.name for column in metadata)
        rows = _pivot(result_set.get("data") or (), columns)
        return NormalizedResult(columns=columns, column_metadata=metadata, rows=rows)
    raise QueryExecutionError(f"Unsupported driver response: {type(raw).__name__}")


def affected_row_count(raw: Any) -> int:
    """Affected-row count reported by an envelope, ``0`` when absent."""

    if not is_envelope(raw):
        return 0
    results = (raw.get("responseData") or {}).get("results") or ()
    if not results:
        return 0
    count = results[0].get("rowCount")
    return count if isinstance(count, int) else 0


def is_envelope(raw: Any) -> bool:
    return isinstance(raw, Mapping) and "status" in raw and "responseData" in raw


def _first_result_set(envelope: Mapping[str, Any]) -> Mapping[str, Any] | None:
    if envelope.get("status") == "error":
        exception = envelope.get("exception") or {}
        raise QueryExecutionError(exception.get("text") or "Query execution failed")
    results = (envelope.get("responseData") or {}).get("results") or ()
    if not results:
        return None
    first = results[0]
    if first.get("resultType") != "resultSet":
        return None
    return first.get("resultSet") or {}


def _column_metadata(columns: Sequence[Any]) -> tuple[ColumnMetadata, ...]:
    metadata: list[ColumnMetadata] = []
    for index, column in enumerate(columns):
        if isinstance(column, ColumnMetadata):
            metadata.append(column)
            continue
        if not isinstance(column, Mapping):
            metadata.append(ColumnMetadata(name=str(column)))
            continue
        name = column.get("name") or column.get("COLUMN_NAME") or f"COLUMN_{index + 1}"
        data_type = column.get("dataType")
        if isinstance(data_type, Mapping):
            metadata.append(
                ColumnMetadata(
                    name=str(name),
                    type=str(data_type.get("type") or DEFAULT_COLUMN_TYPE),
                    precision=data_type.get("precision"),
                    scale=data_type.get("scale"),
                    size=data_type.get("size"),
                )
            )
        else:
            metadata.append(ColumnMetadata(name=str(name)))
    return tuple(metadata)


def _row_dict(row: Any, columns: tuple[str, ...]) -> dict[str, Any]:
    if isinstance(row, Mapping):
        return dict(row)
    return {column: value for column, value in zip(columns, row)}


def _pivot(data: Sequence[Sequence[Any]], columns: tuple[str, ...]) -> tuple[dict[str, Any], ...]:
    # Envelope data is column-major: data[column][row].
    row_total = len(data[0]) if data else 0
    rows: list[dict[str, Any]] = []
    for row_index in range(row_total):
        row: dict[str, Any] = {}
        for column_index, column in enumerate(columns):
            values = data[column_index] if column_index < len(data) else ()
            row[column] = values[row_index] if row_index < len(values) else None
        rows.append(row)
    return tuple(rows)


__all__ = [
    "EMPTY_RESULT",
    "NormalizedResult",
    "affected_row_count",
    "is_envelope",
    "normalize_result",
]
