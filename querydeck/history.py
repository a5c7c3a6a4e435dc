"""Bounded history of executed queries, persisted in the metadata store."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from .stores import MetadataStore

HISTORY_KEY = "history"


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    query: str
    timestamp: str
    row_count: int
    error: str | None = None


class QueryHistory:
    """Newest-first query history capped at ``max_size`` entries."""

    def __init__(self, store: MetadataStore, *, max_size: int = 1000) -> None:
        self._store = store
        self._max_size = max_size
        self._entries: list[HistoryEntry] = self._load()

    def add(self, query: str, row_count: int, error: str | None = None) -> HistoryEntry:
        entry = HistoryEntry(
            query=query.strip(),
            timestamp=datetime.now(tz=timezone.utc).isoformat(),
            row_count=row_count,
            error=error,
        )
        self._entries.insert(0, entry)
        del self._entries[self._max_size :]
        self._save()
        return entry

    def entries(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    def clear(self) -> None:
        self._entries = []
        self._save()

    def _load(self) -> list[HistoryEntry]:
        stored = self._store.get(HISTORY_KEY, [])
        entries: list[HistoryEntry] = []
        if not isinstance(stored, list):
            return entries
        for item in stored:
            if not isinstance(item, dict) or not isinstance(item.get("query"), str):
                continue
            entries.append(
                HistoryEntry(
                    query=item["query"],
                    timestamp=str(item.get("timestamp", "")),
                    row_count=int(item.get("row_count") or 0),
                    error=item.get("error"),
                )
            )
        return entries[: self._max_size]

    def _save(self) -> None:
        self._store.update(HISTORY_KEY, [asdict(entry) for entry in self._entries])


__all__ = ["HistoryEntry", "QueryHistory"]
