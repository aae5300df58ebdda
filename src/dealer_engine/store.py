"""Persistence collaborator for the engine.

The engine only needs a narrow, document-shaped contract: read a document by
key, write it back conditionally on the version that was read, and append to
an append-only log. :class:`InMemoryDocumentStore` implements the contract
with dictionaries; :class:`WorkbookDocumentStore` mirrors every mutation into
the openpyxl master workbook so that it can be saved to disk.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import VersionConflict


@dataclass(frozen=True)
class StoredDocument:
    """A document body together with the version it was read at."""

    collection: str
    key: str
    version: int
    body: Dict[str, Any]


@dataclass(frozen=True)
class LogEntry:
    """One entry of an append-only log."""

    sequence: int
    body: Dict[str, Any]
    recorded_at: str


class DocumentStore(ABC):
    """Abstract transactional document store.

    Versions start at ``1`` for a freshly written document; ``0`` stands for
    "does not exist" when passed as ``expected_version``.
    """

    @abstractmethod
    def read(self, collection: str, key: str) -> Optional[StoredDocument]:
        """Return the current document or ``None`` when absent."""

    @abstractmethod
    def write(self, collection: str, key: str, body: Mapping[str, Any], *, expected_version: int) -> int:
        """Replace the document if its version equals ``expected_version``.

        Returns the new version. Raises :class:`VersionConflict` otherwise.
        """

    @abstractmethod
    def append_log(self, collection: str, key: str, entry: Mapping[str, Any]) -> int:
        """Append ``entry`` to the log of ``key`` and return its sequence number."""

    @abstractmethod
    def read_log(self, collection: str, key: str) -> List[LogEntry]:
        """Return every log entry of ``key`` in append order."""

    @abstractmethod
    def keys(self, collection: str) -> List[str]:
        """Return the keys stored in ``collection`` in first-write order."""

    def persist(self, destination: Optional[Path] = None) -> None:
        """Flush pending state to durable storage, when the backend has any."""


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed store; one re-entrant lock makes each call indivisible."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._documents: Dict[Tuple[str, str], StoredDocument] = {}
        self._logs: Dict[Tuple[str, str], List[LogEntry]] = {}

    def read(self, collection: str, key: str) -> Optional[StoredDocument]:
        with self._lock:
            stored = self._documents.get((collection, key))
            if stored is None:
                return None
            return StoredDocument(collection, key, stored.version, copy.deepcopy(stored.body))

    def write(self, collection: str, key: str, body: Mapping[str, Any], *, expected_version: int) -> int:
        with self._lock:
            current = self._documents.get((collection, key))
            actual = current.version if current is not None else 0
            if actual != expected_version:
                log.warning(
                    "Rejected write to %s/%s: expected version %d, found %d",
                    collection,
                    key,
                    expected_version,
                    actual,
                )
                raise VersionConflict(collection, key, expected_version, actual)

            stored = StoredDocument(collection, key, actual + 1, copy.deepcopy(dict(body)))
            self._documents[(collection, key)] = stored
            self._on_write(stored, _now_iso())
            return stored.version

    def append_log(self, collection: str, key: str, entry: Mapping[str, Any]) -> int:
        with self._lock:
            entries = self._logs.setdefault((collection, key), [])
            appended = LogEntry(len(entries) + 1, copy.deepcopy(dict(entry)), _now_iso())
            entries.append(appended)
            self._on_append(collection, key, appended)
            return appended.sequence

    def read_log(self, collection: str, key: str) -> List[LogEntry]:
        with self._lock:
            return [
                LogEntry(entry.sequence, copy.deepcopy(entry.body), entry.recorded_at)
                for entry in self._logs.get((collection, key), [])
            ]

    def keys(self, collection: str) -> List[str]:
        with self._lock:
            return [key for (name, key) in self._documents if name == collection]

    def _on_write(self, stored: StoredDocument, updated_at: str) -> None:
        """Hook invoked under the store lock after a successful write."""

    def _on_append(self, collection: str, key: str, entry: LogEntry) -> None:
        """Hook invoked under the store lock after a log append."""


class WorkbookDocumentStore(InMemoryDocumentStore):
    """Store whose state is loaded from, and mirrored into, the master workbook.

    Writes update the worksheet immediately; nothing reaches disk until
    :meth:`persist` saves the workbook.
    """

    def __init__(self, workbook: Workbook) -> None:
        super().__init__()
        self.workbook = workbook
        self._rows: Dict[Tuple[str, str], int] = {}
        self._load()

    def _load(self) -> None:
        for row in data_manager.iter_documents(self.workbook):
            self._documents[(row.collection, row.document_key)] = StoredDocument(
                row.collection,
                row.document_key,
                row.version,
                data_manager.decode_body(row.body),
            )
        self._rows = data_manager.index_documents(self.workbook)

        for entry in data_manager.iter_log_entries(self.workbook):
            self._logs.setdefault((entry.collection, entry.document_key), []).append(
                LogEntry(entry.sequence, data_manager.decode_body(entry.body), entry.recorded_at)
            )
        for entries in self._logs.values():
            entries.sort(key=lambda item: item.sequence)

        log.debug(
            "Loaded %d documents and %d log streams from workbook",
            len(self._documents),
            len(self._logs),
        )

    def _on_write(self, stored: StoredDocument, updated_at: str) -> None:
        body_text = data_manager.encode_body(stored.body)
        row_index = self._rows.get((stored.collection, stored.key))
        if row_index is None:
            row_index = data_manager.append_document(
                self.workbook,
                data_manager.DocumentRow(
                    collection=stored.collection,
                    document_key=stored.key,
                    version=stored.version,
                    body=body_text,
                    updated_at=updated_at,
                ),
            )
            self._rows[(stored.collection, stored.key)] = row_index
            return

        data_manager.update_document(
            self.workbook,
            row_index,
            field_values={"Version": stored.version, "Body": body_text, "UpdatedAt": updated_at},
        )

    def _on_append(self, collection: str, key: str, entry: LogEntry) -> None:
        data_manager.append_log_entry(
            self.workbook,
            data_manager.LogRow(
                collection=collection,
                document_key=key,
                sequence=entry.sequence,
                body=data_manager.encode_body(entry.body),
                recorded_at=entry.recorded_at,
            ),
        )

    def persist(self, destination: Optional[Path] = None) -> None:
        if destination is None:
            raise ValueError("A destination path is required to persist the workbook")
        with self._lock:
            data_manager.save_workbook(self.workbook, destination=destination)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()
