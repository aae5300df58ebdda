"""Runtime wiring shared by every engine operation.

A :class:`RuntimeContext` bundles the parsed settings, the persistence
collaborator, the per-key locks that serialise writers inside one process,
and the clock used to stamp transitions. Nothing in the engine reads ambient
global state; everything flows through the context and an explicit principal.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION
from .store import DocumentStore, InMemoryDocumentStore, WorkbookDocumentStore


def utc_now() -> datetime:
    return datetime.now(UTC)


class KeyedLocks:
    """Registry of mutual-exclusion locks keyed by ``(namespace, key)``.

    Locks are created lazily under a guard lock and kept for the lifetime of
    the registry, so two callers asking for the same key always share one
    lock object.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def lock_for(self, namespace: str, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get((namespace, key))
            if lock is None:
                lock = threading.Lock()
                self._locks[(namespace, key)] = lock
            return lock

    @contextmanager
    def hold(self, namespace: str, key: str) -> Iterator[None]:
        lock = self.lock_for(namespace, key)
        with lock:
            yield


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, storage, and concurrency primitives."""

    settings: data_manager.ConfigSettings
    store: DocumentStore
    locks: KeyedLocks = field(default_factory=KeyedLocks, repr=False, compare=False)
    clock: Callable[[], datetime] = field(default=utc_now, repr=False, compare=False)

    def now(self) -> datetime:
        return self.clock()


def default_settings(data_file: Optional[Path] = None) -> data_manager.ConfigSettings:
    """Settings used when the engine runs without a ``config.ini``."""

    return data_manager.ConfigSettings(
        data_file=data_file or Path("dealer_master.xlsx"),
        portal_name="Dealer Portal",
        schema_version=EXPECTED_SCHEMA_VERSION,
    )


def create_in_memory_context(
    settings: Optional[data_manager.ConfigSettings] = None,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> RuntimeContext:
    """Build a context over a fresh :class:`InMemoryDocumentStore`."""

    return RuntimeContext(
        settings=settings or default_settings(),
        store=InMemoryDocumentStore(),
        clock=clock,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a workbook-backed store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for engine calls.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=WorkbookDocumentStore(workbook))


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist the store to the configured data file."""

    context.store.persist(context.settings.data_file)
    log.info("Persisted store to '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    The returned context shares the settings, locks, and clock of ``context``
    but reads from a freshly opened workbook.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        store=WorkbookDocumentStore(workbook),
        locks=context.locks,
        clock=context.clock,
    )
