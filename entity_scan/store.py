"""
Persistence for entity types, entities, and per-site sync state.

``EntityStore`` is the interface the populator, crawler, and scanner depend
on. Two implementations ship here: ``MemoryEntityStore`` keeps everything in
process, and ``JsonEntityStore`` adds atomic JSON-file persistence under the
data directory. Both enforce the unique keys the upsert logic relies on:
``(site_id, external_id)`` and, for records without an external id,
``(site_id, entity_type_id, slug)``.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Set, Tuple

from entity_scan.config import DATA_DIR
from entity_scan.errors import DuplicateEntityError, PersistenceError, RecordNotFoundError
from entity_scan.models import EntityRecord, EntityTypeRecord, SyncState

logger = logging.getLogger("entity_scan.store")

STORE_DIR = DATA_DIR / "store"

_ORDERABLE_FIELDS = ("created_at", "updated_at")

TYPES = "types"
ENTITIES = "entities"
SYNC = "sync"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------


def load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* on any error."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        return default if default is not None else {}


def save_json(path: Path, data: Any) -> None:
    """Atomically write *data* as JSON to *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    # Unique temp name so concurrent writers never share a partial file
    tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str, ensure_ascii=False)
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink()


# Natural keys of stored rows. Two rows with the same key describe one item.

def type_key(raw: Dict[str, Any]) -> Hashable:
    return (raw.get("site_id"), raw.get("slug"))


def entity_key(raw: Dict[str, Any]) -> Hashable:
    if raw.get("external_id") is not None:
        return ("external", raw.get("site_id"), raw.get("external_id"))
    return ("slug", raw.get("site_id"), raw.get("entity_type_id"), raw.get("slug"))


def sync_key(raw: Dict[str, Any]) -> Hashable:
    return raw.get("site_id")


def merge_json_records(
    path: Path,
    changed: Sequence[Dict[str, Any]],
    key_of: Callable[[Dict[str, Any]], Hashable],
) -> List[Dict[str, Any]]:
    """
    Fold *changed* rows into the JSON list at *path* and write it back.

    The file is re-read first, so rows written by another process since our
    last load are kept. A stored row is replaced when a changed row has the
    same ``id`` or the same natural key.

    Returns
    -------
    list of dict
        The rows now on disk.
    """
    changed_ids = {raw["id"] for raw in changed if raw.get("id")}
    changed_keys = {key_of(raw) for raw in changed}
    rows = [
        raw for raw in load_json(path, [])
        if isinstance(raw, dict)
        and raw.get("id") not in changed_ids
        and key_of(raw) not in changed_keys
    ]
    rows.extend(changed)
    save_json(path, rows)
    return rows


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@dataclass
class EntityQuery:
    """Filter for counting and listing entities of one site."""

    site_id: str
    missing_seo_only: bool = False
    updated_before: Optional[str] = None
    entity_type_id: Optional[str] = None

    def matches(self, record: EntityRecord) -> bool:
        if record.site_id != self.site_id:
            return False
        if self.entity_type_id is not None and record.entity_type_id != self.entity_type_id:
            return False
        if self.missing_seo_only and record.has_seo_data:
            return False
        if self.updated_before is not None and record.updated_at >= self.updated_before:
            return False
        return True


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class EntityStore(ABC):
    """Async persistence interface used by every phase."""

    # -- Entity types -------------------------------------------------------

    @abstractmethod
    async def get_entity_type(self, site_id: str, slug: str) -> Optional[EntityTypeRecord]:
        ...

    @abstractmethod
    async def upsert_entity_type(self, record: EntityTypeRecord) -> EntityTypeRecord:
        """Insert, or update the existing record with the same (site_id, slug)."""

    @abstractmethod
    async def list_entity_types(self, site_id: str, enabled_only: bool = False) -> List[EntityTypeRecord]:
        ...

    # -- Entities -----------------------------------------------------------

    @abstractmethod
    async def find_entity_by_external_id(self, site_id: str, external_id: str) -> Optional[EntityRecord]:
        ...

    @abstractmethod
    async def find_entity_by_slug(self, site_id: str, entity_type_id: str, slug: str) -> Optional[EntityRecord]:
        ...

    @abstractmethod
    async def get_entity(self, entity_id: str) -> Optional[EntityRecord]:
        ...

    @abstractmethod
    async def create_entity(self, record: EntityRecord) -> EntityRecord:
        """Insert *record*; raises DuplicateEntityError on a unique-key clash."""

    @abstractmethod
    async def update_entity(self, entity_id: str, changes: Dict[str, Any]) -> EntityRecord:
        """Apply *changes*; raises RecordNotFoundError or DuplicateEntityError."""

    @abstractmethod
    async def count_entities(self, query: EntityQuery) -> int:
        ...

    @abstractmethod
    async def find_entities(
        self,
        query: EntityQuery,
        skip: int = 0,
        take: Optional[int] = None,
        order_by: str = "created_at",
    ) -> List[EntityRecord]:
        ...

    async def flush(self) -> None:
        """Make buffered entity writes durable. Write-through stores need nothing."""

    # -- Sync state ---------------------------------------------------------

    @abstractmethod
    async def get_sync_state(self, site_id: str) -> SyncState:
        """Current state, or a fresh IDLE state when none was saved."""

    @abstractmethod
    async def save_sync_state(self, state: SyncState) -> SyncState:
        ...

    async def update_sync_state(self, site_id: str, **changes: Any) -> SyncState:
        state = await self.get_sync_state(site_id)
        for key, value in changes.items():
            setattr(state, key, value)
        state.updated_at = _now_iso()
        return await self.save_sync_state(state)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class MemoryEntityStore(EntityStore):
    """
    Dict-backed store. Returned records are copies.

    Entities are indexed by ``(site_id, external_id)`` and by
    ``(site_id, entity_type_id, slug)``, so lookups and unique-key checks
    do not scan the whole collection.
    """

    def __init__(self) -> None:
        self._types: Dict[str, EntityTypeRecord] = {}
        self._type_ids: Dict[Tuple[str, str], str] = {}
        self._entities: Dict[str, EntityRecord] = {}
        self._by_external: Dict[Tuple[str, str], str] = {}
        self._by_slug: Dict[Tuple[str, str, str], Set[str]] = {}
        self._sync: Dict[str, SyncState] = {}

    def _touch(self, collection: str, key: str) -> None:
        """Hook for durable subclasses; called after every mutation."""

    # -- Index maintenance --------------------------------------------------

    def _put_type(self, record: EntityTypeRecord) -> None:
        self._types[record.id] = record
        self._type_ids[(record.site_id, record.slug)] = record.id

    def _drop_type(self, type_id: str) -> None:
        record = self._types.pop(type_id, None)
        if record is not None and self._type_ids.get((record.site_id, record.slug)) == type_id:
            del self._type_ids[(record.site_id, record.slug)]

    def _put_entity(self, record: EntityRecord) -> None:
        self._entities[record.id] = record
        if record.external_id is not None:
            self._by_external[(record.site_id, record.external_id)] = record.id
        self._by_slug.setdefault((record.site_id, record.entity_type_id, record.slug), set()).add(record.id)

    def _drop_entity(self, entity_id: str) -> None:
        record = self._entities.pop(entity_id, None)
        if record is None:
            return
        external_key = (record.site_id, record.external_id)
        if record.external_id is not None and self._by_external.get(external_key) == entity_id:
            del self._by_external[external_key]
        slug_key = (record.site_id, record.entity_type_id, record.slug)
        ids = self._by_slug.get(slug_key)
        if ids is not None:
            ids.discard(entity_id)
            if not ids:
                del self._by_slug[slug_key]

    def _same_item_ids(self, record: EntityRecord) -> Set[str]:
        """Ids of other stored entities with the same natural key as *record*."""
        if record.external_id is not None:
            other = self._by_external.get((record.site_id, record.external_id))
            return {other} - {record.id} if other else set()
        ids = self._by_slug.get((record.site_id, record.entity_type_id, record.slug), set())
        return {i for i in ids if i != record.id and self._entities[i].external_id is None}

    # -- Entity types -------------------------------------------------------

    async def get_entity_type(self, site_id: str, slug: str) -> Optional[EntityTypeRecord]:
        type_id = self._type_ids.get((site_id, slug))
        return copy.deepcopy(self._types[type_id]) if type_id is not None else None

    async def upsert_entity_type(self, record: EntityTypeRecord) -> EntityTypeRecord:
        existing_id = self._type_ids.get((record.site_id, record.slug))
        if existing_id is not None:
            existing = self._types[existing_id]
            record.id = existing.id
            record.created_at = existing.created_at
        record.updated_at = _now_iso()
        self._put_type(copy.deepcopy(record))
        self._touch(TYPES, record.id)
        return copy.deepcopy(record)

    async def list_entity_types(self, site_id: str, enabled_only: bool = False) -> List[EntityTypeRecord]:
        records = [
            r for r in self._types.values()
            if r.site_id == site_id and (r.is_enabled or not enabled_only)
        ]
        records.sort(key=lambda r: (r.sort_order, r.name.casefold()))
        return [copy.deepcopy(r) for r in records]

    # -- Entities -----------------------------------------------------------

    def _check_unique(self, record: EntityRecord, ignore_id: Optional[str] = None) -> None:
        if record.external_id is not None:
            other = self._by_external.get((record.site_id, record.external_id))
            if other is not None and other != ignore_id:
                raise DuplicateEntityError(
                    f"Entity with external id {record.external_id!r} already exists for site {record.site_id!r}"
                )
            return
        others = self._by_slug.get((record.site_id, record.entity_type_id, record.slug), set())
        if others - {ignore_id}:
            raise DuplicateEntityError(
                f"Entity with slug {record.slug!r} already exists for site {record.site_id!r}"
            )

    async def find_entity_by_external_id(self, site_id: str, external_id: str) -> Optional[EntityRecord]:
        entity_id = self._by_external.get((site_id, external_id))
        return copy.deepcopy(self._entities[entity_id]) if entity_id is not None else None

    async def find_entity_by_slug(self, site_id: str, entity_type_id: str, slug: str) -> Optional[EntityRecord]:
        ids = self._by_slug.get((site_id, entity_type_id, slug))
        if not ids:
            return None
        first = min((self._entities[i] for i in ids), key=lambda r: (r.created_at, r.id))
        return copy.deepcopy(first)

    async def get_entity(self, entity_id: str) -> Optional[EntityRecord]:
        record = self._entities.get(entity_id)
        return copy.deepcopy(record) if record is not None else None

    async def create_entity(self, record: EntityRecord) -> EntityRecord:
        if record.id in self._entities:
            raise DuplicateEntityError(f"Entity id {record.id!r} already exists")
        self._check_unique(record)
        self._put_entity(copy.deepcopy(record))
        self._touch(ENTITIES, record.id)
        return copy.deepcopy(record)

    async def update_entity(self, entity_id: str, changes: Dict[str, Any]) -> EntityRecord:
        current = self._entities.get(entity_id)
        if current is None:
            raise RecordNotFoundError(f"Entity {entity_id!r} not found")
        updated = copy.deepcopy(current)
        for key, value in changes.items():
            if key in ("id", "site_id", "created_at") or not hasattr(updated, key):
                continue
            setattr(updated, key, copy.deepcopy(value))
        updated.updated_at = _now_iso()
        self._check_unique(updated, ignore_id=entity_id)
        self._drop_entity(entity_id)
        self._put_entity(updated)
        self._touch(ENTITIES, entity_id)
        return copy.deepcopy(updated)

    async def count_entities(self, query: EntityQuery) -> int:
        return sum(1 for r in self._entities.values() if query.matches(r))

    async def find_entities(
        self,
        query: EntityQuery,
        skip: int = 0,
        take: Optional[int] = None,
        order_by: str = "created_at",
    ) -> List[EntityRecord]:
        if order_by not in _ORDERABLE_FIELDS:
            raise ValueError(f"Cannot order entities by {order_by!r}")
        records = [r for r in self._entities.values() if query.matches(r)]
        records.sort(key=lambda r: (getattr(r, order_by), r.id))
        end = None if take is None else skip + take
        return [copy.deepcopy(r) for r in records[skip:end]]

    # -- Sync state ---------------------------------------------------------

    async def get_sync_state(self, site_id: str) -> SyncState:
        state = self._sync.get(site_id)
        return copy.deepcopy(state) if state is not None else SyncState(site_id=site_id)

    async def save_sync_state(self, state: SyncState) -> SyncState:
        self._sync[state.site_id] = copy.deepcopy(state)
        self._touch(SYNC, state.site_id)
        return copy.deepcopy(state)


# ---------------------------------------------------------------------------
# JSON-file implementation
# ---------------------------------------------------------------------------


class JsonEntityStore(MemoryEntityStore):
    """
    MemoryEntityStore persisted as three JSON files under *data_dir*:
    ``entity-types.json``, ``entities.json``, and ``sync-state.json``.

    Entity types and sync state are written on every change. Entity writes
    are buffered until ``flush()``, which the populator and crawler call
    once per content type or batch and the scanner calls at the end of
    every run. Files are written off the event loop.

    Each write re-reads the file and replaces only the rows this instance
    changed, so several stores sharing one data directory (the API server
    and a CLI run, say) keep each other's records. When both change the
    same item, the last write wins.
    """

    _KEYS = {TYPES: type_key, ENTITIES: entity_key, SYNC: sync_key}

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        super().__init__()
        self.data_dir = Path(data_dir) if data_dir else STORE_DIR
        self._paths = {
            TYPES: self.data_dir / "entity-types.json",
            ENTITIES: self.data_dir / "entities.json",
            SYNC: self.data_dir / "sync-state.json",
        }
        self._dirty: Dict[str, Set[str]] = {name: set() for name in self._paths}
        self._write_lock = asyncio.Lock()
        for name, path in self._paths.items():
            self._absorb(name, load_json(path, []))
        logger.debug(
            "Loaded %d entity types, %d entities from %s",
            len(self._types), len(self._entities), self.data_dir,
        )

    def _touch(self, collection: str, key: str) -> None:
        self._dirty[collection].add(key)

    @property
    def pending_writes(self) -> int:
        return sum(len(keys) for keys in self._dirty.values())

    # -- Reconciling with the file -----------------------------------------

    def _absorb(self, collection: str, rows: List[Dict[str, Any]]) -> None:
        """
        Take rows read from disk into memory.

        Rows changed locally since the last write are left alone, and so
        are rows that would collide with one.
        """
        dirty = self._dirty[collection]

        if collection == SYNC:
            for raw in rows:
                state = SyncState.from_dict(raw)
                if state.site_id not in dirty:
                    self._sync[state.site_id] = state
            return

        on_disk: Set[str] = set()
        for raw in rows:
            if collection == TYPES:
                record = EntityTypeRecord.from_dict(raw)
                current_id = self._type_ids.get((record.site_id, record.slug))
                same_item = {current_id} - {None, record.id}
            else:
                record = EntityRecord.from_dict(raw)
                same_item = self._same_item_ids(record)
            on_disk.add(record.id)

            if record.id in dirty or same_item & dirty:
                continue
            for other_id in same_item:
                self._drop(collection, other_id)
            self._drop(collection, record.id)
            self._put(collection, record)

        records = self._types if collection == TYPES else self._entities
        for stale_id in [i for i in records if i not in on_disk and i not in dirty]:
            self._drop(collection, stale_id)

    def _put(self, collection: str, record: Any) -> None:
        if collection == TYPES:
            self._put_type(record)
        else:
            self._put_entity(record)

    def _drop(self, collection: str, record_id: str) -> None:
        if collection == TYPES:
            self._drop_type(record_id)
        else:
            self._drop_entity(record_id)

    async def _write(self, collection: str) -> None:
        async with self._write_lock:
            keys = self._dirty[collection]
            if not keys:
                return
            source = {TYPES: self._types, ENTITIES: self._entities, SYNC: self._sync}[collection]
            changed = [asdict(source[key]) for key in keys if key in source]
            self._dirty[collection] = set()
            try:
                rows = await asyncio.to_thread(
                    merge_json_records, self._paths[collection], changed, self._KEYS[collection]
                )
            except OSError as exc:
                self._dirty[collection] |= keys
                raise PersistenceError(f"Could not write {self._paths[collection]}: {exc}") from exc
            self._absorb(collection, rows)
            logger.debug("Wrote %d %s rows to %s", len(changed), collection, self._paths[collection])

    # -- Write points -------------------------------------------------------

    async def upsert_entity_type(self, record: EntityTypeRecord) -> EntityTypeRecord:
        saved = await super().upsert_entity_type(record)
        await self._write(TYPES)
        return saved

    async def save_sync_state(self, state: SyncState) -> SyncState:
        saved = await super().save_sync_state(state)
        await self._write(SYNC)
        return saved

    async def flush(self) -> None:
        for collection in (TYPES, ENTITIES, SYNC):
            await self._write(collection)
