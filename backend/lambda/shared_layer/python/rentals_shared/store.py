"""rentals_shared.store — Generic KV-backed content store.

One ``ContentStore`` per record kind, configured by an ``EntityConfig``
(key prefixes, indexes, search fields, status rules). The KV client is
passed in explicitly and nothing is cached between calls, so every read
reflects the store at call time.

Writes persist the primary key first and only then patch the indexes, so an
interrupted write leaves an under-indexed record rather than an index entry
pointing at nothing. List reads tolerate the reverse anyway: members whose
record vanished, fails to decode, or no longer holds the indexed value are
skipped and counted in a consistency warning.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from rentals_shared import codec, config
from rentals_shared.errors import Conflict, ContentStoreError, CorruptRecord, InvalidRecord, NotFound
from rentals_shared.indexes import IndexMaintainer, IndexSpec, PointerSpec
from rentals_shared.serialization import _iso_z, _parse_iso8601, _utcnow

logger = logging.getLogger(__name__)

PrepareFn = Callable[[Dict[str, Any], Optional[Dict[str, Any]], dt.datetime], Dict[str, Any]]
AfterWriteFn = Callable[[Optional[Dict[str, Any]], Optional[Dict[str, Any]]], None]

_IMMUTABLE_FIELDS = ("id", "created_at")


@dataclass(frozen=True)
class EntityConfig:
    kind: str
    plural: str
    indexes: Sequence[IndexSpec] = ()
    pointers: Sequence[PointerSpec] = ()
    search_fields: Sequence[str] = ()
    prepare: Optional[PrepareFn] = None
    timestamps: bool = True


@dataclass
class TransitionReport:
    """Per-item outcome of a batch state transition."""

    processed: int = 0
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


def _non_negative_int(raw: Any, default: int) -> int:
    if isinstance(raw, bool):
        return default
    try:
        value = int(str(raw).strip()) if not isinstance(raw, int) else raw
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


def coerce_page_params(limit: Any = None, offset: Any = None) -> tuple[int, int]:
    """Normalize caller-supplied paging; bad input falls back to the defaults."""
    return _non_negative_int(limit, config.DEFAULT_PAGE_LIMIT), _non_negative_int(offset, 0)


def paginate(items: Sequence[Any], limit: Any = None, offset: Any = None) -> Dict[str, Any]:
    limit, offset = coerce_page_params(limit, offset)
    total = len(items)
    return {
        "items": list(items[offset : offset + limit]),
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + limit < total,
    }


_OLDEST = dt.datetime.min.replace(tzinfo=dt.timezone.utc)


def _created_at(record: Dict[str, Any]) -> dt.datetime:
    return _parse_iso8601(record.get("created_at")) or _OLDEST


def newest_first(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order by created_at descending; id breaks ties so pages are stable."""
    ordered = sorted(records, key=lambda r: str(r.get("id", "")))
    return sorted(ordered, key=_created_at, reverse=True)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ContentStore:
    def __init__(
        self,
        kv,
        entity: EntityConfig,
        clock: Optional[Callable[[], dt.datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        after_write: Optional[AfterWriteFn] = None,
    ):
        self.kv = kv
        self.entity = entity
        self.clock = clock or _utcnow
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self.indexes = IndexMaintainer(kv, entity.plural, entity.indexes, entity.pointers)
        self.after_write = after_write

    @property
    def kind(self) -> str:
        return self.entity.kind

    @property
    def plural(self) -> str:
        return self.entity.plural

    def primary_key(self, record_id: str) -> str:
        return f"{self.kind}:{record_id}"

    def new_id(self) -> str:
        return self.id_factory()

    # -- single records ----------------------------------------------------

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        raw = self.kv.get(self.primary_key(record_id))
        if raw is None:
            return None
        return codec.decode(self.kind, raw)

    def require(self, record_id: str) -> Dict[str, Any]:
        record = self.get(record_id)
        if record is None:
            raise NotFound(f"{self.kind.capitalize()} '{record_id}' not found", {"id": record_id})
        return record

    def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(record, dict):
            raise InvalidRecord(f"{self.kind} must be an object")
        new = dict(record)
        new["id"] = str(new.get("id") or self.new_id())
        if self.kv.get(self.primary_key(new["id"])) is not None:
            raise Conflict(f"{self.kind.capitalize()} '{new['id']}' already exists", {"id": new["id"]})

        now = self.clock()
        if self.entity.timestamps:
            created = _parse_iso8601(new.get("created_at"))
            # Unparseable values are left for the codec to reject.
            new["created_at"] = _iso_z(created) if created else new.get("created_at") or _iso_z(now)
            new["updated_at"] = _iso_z(now)
        if self.entity.prepare is not None:
            new = self.entity.prepare(new, None, now)
        codec.validate(self.kind, new)

        self.kv.set(self.primary_key(new["id"]), codec.encode(new))
        self.indexes.on_create(new)
        self._written(None, new)
        logger.info("Created %s %s", self.kind, new["id"])
        return new

    def update(
        self,
        record_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Merge ``patch`` into the stored record; ``None`` values drop fields.

        ``expected_status`` guards transitions decided on an earlier read:
        the update fails with ``Conflict`` when the record has moved on.
        """
        if not isinstance(patch, dict):
            raise InvalidRecord(f"{self.kind} patch must be an object")
        before = self.require(record_id)
        if expected_status is not None and before.get("status") != expected_status:
            raise Conflict(
                f"{self.kind.capitalize()} '{record_id}' is '{before.get('status')}', expected '{expected_status}'",
                {"id": record_id, "status": before.get("status")},
            )

        for name in _IMMUTABLE_FIELDS:
            if name in patch and patch[name] != before.get(name):
                raise InvalidRecord(f"{name} cannot be changed", {"fields": {name: "immutable"}})

        after = dict(before)
        for name, value in patch.items():
            if value is None:
                after.pop(name, None)
            else:
                after[name] = value

        now = self.clock()
        if self.entity.timestamps:
            after["updated_at"] = _iso_z(now)
        if self.entity.prepare is not None:
            after = self.entity.prepare(after, before, now)
        codec.validate(self.kind, after)

        self.kv.set(self.primary_key(record_id), codec.encode(after))
        self.indexes.on_update(before, after)
        self._written(before, after)
        return after

    def delete(self, record_id: str) -> Dict[str, Any]:
        """Delete a record and its memberships.

        A record that no longer decodes is still removed: its primary key and
        ``all`` membership go, and any attribute memberships it leaves behind
        are skipped on read as missing until an index rebuild.
        """
        try:
            before = self.require(record_id)
        except CorruptRecord:
            self.kv.delete(self.primary_key(record_id))
            self.indexes.forget(record_id)
            logger.warning("Deleted corrupt %s %s; attribute memberships left for repair", self.kind, record_id)
            return {"id": record_id}
        self.kv.delete(self.primary_key(record_id))
        self.indexes.on_delete(before)
        self._written(before, None)
        logger.info("Deleted %s %s", self.kind, record_id)
        return before

    def _written(self, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> None:
        if self.after_write is not None:
            self.after_write(before, after)

    # -- collections -------------------------------------------------------

    def ids(self) -> set:
        return self.kv.set_members(self.indexes.all_key)

    def count(self, index_name: Optional[str] = None, value: Optional[str] = None) -> int:
        if index_name is None:
            return self.kv.set_card(self.indexes.all_key)
        return self.kv.set_card(self.indexes.key_for(index_name, value))

    def load_many(
        self,
        record_ids: Iterable[str],
        source: str,
        still_member: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch and decode members of an index, skipping divergent ids."""
        records: List[Dict[str, Any]] = []
        missing = corrupt = stale = 0
        for record_id in sorted(record_ids):
            try:
                record = self.get(record_id)
            except CorruptRecord as exc:
                corrupt += 1
                logger.error("Skipping corrupt %s: %s", self.primary_key(record_id), exc.details)
                continue
            if record is None:
                missing += 1
                continue
            if still_member is not None and not still_member(record):
                stale += 1
                continue
            records.append(record)

        if missing or corrupt or stale:
            logger.warning(
                "[CONSISTENCY] %s: skipped %d missing, %d corrupt, %d stale member(s)",
                source,
                missing,
                corrupt,
                stale,
            )
        return records

    def list_all(self) -> List[Dict[str, Any]]:
        return newest_first(self.load_many(self.ids(), self.indexes.all_key))

    def list_index(self, index_name: str, value: str) -> List[Dict[str, Any]]:
        spec = self.indexes.spec(index_name)
        key = spec.key(self.plural, value)
        return newest_first(
            self.load_many(
                self.kv.set_members(key),
                key,
                still_member=lambda record: value in spec.values(record),
            )
        )

    def search(self, term: str) -> List[Dict[str, Any]]:
        """Case-insensitive substring match over the kind's search fields.

        A linear scan of every record of the kind; there is no inverted
        index, so cost grows with the record count. No status filtering.
        """
        needle = (term or "").strip().casefold()
        records = self.list_all()
        if not needle:
            return records
        return [r for r in records if any(needle in text for text in self._search_texts(r))]

    def _search_texts(self, record: Dict[str, Any]) -> List[str]:
        texts: List[str] = []
        for name in self.entity.search_fields:
            value = record.get(name)
            if isinstance(value, str):
                texts.append(value.casefold())
            elif isinstance(value, (list, tuple)):
                texts.extend(str(v).casefold() for v in value)
        return texts

    def transition_matching(
        self,
        predicate: Callable[[Dict[str, Any]], bool],
        patch: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> TransitionReport:
        """Apply ``patch`` to every record matching ``predicate``.

        Each record is updated independently; a failure is recorded against
        its id and the remaining records still transition. Nothing already
        applied is rolled back.
        """
        report = TransitionReport()
        candidates = self.load_many(self.ids(), self.indexes.all_key)
        for record in sorted(candidates, key=lambda r: str(r.get("id"))):
            if not predicate(record):
                continue
            record_id = str(record["id"])
            report.processed += 1
            try:
                self.update(record_id, dict(patch), expected_status=expected_status)
            except ContentStoreError as exc:
                report.failed.append(record_id)
                report.errors[record_id] = exc.message
                logger.warning("Transition of %s %s failed: %s", self.kind, record_id, exc.message)
                continue
            report.succeeded.append(record_id)
        return report
