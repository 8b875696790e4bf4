"""rentals_shared.indexes — Secondary index maintenance over KV sets.

Index keys for a kind with plural prefix ``posts``:

    posts:all                 every record id
    posts:<value>             unkeyed index (status: posts:published)
    posts:<name>:<value>      keyed index (posts:category:<id>, posts:tag:<id>)

Pointer keys (``payment:<intent_id>`` -> record id) are single-value keys
kept in step with the record the same way.

All index writes go through ``IndexMaintainer``. Updates are patched from
the before/after pair the caller observed: ids leave keys for values they no
longer hold and join keys for values they newly hold. New memberships are
added before stale ones are removed, so a failure part-way leaves an extra
membership (filtered on read) rather than a missing one.

Failures after the primary write are logged as consistency warnings and
reported back; the primary write is never rolled back. ``refresh_counts``
keeps the denormalized counters of the owners a write touched equal to their
set sizes; ``resync_counts`` repairs every counter from current membership.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from rentals_shared import codec
from rentals_shared.errors import CorruptRecord, StoreUnavailable

logger = logging.getLogger(__name__)

ValuesFn = Callable[[Dict[str, Any]], Iterable[str]]
TtlFn = Callable[[str], Optional[int]]


@dataclass(frozen=True)
class IndexSpec:
    name: str
    values: ValuesFn
    keyed: bool = True
    ttl: Optional[TtlFn] = None

    def key(self, plural: str, value: str) -> str:
        if self.keyed:
            return f"{plural}:{self.name}:{value}"
        return f"{plural}:{value}"


@dataclass(frozen=True)
class PointerSpec:
    prefix: str
    values: ValuesFn

    def key(self, value: str) -> str:
        return f"{self.prefix}:{value}"


def attribute_values(attribute: str) -> ValuesFn:
    """Values of a scalar or list attribute, as non-empty strings."""

    def _values(record: Dict[str, Any]) -> List[str]:
        raw = record.get(attribute)
        if raw is None:
            return []
        items = raw if isinstance(raw, (list, tuple, set)) else [raw]
        return [str(v) for v in items if v is not None and str(v).strip()]

    return _values


def nested_values(*paths: str) -> ValuesFn:
    """Values found at dotted paths such as ``payment.deposit_payment_intent_id``."""

    def _values(record: Dict[str, Any]) -> List[str]:
        out: List[str] = []
        for path in paths:
            node: Any = record
            for part in path.split("."):
                node = node.get(part) if isinstance(node, dict) else None
            if node is not None and str(node).strip():
                out.append(str(node))
        return out

    return _values


def attribute_index(name: str, attribute: Optional[str] = None, **kwargs: Any) -> IndexSpec:
    return IndexSpec(name=name, values=attribute_values(attribute or name), **kwargs)


def status_index(attribute: str = "status", keyed: bool = False) -> IndexSpec:
    return IndexSpec(name="status", values=attribute_values(attribute), keyed=keyed)


@dataclass
class IndexResult:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed_keys: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_keys


class IndexMaintainer:
    def __init__(
        self,
        kv,
        plural: str,
        specs: Sequence[IndexSpec] = (),
        pointers: Sequence[PointerSpec] = (),
    ):
        self.kv = kv
        self.plural = plural
        self.specs = {spec.name: spec for spec in specs}
        self.pointers = list(pointers)

    @property
    def all_key(self) -> str:
        return f"{self.plural}:all"

    def spec(self, name: str) -> IndexSpec:
        try:
            return self.specs[name]
        except KeyError:
            raise KeyError(f"{self.plural} has no '{name}' index") from None

    def key_for(self, name: str, value: str) -> str:
        return self.spec(name).key(self.plural, value)

    def index_keys(self, record: Dict[str, Any]) -> Dict[str, Optional[int]]:
        """Every set key implied by the record, mapped to its TTL (if any)."""
        keys: Dict[str, Optional[int]] = {self.all_key: None}
        for spec in self.specs.values():
            for value in spec.values(record):
                keys[spec.key(self.plural, value)] = spec.ttl(value) if spec.ttl else None
        return keys

    def pointer_keys(self, record: Dict[str, Any]) -> List[str]:
        return [p.key(v) for p in self.pointers for v in p.values(record)]

    # -- entry points ------------------------------------------------------

    def on_create(self, record: Dict[str, Any]) -> IndexResult:
        result = IndexResult()
        record_id = str(record["id"])
        self._add(record_id, self.index_keys(record), result)
        self._point(record_id, self.pointer_keys(record), result)
        self._report("create", record_id, result)
        return result

    def on_update(self, old: Dict[str, Any], new: Dict[str, Any]) -> IndexResult:
        result = IndexResult()
        record_id = str(new["id"])
        old_keys = self.index_keys(old)
        new_keys = self.index_keys(new)
        added = {k: ttl for k, ttl in new_keys.items() if k not in old_keys}
        self._add(record_id, added, result)
        self._remove(record_id, [k for k in old_keys if k not in new_keys], result)

        old_pointers = self.pointer_keys(old)
        new_pointers = self.pointer_keys(new)
        self._point(record_id, [k for k in new_pointers if k not in old_pointers], result)
        self._unpoint(record_id, [k for k in old_pointers if k not in new_pointers], result)
        self._report("update", record_id, result)
        return result

    def on_delete(self, record: Dict[str, Any]) -> IndexResult:
        result = IndexResult()
        record_id = str(record["id"])
        self._remove(record_id, list(self.index_keys(record)), result)
        self._unpoint(record_id, self.pointer_keys(record), result)
        self._report("delete", record_id, result)
        return result

    def forget(self, record_id: str) -> IndexResult:
        """Drop an id whose record can no longer be read from the ``all`` set."""
        result = IndexResult()
        self._remove(record_id, [self.all_key], result)
        self._report("forget", record_id, result)
        return result

    def drop_index(self, name: str, value: str) -> None:
        """Remove a whole attribute index, e.g. after its category is deleted."""
        self.kv.delete(self.key_for(name, value))

    def rebuild(self, records: Iterable[Dict[str, Any]]) -> IndexResult:
        """Re-add every record to the keys it implies. Never removes."""
        result = IndexResult()
        for record in records:
            record_id = str(record["id"])
            self._add(record_id, self.index_keys(record), result)
            self._point(record_id, self.pointer_keys(record), result)
        self._report("rebuild", self.plural, result)
        return result

    # -- counters ----------------------------------------------------------

    def resync_counts(
        self,
        owner_kind: str,
        owner_plural: str,
        index_name: str,
        count_field: str = "post_count",
    ) -> Dict[str, int]:
        """Set ``count_field`` on every owner record to the size of its index.

        A pure re-derivation from current membership: running it twice with
        no writes in between yields the same counts, and it may interleave
        with unrelated writes.
        """
        counts: Dict[str, int] = {}
        for owner_id in sorted(self.kv.set_members(f"{owner_plural}:all")):
            count = self._sync_count(owner_kind, owner_id, index_name, count_field)
            if count is None:
                logger.warning(
                    "[CONSISTENCY] %s:all lists '%s' but %s:%s is missing or unreadable",
                    owner_plural,
                    owner_id,
                    owner_kind,
                    owner_id,
                )
                continue
            counts[owner_id] = count
        logger.info("Resynced %s %s counts for %d %s", index_name, count_field, len(counts), owner_plural)
        return counts

    def refresh_counts(
        self,
        owner_kind: str,
        index_name: str,
        owner_ids: Iterable[str],
        count_field: str = "post_count",
    ) -> Dict[str, int]:
        """Refresh ``count_field`` for the owners a write just touched.

        Best effort: owners that do not exist are skipped, and a store failure
        leaves that owner's count stale with a consistency warning until the
        next ``resync_counts``.
        """
        counts: Dict[str, int] = {}
        for owner_id in sorted(set(owner_ids)):
            try:
                count = self._sync_count(owner_kind, owner_id, index_name, count_field)
            except StoreUnavailable as exc:
                logger.warning(
                    "[CONSISTENCY] %s %s %s not refreshed: %s", owner_kind, owner_id, count_field, exc.message
                )
                continue
            if count is not None:
                counts[owner_id] = count
        return counts

    def _sync_count(self, owner_kind: str, owner_id: str, index_name: str, count_field: str) -> Optional[int]:
        """Write the index size onto one owner; None when the owner is absent."""
        primary_key = f"{owner_kind}:{owner_id}"
        raw = self.kv.get(primary_key)
        if raw is None:
            return None
        try:
            owner = codec.decode(owner_kind, raw)
        except CorruptRecord as exc:
            logger.warning("[CONSISTENCY] skipping corrupt %s during count sync: %s", primary_key, exc.details)
            return None
        count = self.kv.set_card(self.key_for(index_name, owner_id))
        if owner.get(count_field) != count:
            owner[count_field] = count
            self.kv.set(primary_key, codec.encode(owner))
        return count

    # -- internals ---------------------------------------------------------

    def _add(self, record_id: str, keys: Dict[str, Optional[int]], result: IndexResult) -> None:
        for key, ttl in keys.items():
            try:
                self.kv.set_add(key, record_id)
                if ttl is not None:
                    self.kv.expire(key, ttl)
                result.added.append(key)
            except StoreUnavailable:
                result.failed_keys.append(key)

    def _remove(self, record_id: str, keys: Iterable[str], result: IndexResult) -> None:
        for key in keys:
            try:
                self.kv.set_remove(key, record_id)
                result.removed.append(key)
            except StoreUnavailable:
                result.failed_keys.append(key)

    def _point(self, record_id: str, keys: Iterable[str], result: IndexResult) -> None:
        for key in keys:
            try:
                self.kv.set(key, record_id.encode("utf-8"))
                result.added.append(key)
            except StoreUnavailable:
                result.failed_keys.append(key)

    def _unpoint(self, record_id: str, keys: Iterable[str], result: IndexResult) -> None:
        for key in keys:
            try:
                # Leave pointers that another record has since claimed.
                current = self.kv.get(key)
                if current is not None and current.decode("utf-8") == record_id:
                    self.kv.delete(key)
                    result.removed.append(key)
            except StoreUnavailable:
                result.failed_keys.append(key)

    def _report(self, operation: str, record_id: str, result: IndexResult) -> None:
        if result.failed_keys:
            logger.warning(
                "[CONSISTENCY] %s %s %s: %d index key(s) not updated: %s",
                self.plural,
                operation,
                record_id,
                len(result.failed_keys),
                ", ".join(result.failed_keys),
            )
