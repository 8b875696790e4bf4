"""rentals_shared.kv — Flat key/value + set operations over one DynamoDB table.

Every key is one item addressed by the string hash key ``pk``:

    value keys    ``value``      (B)  raw bytes written by ``set``
    set keys      ``members``    (SS) string set managed by ``set_add``/``set_remove``
    counters      ``counter``    (N)  managed by ``incr``
    any key       ``expires_at`` (N)  epoch seconds, also the table's TTL attribute

DynamoDB deletes expired items lazily, so reads treat an elapsed
``expires_at`` as absent. Nothing here spans more than one key: each call is
a single-item request and no multi-key atomicity is implied.

Any botocore failure surfaces as ``StoreUnavailable``; a failed read is never
reported as a missing key.
"""

from __future__ import annotations

import contextlib
import fnmatch
import logging
import time
from typing import Any, Dict, Iterator, List, Optional, Set

from botocore.exceptions import BotoCoreError, ClientError

from rentals_shared import config
from rentals_shared.aws_clients import _get_ddb
from rentals_shared.errors import ServiceUnavailable, StoreUnavailable

logger = logging.getLogger(__name__)

_NAMES = {
    "#v": "value",
    "#m": "members",
    "#c": "counter",
    "#e": "expires_at",
}


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


@contextlib.contextmanager
def _store_call(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except (BotoCoreError, ClientError) as exc:
        logger.error("KV %s failed for key %s: %s", operation, key, exc)
        raise StoreUnavailable(f"Store {operation} failed for '{key}'", {"key": key}) from exc


class KVClient:
    """Adapter exposing get/set/delete/expire and set-collection operations."""

    def __init__(self, table_name: Optional[str] = None, client: Any = None):
        self.table_name = table_name if table_name is not None else config.CONTENT_TABLE
        if not self.table_name:
            raise ServiceUnavailable("Content store is not configured (CONTENT_TABLE unset)")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_ddb()
        return self._client

    @staticmethod
    def _key(key: str) -> Dict[str, Any]:
        return {"pk": {"S": key}}

    @staticmethod
    def _expired(item: Dict[str, Any]) -> bool:
        raw = (item.get("expires_at") or {}).get("N")
        return raw is not None and int(raw) <= int(time.time())

    def _get_item(self, key: str, attribute: str) -> Optional[Dict[str, Any]]:
        with _store_call("get", key):
            resp = self.client.get_item(
                TableName=self.table_name,
                Key=self._key(key),
                ConsistentRead=True,
                ProjectionExpression=f"{attribute}, #e",
                ExpressionAttributeNames={attribute: _NAMES[attribute], "#e": "expires_at"},
            )
        item = resp.get("Item")
        if not item or self._expired(item):
            return None
        return item

    # -- values ------------------------------------------------------------

    def get(self, key: str) -> Optional[bytes]:
        item = self._get_item(key, "#v")
        if item is None or "value" not in item:
            return None
        raw = item["value"].get("B")
        if raw is None:
            return None
        return bytes(raw)

    def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        item: Dict[str, Any] = {"pk": {"S": key}, "value": {"B": value}}
        if ttl is not None:
            item["expires_at"] = {"N": str(int(time.time()) + int(ttl))}
        with _store_call("set", key):
            self.client.put_item(TableName=self.table_name, Item=item)

    def delete(self, key: str) -> None:
        with _store_call("delete", key):
            self.client.delete_item(TableName=self.table_name, Key=self._key(key))

    def expire(self, key: str, ttl: int) -> bool:
        """Set a time-to-live on an existing key; False when the key is absent."""
        with _store_call("expire", key):
            try:
                self.client.update_item(
                    TableName=self.table_name,
                    Key=self._key(key),
                    UpdateExpression="SET #e = :e",
                    ConditionExpression="attribute_exists(pk)",
                    ExpressionAttributeNames={"#e": "expires_at"},
                    ExpressionAttributeValues={":e": {"N": str(int(time.time()) + int(ttl))}},
                )
            except ClientError as exc:
                if _is_conditional_failure(exc):
                    return False
                raise
        return True

    def incr(self, key: str, amount: int = 1) -> int:
        with _store_call("incr", key):
            resp = self.client.update_item(
                TableName=self.table_name,
                Key=self._key(key),
                UpdateExpression="ADD #c :n",
                ExpressionAttributeNames={"#c": "counter"},
                ExpressionAttributeValues={":n": {"N": str(int(amount))}},
                ReturnValues="UPDATED_NEW",
            )
        return int(resp["Attributes"]["counter"]["N"])

    # -- sets --------------------------------------------------------------

    def set_add(self, set_key: str, member: str) -> None:
        with _store_call("set_add", set_key):
            self.client.update_item(
                TableName=self.table_name,
                Key=self._key(set_key),
                UpdateExpression="ADD #m :m",
                ExpressionAttributeNames={"#m": "members"},
                ExpressionAttributeValues={":m": {"SS": [str(member)]}},
            )

    def set_remove(self, set_key: str, member: str) -> None:
        with _store_call("set_remove", set_key):
            try:
                self.client.update_item(
                    TableName=self.table_name,
                    Key=self._key(set_key),
                    UpdateExpression="DELETE #m :m",
                    ConditionExpression="attribute_exists(pk)",
                    ExpressionAttributeNames={"#m": "members"},
                    ExpressionAttributeValues={":m": {"SS": [str(member)]}},
                )
            except ClientError as exc:
                # Removing from a set that was never created is a no-op.
                if not _is_conditional_failure(exc):
                    raise

    def set_members(self, set_key: str) -> Set[str]:
        item = self._get_item(set_key, "#m")
        if item is None:
            return set()
        return set((item.get("members") or {}).get("SS") or [])

    def set_card(self, set_key: str) -> int:
        return len(self.set_members(set_key))

    # -- diagnostics -------------------------------------------------------

    def keys_matching(self, pattern: str) -> List[str]:
        """Glob-match every key in the table.

        Full scan; only for read-only introspection. The result is not a
        consistent snapshot.
        """
        keys: List[str] = []
        with _store_call("scan", pattern):
            paginator = self.client.get_paginator("scan")
            for page in paginator.paginate(TableName=self.table_name, ProjectionExpression="pk"):
                for item in page.get("Items") or []:
                    key = (item.get("pk") or {}).get("S")
                    if key and fnmatch.fnmatchcase(key, pattern):
                        keys.append(key)
        return sorted(keys)
