"""Single-table key-value store backends.

Two interchangeable implementations of :class:`TableBackend`:

* :class:`InMemoryTableBackend` -- a process-local table with the same key
  schema, secondary indexes, expression language and batch limits as the
  production table.  Used in development and in the test suite.
* :class:`DynamoDBTableBackend` -- the production table accessed through
  ``aioboto3`` (optional ``dynamodb`` extra, imported lazily).

Backends raise native errors (:class:`StoreOperationError` or botocore
``ClientError``); translating those is the repository layer's job.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Final, Mapping, Protocol, Sequence, runtime_checkable

import structlog

from sachain.storage.errors import StoreOperationError
from sachain.storage.expressions import compile_condition, compile_update

if TYPE_CHECKING:
    from config.settings import Settings

logger = structlog.get_logger(__name__)

Item = dict[str, Any]
Key = dict[str, str]

PARTITION_KEY: Final[str] = "PK"
SORT_KEY: Final[str] = "SK"

# index name -> (partition attribute, sort attribute)
INDEXES: Final[dict[str, tuple[str, str]]] = {
    "GSI1": ("GSI1PK", "GSI1SK"),
    "GSI2": ("GSI2PK", "GSI2SK"),
}

MAX_BATCH_WRITE: Final[int] = 25
MAX_BATCH_GET: Final[int] = 100


@dataclass(slots=True)
class Page:
    """One page of a query or scan."""

    items: list[Item] = field(default_factory=list)
    count: int = 0
    last_evaluated_key: Key | None = None


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class TableBackend(Protocol):
    """Async interface to one logical table."""

    async def put(self, item: Item) -> None: ...

    async def get(self, key: Key) -> Item | None: ...

    async def update(
        self,
        key: Key,
        update_expression: str,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        condition_expression: str | None = None,
    ) -> Item: ...

    async def delete(self, key: Key) -> None: ...

    async def query(
        self,
        key_condition: str,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        index_name: str | None = None,
        filter_expression: str | None = None,
        limit: int | None = None,
        exclusive_start_key: Key | None = None,
        scan_forward: bool = True,
    ) -> Page: ...

    async def scan(
        self,
        filter_expression: str | None = None,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
        exclusive_start_key: Key | None = None,
    ) -> Page: ...

    async def batch_get(self, keys: Sequence[Key]) -> list[Item]: ...

    async def batch_write(self, put_items: Sequence[Item] = (), delete_keys: Sequence[Key] = ()) -> None: ...

    async def close(self) -> None: ...


def _validation(message: str) -> StoreOperationError:
    return StoreOperationError("ValidationException", message, http_status=400)


def _primary_key(item: Mapping[str, Any]) -> Key:
    pk, sk = item.get(PARTITION_KEY), item.get(SORT_KEY)
    if not isinstance(pk, str) or not pk or not isinstance(sk, str) or not sk:
        raise _validation("One or more parameter values were invalid: Missing the key PK or SK in the item")
    return {PARTITION_KEY: pk, SORT_KEY: sk}


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryTableBackend:
    """Dict-backed table with sparse GSI1/GSI2 projections.

    Items are deep-copied on the way in and out so callers can never
    mutate stored state.  Guarded by an :class:`asyncio.Lock`; every
    operation is atomic with respect to the others.
    """

    __slots__ = ("_items", "_lock")

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], Item] = {}
        self._lock = asyncio.Lock()

    # -- TableBackend interface ------------------------------------------------

    async def put(self, item: Item) -> None:
        key = _primary_key(item)
        async with self._lock:
            self._items[(key[PARTITION_KEY], key[SORT_KEY])] = copy.deepcopy(dict(item))

    async def get(self, key: Key) -> Item | None:
        pk, sk = self._key_tuple(key)
        async with self._lock:
            item = self._items.get((pk, sk))
            return copy.deepcopy(item) if item is not None else None

    async def update(
        self,
        key: Key,
        update_expression: str,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        condition_expression: str | None = None,
    ) -> Item:
        pk, sk = self._key_tuple(key)
        apply = compile_update(update_expression, names, values)
        condition = compile_condition(condition_expression, names, values) if condition_expression else None
        async with self._lock:
            stored = self._items.get((pk, sk))
            if condition is not None and not condition(stored or {}):
                raise StoreOperationError(
                    "ConditionalCheckFailedException", "The conditional request failed", http_status=400
                )
            current = stored or {PARTITION_KEY: pk, SORT_KEY: sk}
            updated = apply(copy.deepcopy(current))
            if updated.get(PARTITION_KEY) != pk or updated.get(SORT_KEY) != sk:
                raise _validation("Cannot update attribute PK or SK. This attribute is part of the key")
            self._items[(pk, sk)] = updated
            return copy.deepcopy(updated)

    async def delete(self, key: Key) -> None:
        pk, sk = self._key_tuple(key)
        async with self._lock:
            self._items.pop((pk, sk), None)

    async def query(
        self,
        key_condition: str,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        index_name: str | None = None,
        filter_expression: str | None = None,
        limit: int | None = None,
        exclusive_start_key: Key | None = None,
        scan_forward: bool = True,
    ) -> Page:
        if index_name is not None and index_name not in INDEXES:
            raise _validation(f"The table does not have the specified index: {index_name}")
        pk_attr, sk_attr = INDEXES[index_name] if index_name else (PARTITION_KEY, SORT_KEY)
        key_predicate = compile_condition(key_condition, names, values)
        filter_predicate = compile_condition(filter_expression, names, values) if filter_expression else None

        def order(item: Item) -> tuple[str, ...]:
            return (item[sk_attr], item[PARTITION_KEY], item[SORT_KEY])

        async with self._lock:
            candidates = [
                item
                for item in self._items.values()
                if isinstance(item.get(pk_attr), str)
                and isinstance(item.get(sk_attr), str)
                and key_predicate(item)
            ]
            candidates.sort(key=order, reverse=not scan_forward)
            if exclusive_start_key is not None:
                start = (
                    exclusive_start_key.get(sk_attr, ""),
                    exclusive_start_key.get(PARTITION_KEY, ""),
                    exclusive_start_key.get(SORT_KEY, ""),
                )
                if scan_forward:
                    candidates = [i for i in candidates if order(i) > start]
                else:
                    candidates = [i for i in candidates if order(i) < start]
            return self._page(candidates, filter_predicate, limit, (pk_attr, sk_attr))

    async def scan(
        self,
        filter_expression: str | None = None,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
        exclusive_start_key: Key | None = None,
    ) -> Page:
        filter_predicate = compile_condition(filter_expression, names, values) if filter_expression else None
        async with self._lock:
            keys = sorted(self._items)
            if exclusive_start_key is not None:
                start = self._key_tuple(exclusive_start_key)
                keys = [k for k in keys if k > start]
            return self._page([self._items[k] for k in keys], filter_predicate, limit, None)

    async def batch_get(self, keys: Sequence[Key]) -> list[Item]:
        if len(keys) > MAX_BATCH_GET:
            raise _validation(f"Too many items requested for the BatchGetItem call (max {MAX_BATCH_GET})")
        tuples = [self._key_tuple(k) for k in keys]
        async with self._lock:
            return [copy.deepcopy(self._items[t]) for t in tuples if t in self._items]

    async def batch_write(self, put_items: Sequence[Item] = (), delete_keys: Sequence[Key] = ()) -> None:
        if len(put_items) + len(delete_keys) > MAX_BATCH_WRITE:
            raise _validation(
                f"Too many items requested for the BatchWriteItem call (max {MAX_BATCH_WRITE})"
            )
        puts = [(self._key_tuple(_primary_key(i)), copy.deepcopy(dict(i))) for i in put_items]
        deletes = [self._key_tuple(k) for k in delete_keys]
        async with self._lock:
            for key, item in puts:
                self._items[key] = item
            for key in deletes:
                self._items.pop(key, None)

    async def close(self) -> None:
        return None

    # -- Introspection ---------------------------------------------------------

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> list[Item]:
        """All stored items in primary-key order (deep copies)."""
        return [copy.deepcopy(self._items[k]) for k in sorted(self._items)]

    # -- Internals -------------------------------------------------------------

    @staticmethod
    def _key_tuple(key: Mapping[str, Any]) -> tuple[str, str]:
        k = _primary_key(key)
        return k[PARTITION_KEY], k[SORT_KEY]

    @staticmethod
    def _page(
        candidates: list[Item],
        predicate: Any,
        limit: int | None,
        index_attrs: tuple[str, str] | None,
    ) -> Page:
        if limit is not None and limit < 1:
            raise _validation("Limit must be greater than or equal to 1")
        evaluated = candidates[:limit] if limit is not None else candidates
        matched = [copy.deepcopy(i) for i in evaluated if predicate is None or predicate(i)]

        last_key: Key | None = None
        if limit is not None and len(candidates) > limit:
            last = evaluated[-1]
            last_key = {PARTITION_KEY: last[PARTITION_KEY], SORT_KEY: last[SORT_KEY]}
            if index_attrs is not None:
                for attr in index_attrs:
                    last_key[attr] = last[attr]
        return Page(items=matched, count=len(matched), last_evaluated_key=last_key)


# ---------------------------------------------------------------------------
# DynamoDB backend
# ---------------------------------------------------------------------------


def _to_store(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_store(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_store(v) for v in value]
    return value


def _from_store(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_store(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_store(v) for v in value]
    return value


def _expression_kwargs(names: Mapping[str, str] | None, values: Mapping[str, Any] | None) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if names:
        kwargs["ExpressionAttributeNames"] = dict(names)
    if values:
        kwargs["ExpressionAttributeValues"] = _to_store(dict(values))
    return kwargs


class DynamoDBTableBackend:
    """DynamoDB table accessed through ``aioboto3``.

    The resource is opened on first use and kept for the lifetime of the
    backend; call :meth:`close` on shutdown.
    """

    __slots__ = ("_endpoint_url", "_lock", "_region", "_resource", "_session", "_stack", "_table", "_table_name")

    def __init__(self, table_name: str, *, region: str, endpoint_url: str | None = None) -> None:
        import aioboto3

        self._session = aioboto3.Session()
        self._table_name = table_name
        self._region = region
        self._endpoint_url = endpoint_url
        self._lock = asyncio.Lock()
        self._stack: contextlib.AsyncExitStack | None = None
        self._resource: Any = None
        self._table: Any = None

    async def _get_table(self) -> Any:
        async with self._lock:
            if self._table is None:
                stack = contextlib.AsyncExitStack()
                self._resource = await stack.enter_async_context(
                    self._session.resource("dynamodb", region_name=self._region, endpoint_url=self._endpoint_url)
                )
                self._table = await self._resource.Table(self._table_name)
                self._stack = stack
                logger.info("storage.dynamodb_connected", table=self._table_name, region=self._region)
            return self._table

    # -- TableBackend interface ------------------------------------------------

    async def put(self, item: Item) -> None:
        table = await self._get_table()
        await table.put_item(Item=_to_store(item))

    async def get(self, key: Key) -> Item | None:
        table = await self._get_table()
        response = await table.get_item(Key=key)
        item = response.get("Item")
        return _from_store(item) if item is not None else None

    async def update(
        self,
        key: Key,
        update_expression: str,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        condition_expression: str | None = None,
    ) -> Item:
        table = await self._get_table()
        response = await table.update_item(
            Key=key,
            UpdateExpression=update_expression,
            ReturnValues="ALL_NEW",
            **_expression_kwargs(names, values),
            **({"ConditionExpression": condition_expression} if condition_expression else {}),
        )
        return _from_store(response.get("Attributes") or {})

    async def delete(self, key: Key) -> None:
        table = await self._get_table()
        await table.delete_item(Key=key)

    async def query(
        self,
        key_condition: str,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        index_name: str | None = None,
        filter_expression: str | None = None,
        limit: int | None = None,
        exclusive_start_key: Key | None = None,
        scan_forward: bool = True,
    ) -> Page:
        table = await self._get_table()
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": key_condition,
            "ScanIndexForward": scan_forward,
            **_expression_kwargs(names, values),
        }
        if index_name:
            kwargs["IndexName"] = index_name
        if filter_expression:
            kwargs["FilterExpression"] = filter_expression
        if limit is not None:
            kwargs["Limit"] = limit
        if exclusive_start_key:
            kwargs["ExclusiveStartKey"] = exclusive_start_key
        response = await table.query(**kwargs)
        return self._page(response)

    async def scan(
        self,
        filter_expression: str | None = None,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
        exclusive_start_key: Key | None = None,
    ) -> Page:
        table = await self._get_table()
        kwargs: dict[str, Any] = _expression_kwargs(names, values)
        if filter_expression:
            kwargs["FilterExpression"] = filter_expression
        if limit is not None:
            kwargs["Limit"] = limit
        if exclusive_start_key:
            kwargs["ExclusiveStartKey"] = exclusive_start_key
        response = await table.scan(**kwargs)
        return self._page(response)

    async def batch_get(self, keys: Sequence[Key]) -> list[Item]:
        if not keys:
            return []
        await self._get_table()
        response = await self._resource.batch_get_item(RequestItems={self._table_name: {"Keys": list(keys)}})
        if response.get("UnprocessedKeys"):
            raise StoreOperationError(
                "ProvisionedThroughputExceededException", "BatchGetItem returned unprocessed keys"
            )
        return [_from_store(i) for i in response.get("Responses", {}).get(self._table_name, [])]

    async def batch_write(self, put_items: Sequence[Item] = (), delete_keys: Sequence[Key] = ()) -> None:
        requests = [{"PutRequest": {"Item": _to_store(i)}} for i in put_items]
        requests += [{"DeleteRequest": {"Key": k}} for k in delete_keys]
        if not requests:
            return
        await self._get_table()
        response = await self._resource.batch_write_item(RequestItems={self._table_name: requests})
        if response.get("UnprocessedItems"):
            raise StoreOperationError(
                "ProvisionedThroughputExceededException", "BatchWriteItem returned unprocessed items"
            )

    async def close(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
            self._resource = None
            self._table = None

    @staticmethod
    def _page(response: Mapping[str, Any]) -> Page:
        items = [_from_store(i) for i in response.get("Items", [])]
        return Page(items=items, count=response.get("Count", len(items)), last_evaluated_key=response.get("LastEvaluatedKey"))


def create_backend(settings: Settings) -> TableBackend:
    """Build the backend selected by ``settings.store_backend``."""
    if settings.store_backend == "dynamodb":
        return DynamoDBTableBackend(
            settings.table_name,
            region=settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint_url,
        )
    return InMemoryTableBackend()
