"""Generic repository over a :class:`~sachain.storage.backends.TableBackend`.

Every store call made by a repository goes through :meth:`BaseRepository._run`,
which

1. runs the call inside the shared :class:`BackoffExecutor`,
2. logs duration and attempt count,
3. converts any terminal failure into a :class:`StorageError` via the
   :class:`ErrorClassifier`.

Subclasses compose these primitives into domain operations and never see a
backend's native error types.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, Iterable, Mapping, Sequence, TypeVar

import structlog
from pydantic import BaseModel

from sachain.storage.backends import PARTITION_KEY, SORT_KEY, Item, Key, TableBackend
from sachain.storage.errors import ErrorClassifier
from sachain.storage.retry import BackoffExecutor, RetryConfig

if TYPE_CHECKING:
    from config.settings import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


# ---------------------------------------------------------------------------
# Configuration and result shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RepositoryConfig:
    """Explicit configuration injected into every repository."""

    table_name: str = "sachain-kyc"
    retry: RetryConfig = field(default_factory=RetryConfig)
    batch_write_size: int = 25
    batch_get_size: int = 100
    retention_batch_limit: int = 100
    erasure_batch_limit: int = 100
    audit_stats_limit: int = 1000
    export_max_items: int = 1000

    def __post_init__(self) -> None:
        if not 1 <= self.batch_write_size <= 25:
            raise ValueError("batch_write_size must be between 1 and 25")
        if not 1 <= self.batch_get_size <= 100:
            raise ValueError("batch_get_size must be between 1 and 100")

    @classmethod
    def from_settings(cls, settings: Settings) -> RepositoryConfig:
        return cls(
            table_name=settings.table_name,
            retry=RetryConfig.from_settings(settings),
            batch_write_size=settings.batch_write_size,
            batch_get_size=settings.batch_get_size,
            retention_batch_limit=settings.retention_batch_limit,
            erasure_batch_limit=settings.erasure_batch_limit,
            audit_stats_limit=settings.audit_stats_limit,
            export_max_items=settings.export_max_items,
        )


@dataclass(frozen=True, slots=True)
class Pagination:
    """Page size plus the opaque continuation token of a previous page."""

    limit: int | None = None
    exclusive_start_key: dict[str, Any] | None = None


@dataclass(slots=True)
class QueryResult(Generic[T]):
    items: list[T] = field(default_factory=list)
    count: int = 0
    last_evaluated_key: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_timestamp(moment: datetime | None = None) -> str:
    """Fixed-width ISO-8601 UTC timestamp (``2024-01-31T12:00:00.000000Z``).

    Fixed width keeps lexicographic order equal to chronological order, which
    the sort keys and retention cutoffs rely on.
    """
    moment = (moment or utc_now()).astimezone(UTC)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


_PLACEHOLDER_RE = re.compile(r"\W")


def _placeholder(name: str) -> str:
    return _PLACEHOLDER_RE.sub("_", name)


def build_update(
    set_values: Mapping[str, Any],
    remove: Iterable[str] = (),
    *,
    if_not_exists: Iterable[str] = (),
) -> tuple[str, dict[str, str], dict[str, Any]]:
    """Build ``(expression, names, values)`` for a partial update.

    Only attributes present in *set_values* with a non-``None`` value are
    written; attributes listed in *if_not_exists* keep any stored value.
    Attributes in *remove* are dropped from the item.

    Raises
    ------
    ValueError
        If there is nothing to set or remove.
    """
    keep = set(if_not_exists)
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    set_parts: list[str] = []
    for attr, value in set_values.items():
        if value is None:
            continue
        token = _placeholder(attr)
        names[f"#{token}"] = attr
        values[f":{token}"] = value
        if attr in keep:
            set_parts.append(f"#{token} = if_not_exists(#{token}, :{token})")
        else:
            set_parts.append(f"#{token} = :{token}")

    remove_parts: list[str] = []
    for attr in remove:
        if attr in set_values and set_values[attr] is not None:
            continue
        token = _placeholder(attr)
        names[f"#{token}"] = attr
        remove_parts.append(f"#{token}")

    if not set_parts and not remove_parts:
        raise ValueError("No fields to update")

    clauses = []
    if set_parts:
        clauses.append("SET " + ", ".join(set_parts))
    if remove_parts:
        clauses.append("REMOVE " + ", ".join(remove_parts))
    return " ".join(clauses), names, values


def _chunks(seq: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for start in range(0, len(seq), size):
        yield seq[start : start + size]


# ---------------------------------------------------------------------------
# Base repository
# ---------------------------------------------------------------------------


class BaseRepository:
    """Retrying, classified, logged access to the single table.

    Parameters
    ----------
    backend:
        The table backend (in-memory or DynamoDB).
    config:
        Table name, retry policy and batch limits.
    executor:
        Backoff executor; one is built from ``config.retry`` when omitted.
        May be shared between repositories.
    """

    def __init__(
        self,
        backend: TableBackend,
        config: RepositoryConfig | None = None,
        executor: BackoffExecutor | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or RepositoryConfig()
        self._executor = executor or BackoffExecutor(self._config.retry)

    @property
    def config(self) -> RepositoryConfig:
        return self._config

    @property
    def backend(self) -> TableBackend:
        return self._backend

    # -- Execution wrapper -----------------------------------------------------

    async def _run(self, operation: str, fn: Callable[[], Awaitable[T]], **context: Any) -> T:
        label = f"{type(self).__name__}.{operation}"
        started = time.monotonic()
        try:
            outcome = await self._executor.execute(fn, label)
        except Exception as exc:
            error = ErrorClassifier.to_storage_error(exc, {"operation": label, "table": self._config.table_name, **context})
            logger.error(
                "storage.operation_failed",
                operation=label,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                category=error.category,
                code=error.details.code,
                retryable=error.retryable,
                error=error.technical_message,
                **context,
            )
            if error is exc:
                raise
            raise error from exc

        duration_ms = round((time.monotonic() - started) * 1000, 2)
        logger.debug(
            "storage.operation_completed",
            operation=label,
            duration_ms=duration_ms,
            attempts=outcome.attempts,
        )
        if outcome.attempts > 1:
            logger.info(
                "storage.succeeded_after_retries",
                operation=label,
                attempts=outcome.attempts,
                duration_ms=duration_ms,
            )
        return outcome.result

    @staticmethod
    def _parse(item: Item, model: type[M] | None) -> Item | M:
        return model.model_validate(item) if model is not None else item

    @staticmethod
    def _key(pk: str, sk: str) -> Key:
        return {PARTITION_KEY: pk, SORT_KEY: sk}

    # -- Single-item operations ------------------------------------------------

    async def put_item(self, item: Mapping[str, Any] | BaseModel) -> None:
        """Unconditional upsert by primary key."""
        data = _as_item(item)
        await self._run("put_item", lambda: self._backend.put(data), pk=data.get(PARTITION_KEY), sk=data.get(SORT_KEY))

    async def get_item(self, pk: str, sk: str, model: type[M] | None = None) -> Any:
        """Return the item (or parsed model), or ``None`` when absent."""

        async def op() -> Any:
            item = await self._backend.get(self._key(pk, sk))
            return self._parse(item, model) if item is not None else None

        return await self._run("get_item", op, pk=pk, sk=sk)

    async def update_item(
        self,
        pk: str,
        sk: str,
        update_expression: str,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        model: type[M] | None = None,
        *,
        condition_expression: str | None = None,
    ) -> Any:
        """Apply a partial update and return the full updated item."""

        async def op() -> Any:
            item = await self._backend.update(
                self._key(pk, sk), update_expression, names, values, condition_expression=condition_expression
            )
            return self._parse(item, model)

        return await self._run("update_item", op, pk=pk, sk=sk)

    async def update_existing_item(
        self,
        pk: str,
        sk: str,
        set_values: Mapping[str, Any],
        remove: Iterable[str] = (),
        *,
        model: type[M] | None = None,
    ) -> Any:
        """Partial update that fails with a ``conflict`` error if the item is absent."""
        expression, names, values = build_update(set_values, remove)
        names["#_pk"] = PARTITION_KEY
        return await self.update_item(
            pk, sk, expression, names, values, model=model, condition_expression="attribute_exists(#_pk)"
        )

    async def delete_item(self, pk: str, sk: str) -> None:
        """Unconditional, idempotent delete."""
        await self._run("delete_item", lambda: self._backend.delete(self._key(pk, sk)), pk=pk, sk=sk)

    # -- Multi-item reads ------------------------------------------------------

    async def query_items(
        self,
        key_condition: str,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        index_name: str | None = None,
        filter_expression: str | None = None,
        pagination: Pagination | None = None,
        model: type[M] | None = None,
        scan_forward: bool = True,
    ) -> QueryResult[Any]:
        page_spec = pagination or Pagination()

        async def op() -> QueryResult[Any]:
            page = await self._backend.query(
                key_condition,
                names,
                values,
                index_name=index_name,
                filter_expression=filter_expression,
                limit=page_spec.limit,
                exclusive_start_key=page_spec.exclusive_start_key,
                scan_forward=scan_forward,
            )
            return QueryResult(
                items=[self._parse(i, model) for i in page.items],
                count=page.count,
                last_evaluated_key=page.last_evaluated_key,
            )

        return await self._run("query_items", op, index=index_name)

    async def scan_items(
        self,
        filter_expression: str | None = None,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        pagination: Pagination | None = None,
        model: type[M] | None = None,
    ) -> QueryResult[Any]:
        """Full-table filter scan. Call sites should always pass a limit."""
        page_spec = pagination or Pagination()

        async def op() -> QueryResult[Any]:
            page = await self._backend.scan(
                filter_expression,
                names,
                values,
                limit=page_spec.limit,
                exclusive_start_key=page_spec.exclusive_start_key,
            )
            return QueryResult(
                items=[self._parse(i, model) for i in page.items],
                count=page.count,
                last_evaluated_key=page.last_evaluated_key,
            )

        return await self._run("scan_items", op)

    async def query_all_items(
        self,
        key_condition: str,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        index_name: str | None = None,
        filter_expression: str | None = None,
        max_items: int | None = None,
        model: type[M] | None = None,
        scan_forward: bool = True,
    ) -> list[Any]:
        """Follow continuation tokens until exhausted or *max_items* matches."""
        cap = max_items or self._config.export_max_items
        items: list[Any] = []
        start_key: dict[str, Any] | None = None
        while len(items) < cap:
            result = await self.query_items(
                key_condition,
                names,
                values,
                index_name=index_name,
                filter_expression=filter_expression,
                pagination=Pagination(limit=cap - len(items), exclusive_start_key=start_key),
                model=model,
                scan_forward=scan_forward,
            )
            items.extend(result.items)
            start_key = result.last_evaluated_key
            if start_key is None:
                break
        return items[:cap]

    async def scan_all_items(
        self,
        filter_expression: str | None = None,
        names: Mapping[str, str] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        page_size: int | None = None,
        max_items: int | None = None,
        model: type[M] | None = None,
    ) -> list[Any]:
        """Scan page by page until exhausted or *max_items* matches."""
        cap = max_items or self._config.export_max_items
        size = page_size or cap
        items: list[Any] = []
        start_key: dict[str, Any] | None = None
        while len(items) < cap:
            result = await self.scan_items(
                filter_expression,
                names,
                values,
                pagination=Pagination(limit=size, exclusive_start_key=start_key),
                model=model,
            )
            items.extend(result.items)
            start_key = result.last_evaluated_key
            if start_key is None:
                break
        return items[:cap]

    # -- Batch operations ------------------------------------------------------

    async def batch_get_items(self, keys: Sequence[Mapping[str, str]], model: type[M] | None = None) -> list[Any]:
        if not keys:
            return []
        found: list[Any] = []
        for chunk in _chunks([self._key(k[PARTITION_KEY], k[SORT_KEY]) for k in keys], self._config.batch_get_size):

            async def op(chunk: Sequence[Key] = chunk) -> list[Any]:
                return [self._parse(i, model) for i in await self._backend.batch_get(chunk)]

            found.extend(await self._run("batch_get_items", op, size=len(chunk)))
        return found

    async def batch_write_items(self, items: Sequence[Mapping[str, Any] | BaseModel]) -> None:
        """Upsert *items* in sequential chunks of ``batch_write_size``."""
        data = [_as_item(i) for i in items]
        for chunk in _chunks(data, self._config.batch_write_size):
            await self._run("batch_write_items", lambda chunk=chunk: self._backend.batch_write(put_items=chunk), size=len(chunk))

    async def batch_delete_items(self, keys: Sequence[Mapping[str, str]]) -> int:
        """Delete *keys* in sequential chunks; returns the number of keys submitted."""
        data = [self._key(k[PARTITION_KEY], k[SORT_KEY]) for k in keys]
        for chunk in _chunks(data, self._config.batch_write_size):
            await self._run("batch_delete_items", lambda chunk=chunk: self._backend.batch_write(delete_keys=chunk), size=len(chunk))
        return len(data)


def _as_item(item: Mapping[str, Any] | BaseModel) -> Item:
    if isinstance(item, BaseModel):
        return item.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(item)
