from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Protocol, runtime_checkable

import asyncpg

from ..core.config import Settings
from ..core.exceptions import ResultStoreError
from ..core.logging import get_logger
from ..utils.json_encoding import decode_blob, encode_blob

logger = get_logger(name=__name__)


def agent_result_key(tenant_id: str, job_id: str, agent_id: str) -> str:
    return f"{tenant_id}/{job_id}/context/agent-results/{agent_id}.json"


def context_snapshot_key(tenant_id: str, job_id: str) -> str:
    return f"{tenant_id}/{job_id}/context/context-snapshot.json"


@runtime_checkable
class ResultStore(Protocol):
    """Durable put/get of full agent results keyed by (tenant, job, agent)."""

    async def put(self, tenant_id: str, job_id: str, agent_id: str, blob: Any) -> str: ...

    async def get(self, tenant_id: str, job_id: str, agent_id: str) -> Any | None: ...

    async def put_snapshot(self, tenant_id: str, job_id: str, blob: Any) -> str: ...


class InMemoryResultStore:
    """Process-local store; blobs round-trip through JSON like the durable backends."""

    def __init__(self) -> None:
        self._blobs: dict[str, str] = {}

    async def put(self, tenant_id: str, job_id: str, agent_id: str, blob: Any) -> str:
        key = agent_result_key(tenant_id, job_id, agent_id)
        self._blobs[key] = encode_blob(blob)
        return key

    async def get(self, tenant_id: str, job_id: str, agent_id: str) -> Any | None:
        raw = self._blobs.get(agent_result_key(tenant_id, job_id, agent_id))
        return decode_blob(raw)

    async def put_snapshot(self, tenant_id: str, job_id: str, blob: Any) -> str:
        key = context_snapshot_key(tenant_id, job_id)
        self._blobs[key] = encode_blob(blob)
        return key

    @property
    def keys(self) -> list[str]:
        return sorted(self._blobs)

    def read_key(self, key: str) -> Any | None:
        return decode_blob(self._blobs.get(key))


class LocalResultStore:
    """Filesystem-backed store writing pretty-printed JSON under ``root``."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    async def put(self, tenant_id: str, job_id: str, agent_id: str, blob: Any) -> str:
        key = agent_result_key(tenant_id, job_id, agent_id)
        await self._write(key, encode_blob(blob, indent=2))
        return key

    async def get(self, tenant_id: str, job_id: str, agent_id: str) -> Any | None:
        content = await self._read(agent_result_key(tenant_id, job_id, agent_id))
        return decode_blob(content)

    async def put_snapshot(self, tenant_id: str, job_id: str, blob: Any) -> str:
        key = context_snapshot_key(tenant_id, job_id)
        await self._write(key, encode_blob(blob, indent=2))
        return key

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root.resolve()):
            raise ResultStoreError(f"Refusing to access key outside the store root: {key}")
        return path

    async def _write(self, key: str, content: str) -> None:
        path = self._path(key)

        def _write_file() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

        try:
            await asyncio.to_thread(_write_file)
        except OSError as exc:
            raise ResultStoreError(f"Failed to write {key}: {exc}") from exc
        logger.debug("local_store_write", key=key, bytes=len(content))

    async def _read(self, key: str) -> str | None:
        path = self._path(key)

        def _read_file() -> str | None:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

        try:
            return await asyncio.to_thread(_read_file)
        except OSError as exc:
            raise ResultStoreError(f"Failed to read {key}: {exc}") from exc


class PostgresResultStore:
    _UPSERT = """
        INSERT INTO agent_results(key, tenant_id, job_id, agent_id, payload)
        VALUES($1, $2, $3, $4, $5::jsonb)
        ON CONFLICT (key) DO UPDATE SET payload = EXCLUDED.payload, updated_at = now()
    """

    _FETCH = "SELECT payload FROM agent_results WHERE key = $1"

    CREATE_TABLE = """
        CREATE TABLE IF NOT EXISTS agent_results (
            key TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            job_id TEXT NOT NULL,
            agent_id TEXT NOT NULL,
            payload JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """

    def __init__(self, pool: Any | None) -> None:
        self._pool_or_factory = pool
        self._pool: Any | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresResultStore":
        postgres = settings.storage.postgres
        pool = asyncpg.create_pool(
            dsn=str(postgres.dsn),
            min_size=postgres.pool_min_size,
            max_size=postgres.pool_max_size,
        )
        return cls(pool)

    async def ensure_schema(self) -> None:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as connection:
                await connection.execute(self.CREATE_TABLE)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise ResultStoreError(f"Failed to create agent_results table: {exc}") from exc

    async def put(self, tenant_id: str, job_id: str, agent_id: str, blob: Any) -> str:
        key = agent_result_key(tenant_id, job_id, agent_id)
        await self._upsert(key, tenant_id, job_id, agent_id, blob)
        return key

    async def get(self, tenant_id: str, job_id: str, agent_id: str) -> Any | None:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as connection:
                row = await connection.fetchrow(self._FETCH, agent_result_key(tenant_id, job_id, agent_id))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise ResultStoreError(f"Failed to read result for {agent_id}: {exc}") from exc
        if row is None:
            return None
        return decode_blob(row["payload"])

    async def put_snapshot(self, tenant_id: str, job_id: str, blob: Any) -> str:
        key = context_snapshot_key(tenant_id, job_id)
        await self._upsert(key, tenant_id, job_id, "__context__", blob)
        return key

    async def _upsert(self, key: str, tenant_id: str, job_id: str, agent_id: str, blob: Any) -> None:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as connection:
                await connection.execute(self._UPSERT, key, tenant_id, job_id, agent_id, encode_blob(blob))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise ResultStoreError(f"Failed to store {key}: {exc}") from exc

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["PostgresResultStore"]:
        """Open the pool and create the results table; the pool is closed on exit."""
        try:
            await self.ensure_schema()
            yield self
        finally:
            await self.close()

    async def _ensure_pool(self) -> Any:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_factory
        if candidate is None:
            raise ResultStoreError("No asyncpg pool supplied to PostgresResultStore")
        if inspect.isawaitable(candidate):
            candidate = await candidate
        if hasattr(candidate, "acquire") and hasattr(candidate, "close"):
            await _initialize_pool(candidate)
            self._pool = candidate
            return self._pool
        raise ResultStoreError("Invalid asyncpg pool supplied to PostgresResultStore")


async def _initialize_pool(pool: Any) -> None:
    # asyncpg.create_pool() returns an un-awaited pool when used outside `async with`.
    initializer = getattr(pool, "_async__init__", None)
    if callable(initializer) and not getattr(pool, "_initialized", True):
        await initializer()


def build_result_store(settings: Settings) -> ResultStore:
    backend = settings.storage.backend
    if backend == "memory":
        return InMemoryResultStore()
    if backend == "postgres":
        return PostgresResultStore.from_settings(settings)
    return LocalResultStore(settings.storage.local_root)
