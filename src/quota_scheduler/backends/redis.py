# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
RedisReservationStore for the Quota Scheduler

This module provides the Redis store that lets schedulers in many processes
share one reservation timeline. Every mutating operation is a Lua script, so
the read-compute-write cycle of ``reserve`` runs atomically on the server.

Key Layout (all under one hash tag for Redis Cluster slot consistency):
- ``<prefix>:{<namespace>}:reservations``        ZSET, TTL'd
- ``<prefix>:{<namespace>}:active``              ZSET, TTL'd
- ``<prefix>:{<namespace>}:token_usage``         ZSET, TTL'd
- ``<prefix>:{<namespace>}:token_reservations``  ZSET, TTL'd
- ``<prefix>:{<namespace>}:worker_fairness``     ZSET, TTL'd
- ``<prefix>:{<namespace>}:metrics``             HASH, TTL'd

A crashed scheduler leaves nothing behind that outlives these TTLs.
"""

import asyncio
import base64
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, ClassVar

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import (
    ConnectionError,
    NoScriptError,
    RedisError,
    TimeoutError,
)

from ..exceptions import StoreOperationError, StoreUnavailableError
from ..types.reservation import MetricsCounters, SlotGrant, SlotLimits, StoreSnapshot
from .base import BaseReservationStore, HealthCheckResult

logger = logging.getLogger(__name__)


class RedisReservationStore(BaseReservationStore):
    """
    A distributed Redis reservation store.

    Deployment Requirements:
    - Redis 2.6+ (EVALSHA, PEXPIRE)
    - All keys share one hash tag, so Redis Cluster deployments keep them
      on a single slot
    """

    # Class-level Lua scripts loaded from files
    _lua_scripts: ClassVar[dict[str, str]] = {}

    SCRIPT_NAMES: ClassVar[tuple[str, ...]] = (
        "reserve_slot",
        "confirm_reservation",
        "record_token_usage",
        "snapshot",
    )

    @classmethod
    def _load_lua_scripts(cls) -> None:
        """Load Lua scripts from files at class level."""
        if cls._lua_scripts:
            return

        lua_dir = Path(__file__).parent / "lua"
        for script_name in cls.SCRIPT_NAMES:
            script_path = lua_dir / f"{script_name}.lua"
            if script_path.exists():
                cls._lua_scripts[script_name] = script_path.read_text(encoding="utf-8")
            else:
                logger.warning(f"Lua script not found: {script_path}")

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: Any | None = None,
        namespace: str = "default",
        key_prefix: str = "qs",
        max_connections: int = 10,
        socket_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the Redis store.

        Args:
            redis_url: Redis connection URL. If not provided, falls back to the
                REDIS_URL environment variable, then to "redis://localhost:6379".
            redis_client: Optional pre-configured ``redis.asyncio`` client. The
                store does not close clients it did not create.
            namespace: Scheduler instance name; part of every key
            key_prefix: Prefix for every key
            max_connections: Maximum connections in the owned pool
            socket_timeout: Connect and read timeout in seconds
        """
        super().__init__(namespace)

        self.redis_url = (
            redis_url or os.environ.get("REDIS_URL") or "redis://localhost:6379"
        )
        self.key_prefix = key_prefix
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout

        self._redis: Any | None = redis_client
        self._owned_redis = redis_client is None
        self._pool: ConnectionPool | None = None
        self._connected = False
        self._connection_lock = asyncio.Lock()

        # Lua script SHAs
        self._script_shas: dict[str, str] = {}

        namespace_b64 = base64.urlsafe_b64encode(namespace.encode()).decode().rstrip("=")
        base = f"{key_prefix}:{{{namespace_b64}}}"
        self.reservations_key = f"{base}:reservations"
        self.active_key = f"{base}:active"
        self.usage_key = f"{base}:token_usage"
        self.token_reservations_key = f"{base}:token_reservations"
        self.fairness_key = f"{base}:worker_fairness"
        self.metrics_key = f"{base}:metrics"

    @property
    def keys(self) -> tuple[str, ...]:
        """Every key owned by this store."""
        return (
            self.reservations_key,
            self.active_key,
            self.usage_key,
            self.token_reservations_key,
            self.fairness_key,
            self.metrics_key,
        )

    # === Connection Management ===

    async def _ensure_connected(self) -> Any:
        """Return a live client, connecting and loading scripts on first use."""
        if self._redis is not None and self._connected:
            return self._redis

        async with self._connection_lock:
            if self._redis is not None and self._connected:
                return self._redis
            try:
                if self._redis is None:
                    self._pool = ConnectionPool.from_url(
                        self.redis_url,
                        max_connections=self.max_connections,
                        decode_responses=True,
                        socket_connect_timeout=self.socket_timeout,
                        socket_timeout=self.socket_timeout,
                        retry_on_timeout=True,
                        health_check_interval=30,
                    )
                    self._redis = Redis(connection_pool=self._pool)
                await self._redis.ping()
                await self._load_scripts()
                self._connected = True
                logger.info(f"Connected reservation store to Redis ({self.namespace})")
                return self._redis
            except (ConnectionError, TimeoutError, OSError) as e:
                self._connected = False
                raise StoreUnavailableError(f"Redis unavailable: {e}") from e
            except RedisError as e:
                self._connected = False
                raise StoreOperationError(f"Redis setup failed: {e}") from e

    async def _load_scripts(self) -> None:
        """Load Lua scripts into Redis."""
        if not self._redis:
            raise RuntimeError("Redis client not initialized")

        self.__class__._load_lua_scripts()

        for script_name, script_source in self._lua_scripts.items():
            self._script_shas[script_name] = await self._redis.script_load(
                script_source
            )

    async def _evalsha_with_reload(
        self,
        redis_client: Any,
        script_name: str,
        num_keys: int,
        *args: Any,
    ) -> Any:
        """
        Execute EVALSHA with automatic script reload on NoScriptError.

        A restarted or failed-over Redis node loses its script cache; the
        scripts are reloaded and the call retried once.
        """
        script_sha = self._script_shas.get(script_name)
        if not script_sha:
            await self._load_scripts()
            script_sha = self._script_shas[script_name]

        try:
            return await redis_client.evalsha(script_sha, num_keys, *args)
        except NoScriptError:
            logger.warning(
                f"Script '{script_name}' not found in Redis (SHA: {script_sha}). "
                f"Reloading all Lua scripts..."
            )
            self._script_shas.clear()
            await self._load_scripts()

            new_sha = self._script_shas[script_name]
            logger.info(f"Scripts reloaded. Retrying with new SHA: {new_sha}")
            return await redis_client.evalsha(new_sha, num_keys, *args)

    async def _run_script(self, script_name: str, keys: tuple[str, ...], *args: Any) -> Any:
        """Run a script, translating Redis failures into store errors."""
        redis_client = await self._ensure_connected()
        try:
            return await self._evalsha_with_reload(
                redis_client, script_name, len(keys), *keys, *args
            )
        except (ConnectionError, TimeoutError, OSError) as e:
            self._connected = False
            raise StoreUnavailableError(f"Redis unavailable during {script_name}: {e}") from e
        except RedisError as e:
            raise StoreOperationError(f"Script {script_name} failed: {e}") from e

    # === Store Operations ===

    async def reserve(
        self,
        now_ms: int,
        worker_id: str,
        estimated_tokens: int,
        limits: SlotLimits,
        nonce: str,
    ) -> SlotGrant:
        result = await self._run_script(
            "reserve_slot",
            (
                self.reservations_key,
                self.active_key,
                self.usage_key,
                self.token_reservations_key,
                self.fairness_key,
                self.metrics_key,
            ),
            now_ms,
            worker_id,
            estimated_tokens,
            nonce,
            limits.safe_rpm,
            limits.safe_tpm,
            limits.min_spacing_ms,
            limits.worker_slot_penalty_ms,
            limits.tpm_backoff_scale_ms,
            limits.rpm_window_ms,
            limits.token_window_ms,
            limits.reservation_retention_ms,
            limits.fairness_window_ms,
            limits.metrics_ttl_seconds,
        )
        try:
            (
                scheduled,
                held,
                requests,
                active,
                used,
                reserved,
                rpm_delayed,
                tpm_delayed,
                fairness_penalized,
                handle,
            ) = result
        except (TypeError, ValueError) as e:
            logger.error(f"Unexpected reserve_slot response: {result!r}")
            raise StoreOperationError(f"Unexpected reserve_slot response: {result!r}") from e

        if isinstance(handle, bytes):
            handle = handle.decode()

        return SlotGrant(
            scheduled_time_ms=int(scheduled),
            handle=handle,
            held_tokens=int(held),
            requests_in_window=int(requests),
            active_requests=int(active),
            used_tokens=int(used),
            reserved_tokens=int(reserved),
            rpm_delayed=bool(int(rpm_delayed)),
            tpm_delayed=bool(int(tpm_delayed)),
            fairness_penalized=bool(int(fairness_penalized)),
        )

    async def confirm(
        self,
        now_ms: int,
        worker_id: str,
        scheduled_time_ms: int,
        limits: SlotLimits,
    ) -> None:
        await self._run_script(
            "confirm_reservation",
            (self.active_key, self.metrics_key),
            now_ms,
            worker_id,
            scheduled_time_ms,
            uuid.uuid4().hex,
            limits.reservation_retention_ms,
            limits.metrics_ttl_seconds,
        )

    async def record_usage(self, now_ms: int, tokens: int, limits: SlotLimits) -> None:
        await self._run_script(
            "record_token_usage",
            (self.usage_key, self.metrics_key),
            now_ms,
            tokens,
            uuid.uuid4().hex,
            limits.token_window_ms,
            limits.metrics_ttl_seconds,
        )

    async def remove_token_reservation(self, handle: str) -> bool:
        redis_client = await self._ensure_connected()
        try:
            removed = await redis_client.zrem(self.token_reservations_key, handle)
        except (ConnectionError, TimeoutError, OSError) as e:
            self._connected = False
            raise StoreUnavailableError(f"Redis unavailable during release: {e}") from e
        except RedisError as e:
            raise StoreOperationError(f"Token reservation release failed: {e}") from e
        return bool(removed)

    async def snapshot(self, now_ms: int, limits: SlotLimits) -> StoreSnapshot:
        result = await self._run_script(
            "snapshot",
            (
                self.reservations_key,
                self.active_key,
                self.usage_key,
                self.token_reservations_key,
                self.metrics_key,
            ),
            now_ms,
            limits.rpm_window_ms,
            limits.token_window_ms,
        )
        try:
            values = [int(v) for v in result]
            (
                requests,
                active,
                used,
                reserved,
                usage_entries,
                total_reservations,
                confirmed,
                accuracy,
                usage_tokens,
            ) = values
        except (TypeError, ValueError) as e:
            logger.error(f"Unexpected snapshot response: {result!r}")
            raise StoreOperationError(f"Unexpected snapshot response: {result!r}") from e

        return StoreSnapshot(
            requests_in_window=requests,
            active_requests=active,
            used_tokens=used,
            reserved_tokens=reserved,
            usage_entries=usage_entries,
            counters=MetricsCounters(
                total_reservations=total_reservations,
                confirmed_requests=confirmed,
                total_accuracy_ms=accuracy,
                total_usage_tokens=usage_tokens,
            ),
        )

    async def clear(self) -> None:
        redis_client = await self._ensure_connected()
        try:
            await redis_client.delete(*self.keys)
        except (ConnectionError, TimeoutError, OSError) as e:
            self._connected = False
            raise StoreUnavailableError(f"Redis unavailable during clear: {e}") from e
        except RedisError as e:
            raise StoreOperationError(f"Clear failed: {e}") from e
        logger.info(f"Cleared reservation store state for namespace {self.namespace}")

    async def health_check(self) -> HealthCheckResult:
        """Perform health check on the store."""
        try:
            redis_client = await self._ensure_connected()
            started = time.perf_counter()
            await redis_client.ping()
            latency_ms = (time.perf_counter() - started) * 1000
            return HealthCheckResult(
                healthy=True,
                backend_type="redis",
                namespace=self.namespace,
                metadata={
                    "redis_url": self.redis_url,
                    "connected": self._connected,
                    "ping_latency_ms": round(latency_ms, 2),
                    "scripts_loaded": sorted(self._script_shas),
                },
            )
        except Exception as e:
            return HealthCheckResult(
                healthy=False,
                backend_type="redis",
                namespace=self.namespace,
                error=str(e),
            )

    async def close(self) -> None:
        """Close the connection if this store created it."""
        if self._redis is not None and self._owned_redis:
            try:
                await self._redis.aclose()
                if self._pool is not None:
                    await self._pool.aclose()
            except Exception as e:
                logger.error(f"Error during cleanup: {e}")
            finally:
                self._redis = None
                self._pool = None
        self._connected = False
