"""Client pool consumed by the coordinator.

The coordinator only needs ``get_client(service) -> ClientHandle`` and
``release_client(client_id)``. ``InMemoryClientPool`` is the default
implementation: it hands out lightweight handles keyed by region and a
digest of the credential, reusing a connected handle while it has fewer
than three active operations.
"""

from __future__ import annotations

import hashlib
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from speechgate.config.settings import ClientPoolSettings
from speechgate.exceptions import ClientPoolExhaustedError
from speechgate.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from speechgate._types import ServiceConfig

logger = get_logger("coordinator.pool")

# A reusable handle may carry at most this many concurrent operations
_MAX_OPERATIONS_PER_CLIENT = 3

_DIGEST_LENGTH = 12


def credential_digest(credential: str) -> str:
    """Short, non-reversible fingerprint of a credential."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]


@dataclass(slots=True)
class ClientHandle:
    """A pooled client slot."""

    client_id: str
    region: str
    credential_digest: str
    created_at: float
    last_used: float
    active_operations: int = 0
    requests_processed: int = 0
    connected: bool = True


@dataclass(frozen=True, slots=True)
class ClientPoolStats:
    total_clients_created: int
    active_clients: int
    idle_clients: int
    total_requests: int
    average_utilization: float


class ClientPool(Protocol):
    """What the coordinator needs from a client pool."""

    async def get_client(self, service: ServiceConfig) -> ClientHandle: ...

    async def release_client(self, client_id: str) -> None: ...


class InMemoryClientPool:
    """Bounded pool of client handles.

    Safe via single event loop: no awaits while mutating the pool.

    Args:
        settings: Capacity, idle timeout and reuse switch.
        clock: Monotonic time function in seconds.
    """

    def __init__(
        self,
        settings: ClientPoolSettings | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings if settings is not None else ClientPoolSettings()
        self._clock: Callable[[], float] = clock if clock is not None else time.monotonic
        self._clients: dict[str, ClientHandle] = {}
        self._total_created = 0
        self._total_requests = 0

    async def get_client(self, service: ServiceConfig) -> ClientHandle:
        """Reuse or create a handle for ``service``.

        Raises:
            ClientPoolExhaustedError: Pool is full even after idle cleanup.
        """
        digest = credential_digest(service.credential)
        now = self._clock()

        if self._settings.enable_reuse:
            handle = self._find_reusable(service.region, digest)
            if handle is not None:
                self._acquire(handle, now)
                logger.debug("client_reused", client_id=handle.client_id, region=service.region)
                return handle

        if len(self._clients) >= self._settings.max_clients:
            self.cleanup_idle()
            if len(self._clients) >= self._settings.max_clients:
                raise ClientPoolExhaustedError(self._settings.max_clients)

        handle = ClientHandle(
            client_id=f"client-{uuid.uuid4().hex[:12]}",
            region=service.region,
            credential_digest=digest,
            created_at=now,
            last_used=now,
        )
        self._clients[handle.client_id] = handle
        self._total_created += 1
        self._acquire(handle, now)
        logger.debug("client_created", client_id=handle.client_id, region=service.region)
        return handle

    async def release_client(self, client_id: str) -> None:
        handle = self._clients.get(client_id)
        if handle is None:
            logger.warning("client_release_unknown", client_id=client_id)
            return
        handle.active_operations = max(0, handle.active_operations - 1)
        handle.last_used = self._clock()
        if handle.active_operations == 0 and not self._settings.enable_reuse:
            await self.disconnect_client(client_id)

    async def disconnect_client(self, client_id: str) -> None:
        handle = self._clients.pop(client_id, None)
        if handle is not None:
            handle.connected = False
            logger.debug("client_disconnected", client_id=client_id)

    def cleanup_idle(self) -> int:
        """Drop handles idle for longer than ``idle_timeout_s``. Returns how many."""
        now = self._clock()
        idle = [
            client_id
            for client_id, handle in self._clients.items()
            if handle.active_operations == 0
            and now - handle.last_used > self._settings.idle_timeout_s
        ]
        for client_id in idle:
            handle = self._clients.pop(client_id)
            handle.connected = False
        if idle:
            logger.info("idle_clients_cleaned", count=len(idle))
        return len(idle)

    def get_client_handle(self, client_id: str) -> ClientHandle | None:
        return self._clients.get(client_id)

    def get_stats(self) -> ClientPoolStats:
        active = sum(1 for h in self._clients.values() if h.active_operations > 0)
        total_ops = sum(h.active_operations for h in self._clients.values())
        capacity = len(self._clients) * _MAX_OPERATIONS_PER_CLIENT
        return ClientPoolStats(
            total_clients_created=self._total_created,
            active_clients=active,
            idle_clients=len(self._clients) - active,
            total_requests=self._total_requests,
            average_utilization=total_ops / capacity * 100 if capacity else 0.0,
        )

    async def shutdown(self) -> None:
        for client_id in list(self._clients):
            await self.disconnect_client(client_id)
        logger.info("client_pool_shutdown", total_created=self._total_created)

    def _find_reusable(self, region: str, digest: str) -> ClientHandle | None:
        for handle in self._clients.values():
            if (
                handle.connected
                and handle.region == region
                and handle.credential_digest == digest
                and handle.active_operations < _MAX_OPERATIONS_PER_CLIENT
            ):
                return handle
        return None

    def _acquire(self, handle: ClientHandle, now: float) -> None:
        handle.active_operations += 1
        handle.requests_processed += 1
        handle.last_used = now
        self._total_requests += 1
