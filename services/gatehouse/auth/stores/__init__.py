"""
State, nonce and session store layer.

Provides init_stores() for app lifespan and get_stores() for the provider
registry. One backend serves all three stores.
"""

from __future__ import annotations

from dataclasses import dataclass

from gatehouse.auth.stores.protocol import NonceStore, SessionStore, StateStore
from gatehouse.config import StoreBackend, settings
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Stores:
    """The three stores every adapter draws from."""

    state: StateStore
    nonce: NonceStore
    sessions: SessionStore


# Module-level store bundle
_stores: Stores | None = None


def build_stores(backend: StoreBackend) -> Stores:
    """Build the store bundle for a backend."""
    match backend:
        case StoreBackend.MEMORY:
            from gatehouse.auth.stores.memory import (
                MemoryNonceStore,
                MemorySessionStore,
                MemoryStateStore,
            )

            return Stores(
                state=MemoryStateStore(),
                nonce=MemoryNonceStore(),
                sessions=MemorySessionStore(),
            )

        case StoreBackend.REDIS:
            from gatehouse.auth.stores.redis_store import (
                RedisNonceStore,
                RedisSessionStore,
                RedisStateStore,
            )
            from gatehouse.redis.client import get_redis_client

            redis = get_redis_client()
            return Stores(
                state=RedisStateStore(redis),
                nonce=RedisNonceStore(redis),
                sessions=RedisSessionStore(redis),
            )

    raise ValueError(f"Unsupported store backend: {backend}")


def init_stores() -> None:
    """Initialize the stores from configuration.

    Called during app startup (lifespan), after Redis when that backend is used.
    """
    global _stores  # noqa: PLW0603
    backend = settings.auth.store_backend
    _stores = build_stores(backend)
    logger.info("Stores initialized", backend=str(backend))


def get_stores() -> Stores:
    """Return the initialized stores. Raises RuntimeError if not initialized."""
    if _stores is None:
        raise RuntimeError("Stores not initialized, call init_stores() first")
    return _stores
