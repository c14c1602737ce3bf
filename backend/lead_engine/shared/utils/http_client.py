"""
HTTP Client Manager with Connection Pooling

One pooled httpx.AsyncClient shared by all WhatsApp provider adapters.
The total request timeout bounds how long a dispatch can wait on a provider,
so a slow provider never stalls the scheduler beyond that limit.

Usage:
    from lead_engine.shared.utils.http_client import http_client_manager

    client = http_client_manager.get_client()
    response = await client.post(url, data=form)
"""
import logging
from typing import Optional, Dict, Any

import httpx

from lead_engine.shared.core.config import settings
from lead_engine.shared.core.constants import TIMEOUT_PROVIDER_CONNECT

logger = logging.getLogger(__name__)


DEFAULT_MAX_CONNECTIONS = 100
DEFAULT_MAX_KEEPALIVE_CONNECTIONS = 20
DEFAULT_KEEPALIVE_EXPIRY = 30.0  # seconds


class HTTPClientManager:
    """
    Singleton HTTP client manager.

    - Lazy initialization (client created on first use)
    - Connection pooling shared by every provider adapter
    - Explicit close() on application shutdown
    """

    _instance: Optional['HTTPClientManager'] = None
    _client: Optional[httpx.AsyncClient] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if hasattr(self, '_initialized') and self._initialized:
            return

        self._initialized = True
        self._client = None
        self._config = {
            "timeout": settings.WHATSAPP_PROVIDER_TIMEOUT_SECONDS,
            "connect_timeout": TIMEOUT_PROVIDER_CONNECT,
            "max_connections": DEFAULT_MAX_CONNECTIONS,
            "max_keepalive_connections": DEFAULT_MAX_KEEPALIVE_CONNECTIONS,
            "keepalive_expiry": DEFAULT_KEEPALIVE_EXPIRY,
        }

    def configure(self, timeout: float, connect_timeout: float = TIMEOUT_PROVIDER_CONNECT) -> None:
        """
        Override timeouts. Must be called BEFORE first use or after close().
        """
        if self._client is not None:
            logger.warning("Cannot reconfigure while client is active. Call close() first.")
            return

        self._config["timeout"] = timeout
        self._config["connect_timeout"] = connect_timeout
        logger.info(f"HTTPClientManager configured: {self._config}")

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            timeout=self._config["timeout"],
            connect=self._config["connect_timeout"]
        )

        limits = httpx.Limits(
            max_connections=self._config["max_connections"],
            max_keepalive_connections=self._config["max_keepalive_connections"],
            keepalive_expiry=self._config["keepalive_expiry"]
        )

        return httpx.AsyncClient(timeout=timeout, limits=limits, follow_redirects=False)

    def get_client(self) -> httpx.AsyncClient:
        """Get the shared HTTP client, creating it on first access."""
        if self._client is None:
            self._client = self._create_client()
            logger.info("HTTP client created with connection pooling")

        return self._client

    async def close(self) -> None:
        """Close the client and release all connections. Call on shutdown."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("HTTP client closed, connections released")

    def is_active(self) -> bool:
        return self._client is not None

    def get_status(self) -> Dict[str, Any]:
        return {
            "active": self._client is not None,
            "config": self._config
        }


# Singleton instance
http_client_manager = HTTPClientManager()
