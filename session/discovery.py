"""Resolve which signaling server to use and connect to it, with bounded retry.

Strategies are tried in priority order on every attempt; the first one that
yields a syntactically valid URL is used for that attempt. Re-resolving each
time lets a strategy that had nothing to offer earlier (a tunnel still coming
up) win on a later attempt.
"""

import asyncio
import enum
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import aiohttp

from constants import (
    CONNECT_TIMEOUT_SECONDS, DEFAULT_SERVER_URL, HEALTH_PATH, HEALTH_TIMEOUT_SECONDS,
    MAX_CONNECT_ATTEMPTS, PORT_FILE, RETRY_BACKOFF_SECONDS, TUNNEL_URL, TUNNEL_URL_FILE,
)
from errors import DiscoveryExhausted, RelayConnectError
from session.signaling_client import SignalingConnection
from logging_config import get_logger

logger = get_logger(__name__)


class DiscoveryMethod(str, enum.Enum):
    TUNNEL = "tunnel"
    DYNAMIC_PORT = "dynamic-port"
    STATIC_DEFAULT = "static-default"
    REGISTRY = "registry"


@dataclass(frozen=True)
class ResolvedEndpoint:
    url: str
    method: DiscoveryMethod


@dataclass
class DiscoveryStrategy:
    method: DiscoveryMethod
    resolve: Callable[[], Awaitable[Optional[str]]]


Connector = Callable[[ResolvedEndpoint], Awaitable[SignalingConnection]]


def is_valid_endpoint(url: Optional[str]) -> bool:
    if not url or not isinstance(url, str) or not url.strip():
        return False
    parsed = urlparse(url.strip())
    try:
        parsed.port
    except ValueError:
        return False
    return parsed.scheme in ("http", "https", "ws", "wss") and bool(parsed.hostname)


def _read_file(path: Optional[str]) -> Optional[str]:
    if not path or not os.path.exists(path):
        return None
    with open(path, encoding="utf-8") as f:
        return f.read().strip() or None


def tunnel_strategy(url: Optional[str] = TUNNEL_URL, url_file: Optional[str] = TUNNEL_URL_FILE) -> DiscoveryStrategy:
    async def resolve():
        return url or _read_file(url_file)
    return DiscoveryStrategy(DiscoveryMethod.TUNNEL, resolve)


def dynamic_port_strategy(port_file: Optional[str] = PORT_FILE, host: str = "localhost") -> DiscoveryStrategy:
    async def resolve():
        port = _read_file(port_file)
        if not port or not port.isdigit() or int(port) <= 0:
            return None
        return f"http://{host}:{port}"
    return DiscoveryStrategy(DiscoveryMethod.DYNAMIC_PORT, resolve)


def static_default_strategy(url: str = DEFAULT_SERVER_URL) -> DiscoveryStrategy:
    async def resolve():
        return url
    return DiscoveryStrategy(DiscoveryMethod.STATIC_DEFAULT, resolve)


def default_strategies() -> List[DiscoveryStrategy]:
    return [tunnel_strategy(), dynamic_port_strategy(), static_default_strategy()]


async def check_health(url: str, timeout: float = HEALTH_TIMEOUT_SECONDS):
    """Raise RelayConnectError unless the server's liveness endpoint answers 2xx."""
    health_url = url.rstrip("/") + HEALTH_PATH
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(health_url) as response:
                if response.status >= 300:
                    raise RelayConnectError(url, RuntimeError(f"health check returned {response.status}"))
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise RelayConnectError(url, e) from e


async def connect_with_health_check(endpoint: ResolvedEndpoint, timeout: float = CONNECT_TIMEOUT_SECONDS) -> SignalingConnection:
    await check_health(endpoint.url)
    return await SignalingConnection.open(endpoint.url, timeout=timeout)


class ConnectionDiscovery:
    def __init__(self, strategies: Optional[Sequence[DiscoveryStrategy]] = None, connector: Connector = connect_with_health_check,
                 max_attempts: int = MAX_CONNECT_ATTEMPTS, backoff: float = RETRY_BACKOFF_SECONDS,
                 connect_timeout: float = CONNECT_TIMEOUT_SECONDS):
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.connector = connector
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.connect_timeout = connect_timeout
        self.attempts = 0

    async def resolve(self) -> Optional[ResolvedEndpoint]:
        """First strategy, in priority order, that yields a usable URL. Says nothing about reachability."""
        for strategy in self.strategies:
            try:
                url = await strategy.resolve()
            except Exception as e:
                logger.warning(f"Discovery strategy {strategy.method.value} failed: {e}")
                continue
            if is_valid_endpoint(url):
                logger.debug(f"Strategy {strategy.method.value} resolved {url}")
                return ResolvedEndpoint(url.strip().rstrip("/"), strategy.method)
            if url:
                logger.warning(f"Strategy {strategy.method.value} produced an invalid address: {url!r}")
        return None

    async def connect_once(self, endpoint: ResolvedEndpoint) -> SignalingConnection:
        """One bounded connection attempt to a known endpoint. Raises RelayConnectError."""
        try:
            connection = await asyncio.wait_for(self.connector(endpoint), self.connect_timeout)
        except asyncio.TimeoutError as e:
            raise RelayConnectError(endpoint.url, TimeoutError(f"timed out after {self.connect_timeout}s")) from e
        logger.info(f"Connected to signaling server at {endpoint.url}")
        return connection

    async def connect(self) -> Tuple[ResolvedEndpoint, SignalingConnection]:
        """Resolve and connect, retrying up to max_attempts. Raises DiscoveryExhausted."""
        self.attempts = 0
        last_error: Optional[BaseException] = None

        while self.attempts < self.max_attempts:
            self.attempts += 1
            endpoint = await self.resolve()
            if endpoint is None:
                last_error = RelayConnectError("<unresolved>", RuntimeError("no discovery strategy produced an address"))
                logger.error(f"No signaling endpoint available (attempt {self.attempts}/{self.max_attempts})")
            else:
                logger.info(f"Attempting signaling connection to {endpoint.url} via {endpoint.method.value} "
                            f"(attempt {self.attempts}/{self.max_attempts})")
                try:
                    return endpoint, await self.connect_once(endpoint)
                except RelayConnectError as e:
                    last_error = e
                    logger.error(f"Signaling connection error (attempt {self.attempts}): {e}")

            if self.attempts < self.max_attempts:
                logger.info(f"Retrying in {self.backoff} seconds...")
                await asyncio.sleep(self.backoff)

        raise DiscoveryExhausted(self.attempts, last_error)
