import asyncio
import ipaddress
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlparse

import aiohttp

from constants import (
    DEFAULT_SIGNALING_PORT, PUBLIC_IP_URL, REGISTRY_SCHEME, REGISTRY_TIMEOUT_SECONDS, REGISTRY_URL, TUNNEL_HOST_MARKERS,
)
from errors import LookupFailed, RegistrationFailed
from session.discovery import DiscoveryMethod, ResolvedEndpoint
from logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_SCHEME_PORTS = {"http": "80", "https": "443", "ws": "80", "wss": "443"}


@dataclass(frozen=True)
class LookupResult:
    ip: str
    port: Optional[str] = None


def is_tunnel_endpoint(endpoint: ResolvedEndpoint) -> bool:
    if endpoint.method == DiscoveryMethod.TUNNEL:
        return True
    return any(marker in endpoint.url for marker in TUNNEL_HOST_MARKERS)


def endpoint_from_lookup(result: LookupResult, scheme: str = REGISTRY_SCHEME) -> ResolvedEndpoint:
    """Build a server URL from a registry record.

    A bare address gets `scheme`; the port is appended unless it is the
    scheme's implicit default or the address already carries one.
    """
    address = result.ip.strip().rstrip("/")
    if "://" not in address:
        address = f"{scheme}://{address}"
    parsed = urlparse(address)
    port = str(result.port).strip() if result.port else ""
    if port and parsed.port is None and port != DEFAULT_SCHEME_PORTS.get(parsed.scheme):
        address = f"{address}:{port}"
    return ResolvedEndpoint(address, DiscoveryMethod.REGISTRY)


class RegistryClient:
    """Client for the external room registry (room code -> host address)."""

    def __init__(self, base_url: str = REGISTRY_URL, timeout: float = REGISTRY_TIMEOUT_SECONDS,
                 public_ip_url: str = PUBLIC_IP_URL):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.public_ip_url = public_ip_url

    async def register(self, room_code: str, ip: str, port: str):
        logger.info(f"Registering room {room_code} with IP: {ip}, Port: {port}")
        body = {"roomCode": room_code, "ip": ip, "port": port}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(f"{self.base_url}/register", json=body) as response:
                    if response.status >= 300:
                        raise RegistrationFailed(f"Registration failed with status: {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RegistrationFailed(f"Registration request failed: {e}") from e
        logger.info(f"Room {room_code} registered successfully")

    async def lookup(self, room_code: str) -> LookupResult:
        logger.info(f"Looking up room {room_code}")
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(f"{self.base_url}/lookup", params={"roomCode": room_code}) as response:
                    if response.status == 404:
                        raise LookupFailed(f"Room {room_code} not found")
                    if response.status >= 300:
                        raise LookupFailed(f"Lookup failed with status: {response.status}")
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise LookupFailed(f"Lookup request failed: {e}") from e

        if not isinstance(data, dict) or not data.get("ip"):
            raise LookupFailed(f"Room {room_code} found but no server details")
        port = data.get("port")
        return LookupResult(ip=str(data["ip"]), port=str(port) if port not in (None, "") else None)

    async def public_ip(self) -> Optional[str]:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(self.public_ip_url) as response:
                    if response.status >= 300:
                        logger.warning(f"Public IP lookup returned status {response.status}")
                        return None
                    text = (await response.text()).strip()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to get public IP: {e}")
            return None
        try:
            ipaddress.ip_address(text)
        except ValueError:
            logger.warning(f"Public IP lookup returned an invalid value: {text[:40]!r}")
            return None
        return text

    async def registration_address(self, endpoint: ResolvedEndpoint) -> Tuple[str, str]:
        """The (address, port) viewers on other networks should use to reach this host."""
        parsed = urlparse(endpoint.url)
        if is_tunnel_endpoint(endpoint):
            logger.info("Using tunnel URL for registration")
            port = str(parsed.port) if parsed.port else DEFAULT_SCHEME_PORTS.get(parsed.scheme, "443")
            return parsed.hostname, port

        logger.info("Using local server, attempting to get public IP")
        ip = await self.public_ip() or "localhost"
        port = str(parsed.port) if parsed.port else str(DEFAULT_SIGNALING_PORT)
        return ip, port
