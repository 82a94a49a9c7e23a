import socket
from typing import Optional
from constants import PORT_SCAN_LIMIT
from logging_config import get_logger

logger = get_logger(__name__)


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(start_port: int, host: str = "0.0.0.0", limit: int = PORT_SCAN_LIMIT) -> int:
    """Return the smallest bindable port >= start_port, scanning at most `limit` ports."""
    for port in range(start_port, min(start_port + limit, 65536)):
        if is_port_available(port, host):
            if port != start_port:
                logger.info(f"Port {start_port} is in use, using port {port} instead")
            return port
        logger.debug(f"Port {port} is in use")
    raise OSError(f"No available port in range {start_port}-{start_port + limit - 1}")


def publish_port(port: int, port_file: Optional[str]):
    """Write the chosen port where the dynamic-port discovery strategy can find it."""
    if not port_file:
        return
    with open(port_file, "w", encoding="utf-8") as f:
        f.write(str(port))
    logger.info(f"Published signaling port {port} to {port_file}")
