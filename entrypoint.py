import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from constants import SIGNALING_HOST, DEFAULT_SIGNALING_PORT, PORT_FILE
from ports import find_available_port, publish_port
from logging_config import get_logger

logger = get_logger(__name__)


def run_server(host: str = SIGNALING_HOST, port: int = DEFAULT_SIGNALING_PORT, port_file: str = PORT_FILE):
    port = find_available_port(port, host)
    publish_port(port, port_file)
    logger.info(f"Signaling server running on http://{host}:{port}")
    uvicorn.run("app:app", host=host, port=port)


if __name__ == "__main__":
    run_server()
