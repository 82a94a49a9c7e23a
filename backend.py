import redis
from datetime import datetime, timedelta
from typing import Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, ROOM_TTL_SECONDS
from redis_keys import REDIS_REGISTRATION_KEY
from logging_config import get_logger

logger = get_logger(__name__)

# The client connects lazily on first command, so importing this module never blocks on Redis
redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)


class RedisBackend:
    def __init__(self):
        self.redis_client = redis_client
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis at {REDIS_HOST}:{REDIS_PORT} is not reachable: {e}")
            return False

    def register_room(self, room_code: str, ip: str, port: Optional[str], ttl: int = ROOM_TTL_SECONDS) -> str:
        """Store (or refresh) the address a host registered for a room code. Returns expiry as ISO timestamp."""
        logger.info(f"Registering room {room_code} -> {ip}:{port} with TTL {ttl} seconds")
        key = REDIS_REGISTRATION_KEY.format(room_code=room_code)
        record = {
            "ip": ip,
            "registered_at": datetime.now().isoformat(),
        }
        if port:
            record["port"] = port
        pipe = self.redis_client.pipeline()
        # Replace, not merge: a re-registration without a port must not keep a stale one
        pipe.delete(key)
        pipe.hset(key, mapping=record)
        if ttl:
            pipe.expire(key, ttl)
        pipe.execute()
        expires_at = (datetime.now() + timedelta(seconds=ttl)).isoformat()
        logger.debug(f"Room {room_code} registered with key: {key}")
        return expires_at

    def lookup_room(self, room_code: str) -> Optional[dict]:
        logger.debug(f"Looking up room {room_code}")
        key = REDIS_REGISTRATION_KEY.format(room_code=room_code)
        record = self.redis_client.hgetall(key)
        if not record or not record.get("ip"):
            logger.debug(f"Room {room_code} not found in Redis")
            return None
        return record


registry_backend = RedisBackend()
