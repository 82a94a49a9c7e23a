from fastapi import APIRouter, HTTPException, Query, Request
import redis
from schemas.registry import RegisterRequest, RegisterResponse, LookupResponse
from backend import registry_backend
from logging_config import get_logger

logger = get_logger(__name__)

registry_router = APIRouter(tags=["registry"])


@registry_router.post("/register", response_model=RegisterResponse)
async def register_room(registration: RegisterRequest, request: Request):
    # Body: { "roomCode": "ab12cd", "ip": "203.0.113.7", "port": "3001" }
    # Response 200: { "status": "registered", "roomCode": "ab12cd", "expiresAt": "..." }
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Registration request for room {registration.room_code} from {client_host}")

    try:
        expires_at = registry_backend.register_room(registration.room_code, registration.ip, registration.port)
    except redis.RedisError as e:
        logger.error(f"Error registering room {registration.room_code}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to register room")

    logger.info(f"Room {registration.room_code} registered at {registration.ip}:{registration.port}, expires_at={expires_at}")
    return RegisterResponse(status="registered", room_code=registration.room_code, expires_at=expires_at)


@registry_router.get("/lookup", response_model=LookupResponse, response_model_exclude_none=True)
async def lookup_room(room_code: str = Query(..., alias="roomCode", min_length=1)):
    # GET /lookup?roomCode=ab12cd
    # Response 200: { "ip": "203.0.113.7", "port": "3001" }  404 when unknown or expired
    logger.info(f"Lookup request for room {room_code}")

    try:
        record = registry_backend.lookup_room(room_code)
    except redis.RedisError as e:
        logger.error(f"Error looking up room {room_code}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to look up room")

    if not record:
        logger.warning(f"Lookup failed: Room {room_code} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    return LookupResponse(ip=record["ip"], port=record.get("port"))
