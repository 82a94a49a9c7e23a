from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from routers.registry import registry_router
from backend import registry_backend
from rendezvous import Rendezvous, Member
from schemas.registry import StatusResponse
from schemas.signaling import JoinRoom, RelayError, client_message_adapter
from constants import SIGNALING_PATH, HEALTH_PATH
import asyncio
import json
import os
from logging_config import get_logger, setup_logging

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

app = FastAPI(title="roomcast signaling")

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(registry_router)

# Room and member tables for this process. Relay state is in-memory only:
# peers connected to the same relay instance are the only ones that can meet.
rendezvous = Rendezvous()

logger.info("FastAPI application initialized")


@app.get(HEALTH_PATH, response_class=PlainTextResponse)
async def health():
    return "Server is running"


@app.get("/api/status", response_model=StatusResponse)
async def status():
    return StatusResponse(
        status="ok",
        rooms=len(rendezvous.rooms),
        members=len(rendezvous.members),
        registry=registry_backend.ping(),
    )


async def pump_outbox(websocket: WebSocket, member: Member):
    """Single writer for a member: drains its outbox onto the socket in FIFO order."""
    while True:
        message = await member.outbox.get()
        await websocket.send_text(json.dumps(message))


@app.websocket(SIGNALING_PATH)
async def signaling_endpoint(websocket: WebSocket):
    """Signaling channel. One connection is one member; membership ends when the socket closes."""
    await websocket.accept()
    member = rendezvous.connect()
    member_id = member.member_id
    writer = asyncio.create_task(pump_outbox(websocket, member))
    message_count = 0

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            message_count += 1
            logger.debug(f"Received message #{message_count} from member {member_id}")

            data = frame.get("text")
            if data is None:
                logger.warning(f"Binary frame from {member_id} rejected")
                member.outbox.put_nowait(RelayError(message="Signaling messages must be text frames").model_dump(by_alias=True))
                continue

            try:
                message = client_message_adapter.validate_json(data)
            except ValidationError as e:
                logger.warning(f"Malformed signaling message from {member_id}: {e.errors()[:1]}")
                member.outbox.put_nowait(RelayError(message="Malformed signaling message").model_dump(by_alias=True))
                continue

            if isinstance(message, JoinRoom):
                await rendezvous.join(message.room_id, member_id)
                continue

            payload = getattr(message, "candidate" if message.type == "ice-candidate" else message.type)
            await rendezvous.relay(message.type, message.room_id, member_id, payload, target=message.target)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for member {member_id}")
    except Exception as e:
        logger.error(f"Error on signaling connection for member {member_id}: {e}", exc_info=True)
    finally:
        await rendezvous.disconnect(member_id)
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Writer for member {member_id} ended with error: {e}")
