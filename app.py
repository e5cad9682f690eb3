from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from backend import redis_backend
import json
import asyncio
from typing import Dict, Optional, Set
from datetime import datetime
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

app = FastAPI()

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("Peer broker initialized")

# Frames a peer may address to another peer
ROUTABLE_KINDS = {"connect", "accept", "data", "close"}

# Websockets held by this instance, keyed by peer id. Redis pub/sub carries frames
# between instances, so a peer may talk to one connected elsewhere.
peer_connections: Dict[str, WebSocket] = {}

# Background pub/sub listeners, one per local peer
peer_listener_tasks: Dict[str, asyncio.Task] = {}


def route_frame(src: str, frame: dict, contacts: Set[str]) -> Optional[dict]:
    """Forward one frame from ``src`` to its destination peer.

    Returns an error frame to hand back to the sender, or None once the frame
    has been published.
    """
    if not isinstance(frame, dict) or frame.get("kind") not in ROUTABLE_KINDS:
        return {"kind": "error", "reason": "invalid-frame"}
    dst = frame.get("dst")
    channel_id = frame.get("channel_id")
    if not isinstance(dst, str) or not dst:
        return {"kind": "error", "reason": "invalid-frame", "channel_id": channel_id}
    if not redis_backend.is_peer_online(dst):
        logger.debug(f"Peer {src} addressed unavailable peer {dst}")
        return {"kind": "error", "reason": "peer-unavailable", "channel_id": channel_id}
    forwarded = dict(frame)
    forwarded["src"] = src
    redis_backend.publish_to_peer(dst, forwarded)
    contacts.add(dst)
    return None


async def listen_to_peer_channel(peer_id: str, websocket: WebSocket, contacts: Set[str]):
    """Background task forwarding frames published for ``peer_id`` to its websocket."""
    logger.info(f"Starting Redis pub/sub listener for peer: {peer_id}")
    pubsub = None
    try:
        pubsub = redis_backend.subscribe_to_peer(peer_id)
        loop = asyncio.get_event_loop()

        def get_message():
            """Blocking call to get next frame from Redis pub/sub with timeout."""
            try:
                return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)
            except Exception as e:
                logger.error(f"Error in pubsub.get_message() for peer {peer_id}: {e}", exc_info=True)
                return None

        while peer_id in peer_connections:
            message = await loop.run_in_executor(None, get_message)
            if message is None or message.get('type') != 'message':
                continue
            try:
                frame = json.loads(message['data'])
            except json.JSONDecodeError as e:
                logger.error(f"Error parsing frame from Redis for peer {peer_id}: {e}")
                continue
            src = frame.get("src")
            if src:
                contacts.add(src)
            logger.debug(f"Delivering {frame.get('kind')} frame from {src} to {peer_id}")
            await websocket.send_text(json.dumps(frame))

    except asyncio.CancelledError:
        logger.info(f"Redis listener task cancelled for peer: {peer_id}")
    except Exception as e:
        logger.error(f"Error in Redis listener for peer {peer_id}: {e}", exc_info=True)
    finally:
        if pubsub:
            try:
                pubsub.close()
                logger.debug(f"Closed pub/sub connection for peer: {peer_id}")
            except Exception as e:
                logger.error(f"Error closing pub/sub for peer {peer_id}: {e}")


@app.websocket("/peers/{peer_id}/ws")
async def peer_endpoint(peer_id: str, websocket: WebSocket):
    """Attach a peer id to this websocket and route its frames.

    Frames sent by the peer: ``{kind: connect|accept|data|close, dst, channel_id, payload}``.
    Frames received: the same with ``src`` stamped, plus ``open``, ``error`` and ``gone``.
    """
    logger.info(f"WebSocket connection attempt for peer: {peer_id}")
    peer_data = {"connected_at": datetime.now().isoformat()}
    if not redis_backend.register_peer(peer_id, peer_data):
        logger.info(f"WebSocket connection rejected: peer id {peer_id} is taken")
        await websocket.close(code=1008, reason="ID is taken")
        return

    contacts: Set[str] = set()
    try:
        await websocket.accept()
        peer_connections[peer_id] = websocket
        peer_listener_tasks[peer_id] = asyncio.create_task(listen_to_peer_channel(peer_id, websocket, contacts))
        # Give the listener a moment to subscribe before announcing the peer
        await asyncio.sleep(0.1)
        await websocket.send_text(json.dumps({"kind": "open", "peer_id": peer_id}))
        logger.info(f"Peer {peer_id} connected")

        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for peer {peer_id}")
                break
            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Dropping non-JSON frame from peer {peer_id}")
                continue
            redis_backend.touch_peer(peer_id)
            error = route_frame(peer_id, frame, contacts)
            if error is not None:
                await websocket.send_text(json.dumps(error))

    except Exception as e:
        logger.error(f"WebSocket error for peer {peer_id}: {e}", exc_info=True)
    finally:
        peer_connections.pop(peer_id, None)
        redis_backend.unregister_peer(peer_id)
        task = peer_listener_tasks.pop(peer_id, None)
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for contact in contacts:
            try:
                redis_backend.publish_to_peer(contact, {"kind": "gone", "src": peer_id})
            except Exception as e:
                logger.debug(f"Could not notify {contact} that {peer_id} left: {e}")
        logger.info(f"Peer {peer_id} disconnected, notified {len(contacts)} contacts")
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")


@app.get("/health")
async def health():
    redis_ok = redis_backend.ping()
    return {"status": "ok" if redis_ok else "degraded", "redis": redis_ok, "local_peers": len(peer_connections)}
