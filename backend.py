import redis
import json
from typing import Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, PEER_TTL_SECONDS
from redis_keys import REDIS_META_KEY, REDIS_PEER_KEY, REDIS_PEER_CHANNEL
from logging_config import get_logger

logger = get_logger(__name__)

# Connections are opened lazily on first command; /health pings explicitly
redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)


class RedisBackend:
    def __init__(self, client: Optional[redis.Redis] = None, pubsub_client: Optional[redis.Redis] = None):
        self.redis_client = client or redis_client
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed for {REDIS_HOST}:{REDIS_PORT}: {e}")
            return False

    def create_room(self, room_id: str, room_data: dict, ttl: int = 86400):
        logger.info(f"Creating room {room_id} with TTL {ttl} seconds")
        key = REDIS_META_KEY.format(slug=room_id)
        # Convert dict values to strings for Redis hash, skip None values
        room_data_str = {}
        for k, v in room_data.items():
            if v is None:
                continue
            if isinstance(v, (dict, list)):
                room_data_str[k] = json.dumps(v)
            else:
                room_data_str[k] = str(v)
        self.redis_client.hset(key, mapping=room_data_str)
        if ttl:
            self.redis_client.expire(key, ttl)
        logger.debug(f"Room {room_id} created successfully with key: {key}")
        return room_id

    def room_exists(self, room_id: str) -> bool:
        return bool(self.redis_client.exists(REDIS_META_KEY.format(slug=room_id)))

    def get_room(self, room_id: str):
        logger.debug(f"Fetching room {room_id}")
        key = REDIS_META_KEY.format(slug=room_id)
        room_data = self.redis_client.hgetall(key)
        if not room_data:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        result = {}
        for k, v in room_data.items():
            try:
                result[k] = json.loads(v)
            except (json.JSONDecodeError, TypeError):
                result[k] = v
        # numeric-looking ids come back as ints
        result["room_id"] = room_id
        return result

    def delete_room(self, room_id: str):
        logger.info(f"Deleting room {room_id}")
        deleted = self.redis_client.delete(REDIS_META_KEY.format(slug=room_id))
        logger.debug(f"Room {room_id} deleted: meta_key={deleted}")
        return bool(deleted)

    def register_peer(self, peer_id: str, peer_data: dict, ttl: int = PEER_TTL_SECONDS) -> bool:
        """Claim a peer id. Returns False when another connection already holds it."""
        key = REDIS_PEER_KEY.format(peer_id=peer_id)
        claimed = self.redis_client.set(key, json.dumps(peer_data), nx=True, ex=ttl)
        if claimed:
            logger.debug(f"Registered peer {peer_id} with TTL {ttl}")
        else:
            logger.debug(f"Peer id {peer_id} is already registered")
        return bool(claimed)

    def touch_peer(self, peer_id: str, ttl: int = PEER_TTL_SECONDS):
        self.redis_client.expire(REDIS_PEER_KEY.format(peer_id=peer_id), ttl)

    def unregister_peer(self, peer_id: str):
        deleted = self.redis_client.delete(REDIS_PEER_KEY.format(peer_id=peer_id))
        logger.debug(f"Unregistered peer {peer_id}: {deleted}")
        return True

    def is_peer_online(self, peer_id: str) -> bool:
        return bool(self.redis_client.exists(REDIS_PEER_KEY.format(peer_id=peer_id)))

    def get_peer_channel_name(self, peer_id: str) -> str:
        """Get the Redis pub/sub channel name frames for a peer are routed on."""
        return REDIS_PEER_CHANNEL.format(peer_id=peer_id)

    def publish_to_peer(self, peer_id: str, frame: dict) -> int:
        channel = self.get_peer_channel_name(peer_id)
        subscribers = self.redis_client.publish(channel, json.dumps(frame))
        logger.debug(f"Published {frame.get('kind')} frame to {channel}, {subscribers} subscribers")
        return subscribers

    def subscribe_to_peer(self, peer_id: str):
        """Create a pubsub subscriber for a peer channel."""
        channel = self.get_peer_channel_name(peer_id)
        logger.debug(f"Subscribing to Redis channel {channel}")
        pubsub = self.pubsub_client.pubsub()
        pubsub.subscribe(channel)
        return pubsub


redis_backend = RedisBackend()
