"""Key/value persistence for the local session fields."""
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

from logging_config import get_logger
from redis_keys import REDIS_SESSION_KEY

logger = get_logger(__name__)


class Storage(ABC):
    @abstractmethod
    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the stored values for the keys that exist."""

    @abstractmethod
    def set(self, values: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def remove(self, keys: Iterable[str]) -> None:
        ...


class MemoryStorage(Storage):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(initial or {})

    def get(self, keys):
        return {k: self.data[k] for k in keys if k in self.data}

    def set(self, values):
        self.data.update(values)

    def remove(self, keys):
        for k in keys:
            self.data.pop(k, None)


class RedisStorage(Storage):
    """Stores the fields in one Redis hash per owner, JSON encoded."""

    def __init__(self, redis_client, owner: str):
        self.redis_client = redis_client
        self.key = REDIS_SESSION_KEY.format(owner=owner)

    def get(self, keys):
        keys = list(keys)
        if not keys:
            return {}
        raw = self.redis_client.hmget(self.key, keys)
        result = {}
        for k, v in zip(keys, raw):
            if v is None:
                continue
            try:
                result[k] = json.loads(v)
            except (json.JSONDecodeError, TypeError):
                result[k] = v
        return result

    def set(self, values):
        if not values:
            return
        self.redis_client.hset(self.key, mapping={k: json.dumps(v) for k, v in values.items()})
        logger.debug(f"Stored session fields {sorted(values)} under {self.key}")

    def remove(self, keys):
        keys = list(keys)
        if keys:
            self.redis_client.hdel(self.key, *keys)
