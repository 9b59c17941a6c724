import redis
from typing import Optional
from pydantic import ValidationError
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, CHAT_HISTORY_ENABLED, CHAT_HISTORY_LIMIT, CHAT_HISTORY_TTL
from redis_keys import REDIS_MESSAGES_KEY
from schemas.rooms import ChatMessage
from logging_config import get_logger

logger = get_logger(__name__)


class PersistenceUnavailable(Exception):
    """The chat store could not be reached. Chat keeps working in memory only."""


class RedisBackend:
    """Chat history store: one capped Redis list per room."""

    def __init__(self, client: Optional[redis.Redis] = None, history_limit: int = CHAT_HISTORY_LIMIT, ttl: int = CHAT_HISTORY_TTL):
        self._client = client
        self.history_limit = history_limit
        self.ttl = ttl

    @property
    def redis_client(self) -> redis.Redis:
        # Connect lazily so importing the app never requires a running Redis
        if self._client is None:
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
            self._client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        return self._client

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            raise PersistenceUnavailable(f"Redis ping failed: {e}") from e

    def save_message(self, message: ChatMessage):
        key = REDIS_MESSAGES_KEY.format(slug=message.room_id)
        try:
            pipe = self.redis_client.pipeline()
            pipe.rpush(key, message.model_dump_json(by_alias=True))
            if self.history_limit:
                pipe.ltrim(key, -self.history_limit, -1)
            if self.ttl:
                pipe.expire(key, self.ttl)
            pipe.execute()
        except redis.RedisError as e:
            raise PersistenceUnavailable(f"Could not save message {message.id} for room {message.room_id}: {e}") from e
        logger.debug(f"Saved message {message.id} to {key}")
        return True

    def get_messages(self, room_id: str, limit: Optional[int] = None) -> list[ChatMessage]:
        """Return the stored history of a room, oldest first."""
        key = REDIS_MESSAGES_KEY.format(slug=room_id)
        limit = limit or self.history_limit
        start = -limit if limit else 0
        try:
            raw_messages = self.redis_client.lrange(key, start, -1)
        except redis.RedisError as e:
            raise PersistenceUnavailable(f"Could not load messages for room {room_id}: {e}") from e

        messages = []
        for raw in raw_messages:
            try:
                messages.append(ChatMessage.model_validate_json(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed stored message in {key}: {e}")
        logger.debug(f"Loaded {len(messages)} messages for room {room_id}")
        return messages


redis_backend = RedisBackend()


def get_chat_store() -> Optional[RedisBackend]:
    """The configured chat store, or None when history is disabled."""
    return redis_backend if CHAT_HISTORY_ENABLED else None
