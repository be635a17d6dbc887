"""Redis-backed KeyValueStore shared between processes.

Writes are published on a channel. Other instances pick them up when their
``drain_remote_async`` runs (on a repeating timer) and hand them to their own
subscribers, so replay happens on the event loop rather than a listener thread.
"""

import json
import uuid
from typing import Any, Optional

import redis
from fastapi.concurrency import run_in_threadpool

from leadflow.logging_config import get_logger
from leadflow.services.kv_store import KeyChange, KeyValueStore

logger = get_logger("redis_kv_store")

DEFAULT_CHANNEL = "leadflow:kv-changes"
MAX_MESSAGES_PER_DRAIN = 500


class RedisKeyValueStore(KeyValueStore):
    def __init__(self, client: redis.Redis, channel: str = DEFAULT_CHANNEL, namespace: str = "leadflow:kv:"):
        super().__init__()
        self.client = client
        self.channel = channel
        self.namespace = namespace
        self.instance_id = uuid.uuid4().hex
        self._pubsub = None

    @classmethod
    def from_url(cls, url: str, socket_timeout_seconds: float = 2.0) -> "RedisKeyValueStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout_seconds,
            socket_connect_timeout=socket_timeout_seconds,
        )
        return cls(client)

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    def _write(self, key: str, value: Any, origin: Optional[str]) -> Any:
        raw = json.dumps(value)
        self.client.set(self._key(key), raw)
        self._publish(key, raw, origin)
        return json.loads(raw)

    def delete(self, key: str, origin: Optional[str] = None) -> None:
        if not self.client.delete(self._key(key)):
            return
        self._publish(key, None, origin)
        self._notify(KeyChange(key=key, value=None, origin=origin))

    def keys(self, prefix: str = "") -> list[str]:
        pattern = self._key(_escape_glob(prefix)) + "*"
        start = len(self.namespace)
        return [key[start:] for key in self.client.scan_iter(match=pattern)]

    def _publish(self, key: str, raw: Optional[str], origin: Optional[str]) -> None:
        message = json.dumps({"key": key, "value": raw, "origin": origin, "instance": self.instance_id})
        try:
            self.client.publish(self.channel, message)
        except redis.RedisError as exc:
            # The value is stored; other instances only miss the live notification
            logger.warning(
                "Failed to publish KV change",
                extra={"context": {"key": key, "error": str(exc)}},
            )

    def listen(self) -> None:
        if self._pubsub is None:
            self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(self.channel)

    def close(self) -> None:
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None

    def drain_remote(self) -> int:
        """Deliver changes written by other instances. Returns how many were delivered.

        Subscribes on first call; changes published before that are not replayed.
        """
        return self._deliver(self._fetch_remote())

    async def drain_remote_async(self) -> int:
        """``drain_remote`` with the socket reads in the threadpool."""
        return self._deliver(await run_in_threadpool(self._fetch_remote))

    def _deliver(self, changes: list[KeyChange]) -> int:
        for change in changes:
            self._notify(change)
        return len(changes)

    def _fetch_remote(self) -> list[KeyChange]:
        self.listen()

        changes = []
        for _ in range(MAX_MESSAGES_PER_DRAIN):
            message = self._pubsub.get_message(timeout=0)
            if message is None:
                break
            if message.get("type") != "message":
                continue
            try:
                payload = json.loads(message["data"])
            except (TypeError, ValueError) as exc:
                logger.error("Malformed KV change message", extra={"context": {"error": str(exc)}})
                continue
            if payload.get("instance") == self.instance_id:
                continue

            raw = payload.get("value")
            value = json.loads(raw) if raw is not None else None
            changes.append(KeyChange(key=payload["key"], value=value, origin=payload.get("origin")))
        return changes


def _escape_glob(prefix: str) -> str:
    for char in ("\\", "*", "?", "[", "]"):
        prefix = prefix.replace(char, f"\\{char}")
    return prefix
