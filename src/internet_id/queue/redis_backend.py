"""Redis implementation of QueueBackend.

Key layout (prefix defaults to ``internet-id:verification``):
    {prefix}:waiting:high   list, verify jobs (LPUSH in, RPOP out)
    {prefix}:waiting:low    list, proof jobs
    {prefix}:delayed        sorted set, member = message JSON, score = ready-at epoch
    {prefix}:active         hash, message_id → {"raw", "worker_id", "claimed_at"} JSON

Claiming runs as one Lua script: due delayed messages are promoted, the next
message is popped and recorded in the active hash in the same step, so a
message is always in exactly one of the three places until ack().
"""

import logging
import time
from contextlib import contextmanager
from typing import Dict, Optional, Set

import redis

from ..errors import BackendUnavailableError
from .backends import QueueBackend
from .models import QueueMessage

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "internet-id:verification"

# KEYS: delayed, high, low, active. ARGV: now, worker_id
CLAIM_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, raw in ipairs(due) do
    redis.call('ZREM', KEYS[1], raw)
    if tonumber(cjson.decode(raw)['priority']) > 0 then
        redis.call('LPUSH', KEYS[2], raw)
    else
        redis.call('LPUSH', KEYS[3], raw)
    end
end
for i = 2, 3 do
    local raw = redis.call('RPOP', KEYS[i])
    if raw then
        local claim = cjson.encode({raw = raw, worker_id = ARGV[2], claimed_at = tonumber(ARGV[1])})
        redis.call('HSET', KEYS[4], cjson.decode(raw)['message_id'], claim)
        return raw
    end
end
return false
"""

# KEYS: active, high, low. ARGV: cutoff
RELEASE_SCRIPT = """
local released = 0
local entries = redis.call('HGETALL', KEYS[1])
for i = 1, #entries, 2 do
    local claim = cjson.decode(entries[i + 1])
    if tonumber(claim['claimed_at']) < tonumber(ARGV[1]) then
        local message = cjson.decode(claim['raw'])
        message['delivery_count'] = (tonumber(message['delivery_count']) or 0) + 1
        local raw = cjson.encode(message)
        redis.call('HDEL', KEYS[1], entries[i])
        if tonumber(message['priority']) > 0 then
            redis.call('RPUSH', KEYS[2], raw)
        else
            redis.call('RPUSH', KEYS[3], raw)
        end
        released = released + 1
    end
end
return released
"""


@contextmanager
def _translate_errors():
    """Surface connection-level failures as BackendUnavailableError."""
    try:
        yield
    except (redis.ConnectionError, redis.TimeoutError) as e:
        raise BackendUnavailableError(f"Redis unavailable: {e}") from e


class RedisQueue(QueueBackend):
    """Redis-backed queue with priority lists and delayed retries.

    Thread-safe: redis-py clients share a connection pool.
    """

    def __init__(
        self, client: "redis.Redis", prefix: str = DEFAULT_PREFIX, poll_interval_s: float = 0.2
    ):
        self.client = client
        self.prefix = prefix
        self.poll_interval_s = poll_interval_s
        self.high_key = f"{prefix}:waiting:high"
        self.low_key = f"{prefix}:waiting:low"
        self.delayed_key = f"{prefix}:delayed"
        self.active_key = f"{prefix}:active"
        self._claim = client.register_script(CLAIM_SCRIPT)
        self._release = client.register_script(RELEASE_SCRIPT)

    @classmethod
    def from_url(
        cls,
        url: str,
        prefix: str = DEFAULT_PREFIX,
        socket_connect_timeout: float = 2.0,
    ) -> "RedisQueue":
        """Create a client from a redis:// URL.

        No connection is opened here; ping() reports reachability.
        """
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_connect_timeout,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        return cls(client, prefix=prefix)

    def _waiting_key(self, message: QueueMessage) -> str:
        return self.high_key if message.priority > 0 else self.low_key

    @staticmethod
    def _encode(message: QueueMessage) -> str:
        return message.model_dump_json()

    @staticmethod
    def _decode(raw: str) -> QueueMessage:
        return QueueMessage.model_validate_json(raw)

    def ping(self) -> bool:
        with _translate_errors():
            return bool(self.client.ping())

    def push(self, message: QueueMessage, delay_s: float = 0.0) -> str:
        payload = self._encode(message)
        with _translate_errors():
            if delay_s > 0:
                self.client.zadd(self.delayed_key, {payload: time.time() + delay_s})
            else:
                self.client.lpush(self._waiting_key(message), payload)
        return message.message_id

    def pop(self, worker_id: str, timeout_s: float) -> Optional[QueueMessage]:
        """Run the claim script until it returns a message or timeout_s elapses."""
        deadline = time.monotonic() + max(0.0, timeout_s)
        while True:
            with _translate_errors():
                payload = self._claim(
                    keys=[self.delayed_key, self.high_key, self.low_key, self.active_key],
                    args=[time.time(), worker_id],
                )
            if payload:
                message = self._decode(payload)
                message.delivery_count += 1
                return message
            if time.monotonic() >= deadline:
                return None
            time.sleep(self.poll_interval_s)

    def ack(self, message: QueueMessage) -> None:
        with _translate_errors():
            self.client.hdel(self.active_key, message.message_id)

    def release_stale_claims(self, older_than_s: float) -> int:
        with _translate_errors():
            released = int(
                self._release(
                    keys=[self.active_key, self.high_key, self.low_key],
                    args=[time.time() - max(0.0, older_than_s)],
                )
            )
        if released:
            logger.warning("Released %d unacknowledged verification messages", released)
        return released

    def pending_ids(self) -> Set[str]:
        with _translate_errors():
            pipe = self.client.pipeline(transaction=True)
            pipe.lrange(self.high_key, 0, -1)
            pipe.lrange(self.low_key, 0, -1)
            pipe.zrange(self.delayed_key, 0, -1)
            pipe.hkeys(self.active_key)
            high, low, delayed, active = pipe.execute()
        ids = {self._decode(raw).message_id for raw in [*high, *low, *delayed]}
        ids.update(active)
        return ids

    def depth(self) -> Dict[str, int]:
        with _translate_errors():
            pipe = self.client.pipeline(transaction=False)
            pipe.llen(self.high_key)
            pipe.llen(self.low_key)
            pipe.zcard(self.delayed_key)
            pipe.hlen(self.active_key)
            high, low, delayed, active = pipe.execute()
        return {"waiting": int(high) + int(low), "delayed": int(delayed), "active": int(active)}

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError as e:
            logger.warning("Error closing Redis connection: %s", e)
