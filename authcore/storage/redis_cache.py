from __future__ import annotations

import contextlib
import hashlib
import json
from typing import Any, Iterator, Optional

from redis import Redis
from redis.exceptions import RedisError

from authcore.logging import get_logger
from authcore.storage.errors import StorageUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for short-lived verification challenges.

    Uses the synchronous client: challenge updates run under a thread lock in
    the OTP service and never await while holding it.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Delete the challenge only while it still holds the verified code hash
    _CONSUME_OTP_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local ok, payload = pcall(cjson.decode, raw)
if not ok or payload['code_hash'] ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
return 1
"""

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _otp_key(purpose: str, email: str) -> str:
        """Keys hash the address so raw emails never land in Redis key space."""

        digest = hashlib.sha256(email.encode()).hexdigest()
        return f"otp:{purpose}:{digest}"

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error("redis_operation_failed", operation=operation, error=str(exc))
            raise StorageUnavailable("cache unavailable", backend="redis") from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError:
            return False

    def get_otp_challenge(self, purpose: str, email: str) -> Optional[dict[str, Any]]:
        with self._guard("otp_get"):
            raw = self.client.get(self._otp_key(purpose, email))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("otp_challenge_corrupt", purpose=purpose)
            return None

    def set_otp_challenge(
        self, purpose: str, email: str, payload: dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._guard("otp_set"):
            self.client.set(
                self._otp_key(purpose, email),
                json.dumps(payload),
                ex=max(1, int(ttl_seconds)),
            )

    def delete_otp_challenge(self, purpose: str, email: str) -> None:
        with self._guard("otp_delete"):
            self.client.delete(self._otp_key(purpose, email))

    def consume_otp_challenge(self, purpose: str, email: str, code_hash: str) -> bool:
        with self._guard("otp_consume"):
            result = self.client.eval(
                self._CONSUME_OTP_SCRIPT, 1, self._otp_key(purpose, email), code_hash
            )
        return bool(int(result or 0))

    def close(self) -> None:
        """Close the Redis connection pool."""
        self.client.close()
