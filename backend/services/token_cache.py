"""Cache key derivation and best-effort token count cache.

Token counts are a pure function of message content, so the cache is a
memoization layer only. Any failure here is logged and absorbed: the relay
must behave identically with a working cache, a broken one, or none.
"""
import hashlib
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional, Sequence

import redis
import tiktoken

from models.conversation import Turn

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "token_count:"

# Structural tokens added per message for role and delimiters
MESSAGE_OVERHEAD_TOKENS = 4

# Seconds, applied to both connects and commands
CONNECT_TIMEOUT = 2

# Seconds a request waits for a cache read
READ_TIMEOUT = 0.1

MAX_PENDING_CALLS = 64


def derive_key(turns: Sequence[Turn]) -> str:
    """
    Derive a stable cache key for an ordered sequence of turns.

    Turns are serialized as a JSON array of [role, content] pairs, which
    escapes both fields and so never maps two distinct sequences to the
    same bytes. The SHA-256 hex digest is prefixed with a namespace tag.

    Args:
        turns: Turns in the order they are sent to the backend

    Returns:
        Cache key such as ``token_count:3f2a...``
    """
    canonical = json.dumps(
        [[turn.role, turn.content] for turn in turns],
        ensure_ascii=False,
        separators=(",", ":")
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{CACHE_KEY_PREFIX}{digest}"


class TokenCounter:
    """Counts prompt tokens with a tiktoken encoding."""

    def __init__(self, encoding_name: str = "cl100k_base", encoding=None):
        """
        Args:
            encoding_name: tiktoken encoding loaded on first use
            encoding: Pre-built encoder exposing ``encode(str)``
        """
        self.encoding_name = encoding_name
        self._encoding = encoding

    @property
    def encoding(self):
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
            logger.info(f"Initialized tiktoken encoder ({self.encoding_name})")
        return self._encoding

    def count(self, turns: Sequence[Turn]) -> int:
        """Return content tokens plus per-message overhead for ``turns``."""
        total = 0
        for turn in turns:
            total += len(self.encoding.encode(turn.content))
            total += MESSAGE_OVERHEAD_TOKENS
        return total


class NullCacheStore:
    """Cache store used when caching is disabled or Redis is unreachable."""

    def get(self, key: str) -> Optional[int]:
        return None

    def set(self, key: str, value: int, ttl: int) -> None:
        pass

    def close(self) -> None:
        pass


class RedisCacheStore:
    """Redis-backed store for token counts.

    ``get`` returns None on a clean miss and raises ``redis.RedisError``
    (or ``ValueError`` for a corrupt value) on failure.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str, password: Optional[str] = None) -> "RedisCacheStore":
        options = {
            "decode_responses": True,
            "socket_connect_timeout": CONNECT_TIMEOUT,
            "socket_timeout": CONNECT_TIMEOUT,
        }
        if password:
            options["password"] = password
        return cls(redis.Redis.from_url(url, **options))

    def ping(self) -> bool:
        return bool(self.client.ping())

    def get(self, key: str) -> Optional[int]:
        raw = self.client.get(key)
        if raw is None:
            return None
        return int(json.loads(raw))

    def set(self, key: str, value: int, ttl: int) -> None:
        self.client.set(key, json.dumps(value), ex=ttl)

    def close(self) -> None:
        self.client.close()


def create_cache_store(url: str, password: Optional[str] = None, enabled: bool = True):
    """
    Connect to Redis, falling back to a no-op store.

    Args:
        url: Redis URL, e.g. ``redis://localhost:6379/0``
        password: Optional Redis password
        enabled: When False, skip Redis entirely

    Returns:
        RedisCacheStore when Redis answers a ping, otherwise NullCacheStore
    """
    if not enabled:
        logger.info("Token cache disabled")
        return NullCacheStore()

    try:
        store = RedisCacheStore.from_url(url, password)
        store.ping()
    except redis.RedisError as e:
        logger.warning(f"Failed to connect to Redis, continuing without cache: {e}")
        return NullCacheStore()

    logger.info("Connected to Redis")
    return store


class TokenCache:
    """
    Memoizes prompt token counts in a cache store.

    Store calls run on a single background worker. Reads wait at most
    ``read_timeout`` seconds and writes are not waited on, so a slow or hung
    store costs the caller no more than the read timeout. Once
    ``max_pending`` store calls are queued, further ones are skipped.
    """

    def __init__(
        self,
        store=None,
        counter: Optional[TokenCounter] = None,
        ttl: int = 86400,
        read_timeout: float = READ_TIMEOUT,
        max_pending: int = MAX_PENDING_CALLS
    ):
        """
        Args:
            store: Object with ``get(key)`` and ``set(key, value, ttl)``;
                None means no caching
            counter: TokenCounter used on a miss
            ttl: Entry lifetime in seconds
            read_timeout: Seconds to wait for a cache read before counting
            max_pending: Queued store calls beyond which the cache is bypassed
        """
        self.store = store if store is not None else NullCacheStore()
        self.counter = counter or TokenCounter()
        self.ttl = ttl
        self.read_timeout = read_timeout
        self.max_pending = max_pending
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="token-cache")
        self._pending = 0
        self._lock = threading.Lock()

    def lookup_or_count(self, turns: Sequence[Turn]) -> Optional[int]:
        """
        Return the token count for ``turns``, from cache when possible.

        Never raises. Cache read failures or timeouts degrade to computing
        the count; the write back is queued and its failures are only
        logged. A counting failure returns None.
        """
        key = derive_key(turns)

        cached = self._read(key)
        if cached is not None:
            logger.debug(f"Token cache hit: {key} -> {cached}")
            return cached

        try:
            count = self.counter.count(turns)
        except Exception as e:
            logger.warning(f"Token counting failed: {e}", exc_info=True)
            return None

        if self._submit(self._write, key, count) is None:
            logger.warning(f"Token cache write skipped for {key}")

        logger.debug(f"Token cache miss: {key} -> {count}")
        return count

    def close(self, wait: bool = True) -> None:
        """Stop the background worker, optionally letting queued writes finish."""
        self._executor.shutdown(wait=wait)

    def _read(self, key: str) -> Optional[int]:
        future = self._submit(self.store.get, key)
        if future is None:
            logger.warning(f"Token cache read skipped for {key}")
            return None
        try:
            return future.result(timeout=self.read_timeout)
        except FutureTimeoutError:
            logger.warning(f"Token cache read timed out after {self.read_timeout}s for {key}")
        except Exception as e:
            logger.warning(f"Token cache read failed for {key}: {e}")
        return None

    def _write(self, key: str, count: int) -> None:
        try:
            self.store.set(key, count, self.ttl)
        except Exception as e:
            logger.warning(f"Token cache write failed for {key}: {e}")

    def _submit(self, fn, *args) -> Optional[Future]:
        with self._lock:
            if self._pending >= self.max_pending:
                return None
            self._pending += 1
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning(f"Token cache unavailable: {e}")
            self._release()
            return None
        future.add_done_callback(self._release)
        return future

    def _release(self, future: Optional[Future] = None) -> None:
        with self._lock:
            self._pending -= 1
