"""レポート単位の排他ロック (非ブロッキング・非再入)

- InProcessLockRegistry: 単一プロセス内 (threading.Lock)
- RedisLockRegistry: 複数プロセス間 (Redis SET NX + TTL)

どちらも hold() でスコープ取得し、全ての終了経路で解放する。
取得できなければ ConcurrencyConflict を送出する (呼び出し側はスキップ扱い)。
"""
import threading
from contextlib import contextmanager

from redis.exceptions import LockError

from mediablast.core.exceptions import ConcurrencyConflict
from mediablast.core.logging import get_logger

logger = get_logger(__name__)


class LockRegistry:
    """ロックレジストリ基底"""

    def acquire(self, key: str) -> bool:
        raise NotImplementedError

    def release(self, key: str) -> None:
        raise NotImplementedError

    def is_held(self, key: str) -> bool:
        raise NotImplementedError

    @contextmanager
    def hold(self, key: str):
        if not self.acquire(key):
            raise ConcurrencyConflict(f"lock already held: {key}")
        try:
            yield
        finally:
            self.release(key)


class InProcessLockRegistry(LockRegistry):
    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def acquire(self, key: str) -> bool:
        return self._get(key).acquire(blocking=False)

    def release(self, key: str) -> None:
        self._get(key).release()

    def is_held(self, key: str) -> bool:
        return self._get(key).locked()


class RedisLockRegistry(LockRegistry):
    """
    Redisロック。TTL付きなのでプロセス死亡時も自動解放される。
    ttl_seconds は1回のブラスト/生成実行より十分長くすること。
    """

    PREFIX = "lock:"

    def __init__(self, redis_client, ttl_seconds: int = 3600):
        self._redis = redis_client
        self._ttl = ttl_seconds
        self._held = {}
        self._guard = threading.Lock()

    def acquire(self, key: str) -> bool:
        lock = self._redis.lock(self.PREFIX + key, timeout=self._ttl, blocking=False)
        if not lock.acquire(blocking=False):
            return False
        with self._guard:
            self._held[key] = lock
        return True

    def release(self, key: str) -> None:
        with self._guard:
            lock = self._held.pop(key, None)
        if lock is None:
            return
        try:
            lock.release()
        except LockError as e:
            # TTL切れで既に他者が保持している
            logger.warning(f"ロック解放失敗 (期限切れ): key={key} - {e}")

    def is_held(self, key: str) -> bool:
        return bool(self._redis.exists(self.PREFIX + key))


def blast_lock_key(report_id: int) -> str:
    return f"blast:{report_id}"


def generation_lock_key(report_id: int) -> str:
    return f"generation:{report_id}"


_registry: LockRegistry = None


def get_lock_registry() -> LockRegistry:
    """プロセス共通のロックレジストリ (Redis)"""
    global _registry
    if _registry is None:
        from mediablast.core.redis import get_sync_redis
        _registry = RedisLockRegistry(get_sync_redis())
    return _registry
