import redis.asyncio as aioredis
import redis as sync_redis
from mediablast.core.config import settings
from mediablast.core.logging import get_logger

logger = get_logger(__name__)

EMERGENCY_STOP_KEY = "emergency_stop"

# 非同期Redis (FastAPI用)
redis_pool = aioredis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


async def get_redis() -> aioredis.Redis:
    """FastAPI依存関数: 非同期Redisクライアント取得"""
    return aioredis.Redis(connection_pool=redis_pool)


# 同期Redis (Worker/Scheduler/ロック用)
sync_redis_pool = sync_redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


def get_sync_redis() -> sync_redis.Redis:
    """同期Redisクライアント取得"""
    return sync_redis.Redis(connection_pool=sync_redis_pool)


async def check_redis_connection() -> bool:
    """Redis接続チェック"""
    try:
        r = await get_redis()
        await r.ping()
        return True
    except Exception:
        return False


def check_emergency_stop() -> bool:
    """緊急停止フラグチェック (Redis未接続時は停止しない)"""
    try:
        return bool(get_sync_redis().get(EMERGENCY_STOP_KEY))
    except sync_redis.RedisError as e:
        logger.warning(f"緊急停止フラグ取得失敗: {e}")
        return False


def set_emergency_stop(active: bool):
    """緊急停止フラグ設定"""
    r = get_sync_redis()
    if active:
        r.set(EMERGENCY_STOP_KEY, "1")
    else:
        r.delete(EMERGENCY_STOP_KEY)
