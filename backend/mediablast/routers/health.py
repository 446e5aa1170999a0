from fastapi import APIRouter
from mediablast.core.database import check_db_connection
from mediablast.core.redis import check_emergency_stop, check_redis_connection

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check():
    """ヘルスチェックエンドポイント (DB/Redis接続・緊急停止状態)"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()

    status = "ok" if (db_ok and redis_ok) else "degraded"

    return {
        "status": status,
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "emergency_stop": check_emergency_stop() if redis_ok else False,
    }
