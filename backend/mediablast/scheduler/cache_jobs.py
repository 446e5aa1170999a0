"""定期ジョブ: 成果物キャッシュのウォームアップ・期限切れ削除"""
from datetime import timedelta

from mediablast.core.config import settings
from mediablast.core.database import SessionLocal
from mediablast.core.logging import get_logger
from mediablast.core.security import make_artifact_token
from mediablast.models.report_item import ReportItem, GEN_DONE
from mediablast.services.artifact_cache import ArtifactCache, CACHE_CACHED, get_artifact_cache
from mediablast.services.report_state import now_jst

logger = get_logger(__name__)


def warm_up_cache(cache: ArtifactCache = None, session_factory=SessionLocal, batch_size: int = None) -> int:
    """
    保持期間内に生成された DONE アイテムのうち、キャッシュが無いものを取り込む。

    Returns: 今回ダウンロードした件数
    """
    cache = cache or get_artifact_cache()
    batch_size = batch_size or settings.ARTIFACT_WARMUP_BATCH_SIZE
    since = now_jst() - timedelta(days=settings.ARTIFACT_RETENTION_DAYS)

    db = session_factory()
    try:
        rows = db.query(ReportItem.id, ReportItem.report_id, ReportItem.artifact_url).filter(
            ReportItem.status == GEN_DONE,
            ReportItem.artifact_url.isnot(None),
            ReportItem.artifact_url != "",
            ReportItem.generated_at >= since,
        ).order_by(ReportItem.generated_at.desc()).all()
    finally:
        db.close()

    cached = 0
    attempted = 0
    for row in rows:
        if attempted >= batch_size:
            break
        token = make_artifact_token(row.report_id, row.id)
        if cache.is_cached(token):
            continue
        attempted += 1
        try:
            if cache.ensure_cached(token, row.artifact_url) == CACHE_CACHED:
                cached += 1
        except Exception as e:
            logger.warning(f"ウォームアップ失敗: item_id={row.id} - {e}")

    if attempted:
        logger.info(f"キャッシュウォームアップ: 対象={attempted}件, 取得={cached}件")
    return cached


def cleanup_cache(cache: ArtifactCache = None, retention_days: int = None) -> int:
    """保持期間を過ぎたキャッシュファイルを削除"""
    cache = cache or get_artifact_cache()
    retention_days = retention_days or settings.ARTIFACT_RETENTION_DAYS
    try:
        return cache.cleanup_expired(retention_days)
    except OSError as e:
        logger.error(f"キャッシュ削除エラー: {e}")
        return 0
