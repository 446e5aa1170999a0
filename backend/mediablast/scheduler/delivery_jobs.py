"""定期ジョブ: 配信ブラスト・配信状態同期・クレーム回収"""
from mediablast.core.config import settings
from mediablast.core.logging import get_logger
from mediablast.core.redis import check_emergency_stop
from mediablast.services.pipeline import get_pipeline

logger = get_logger(__name__)


def blast_pending_reports(pipeline=None) -> int:
    """生成済み・未配信のアイテムを持つ全レポートをブラスト。実行したレポート数を返す"""
    if check_emergency_stop():
        logger.info("緊急停止中: ブラストスキップ")
        return 0

    pipeline = pipeline or get_pipeline()
    report_ids = pipeline.blast.find_reports_ready_for_blast()
    executed = 0
    for report_id in report_ids:
        try:
            result = pipeline.blast.run_blast(report_id)
        except Exception as e:
            logger.error(f"定期ブラストエラー: report_id={report_id} - {e}")
            continue
        if result is not None:
            executed += 1
    if report_ids:
        logger.info(f"定期ブラスト: 対象={len(report_ids)}レポート, 実行={executed}")
    return executed


def sync_delivery_statuses(pipeline=None) -> int:
    """QUEUED/SENT のアイテムを持つレポートの配信状態を同期"""
    if not settings.DELIVERY_STATUS_SYNC_ENABLED:
        return 0
    if check_emergency_stop():
        return 0

    pipeline = pipeline or get_pipeline()
    report_ids = pipeline.blast.find_reports_to_sync()
    for report_id in report_ids:
        try:
            pipeline.blast.sync_delivery_status(report_id)
        except Exception as e:
            logger.error(f"配信状態同期エラー: report_id={report_id} - {e}")
    return len(report_ids)


def claim_watchdog(pipeline=None) -> int:
    """
    Watchdog: CLAIMED のまま放置されたアイテムを ERROR にする

    ブラスト中にプロセスが停止するとクレームが残るため、
    CLAIM_TIMEOUT_MINUTES を超えたもの (ロック未保持のレポートのみ) を回収する。
    """
    pipeline = pipeline or get_pipeline()
    try:
        return pipeline.blast.recover_stale_claims()
    except Exception as e:
        logger.error(f"Watchdogエラー: {e}")
        return 0
