"""Scheduler エントリポイント: python -m mediablast.scheduler で起動"""
import signal
import sys
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from mediablast.core.logging import setup_logging, get_logger
from mediablast.core.redis import check_emergency_stop
from mediablast.scheduler.cache_jobs import cleanup_cache, warm_up_cache
from mediablast.scheduler.delivery_jobs import blast_pending_reports, claim_watchdog, sync_delivery_statuses
from mediablast.services.pipeline import get_pipeline, shutdown_pipeline

setup_logging(process="scheduler")
logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone="Asia/Tokyo")


def signal_handler(sig, frame):
    logger.info("Scheduler停止シグナル受信")
    scheduler.shutdown(wait=False)
    shutdown_pipeline(wait=False)
    sys.exit(0)


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def poll_generation_status():
    """PROCESSING アイテムのステータス照会"""
    if check_emergency_stop():
        return
    try:
        checked = get_pipeline().reconciler.check_all_processing()
        if checked:
            logger.info(f"定期ステータス照会: {checked}レポート")
    except Exception as e:
        logger.error(f"定期ステータス照会エラー: {e}")


def main():
    logger.info("Scheduler起動")

    # 30秒ごと: 配信ブラスト
    scheduler.add_job(
        blast_pending_reports,
        CronTrigger(second="*/30", timezone="Asia/Tokyo"),
        id="blast_pending_reports",
        max_instances=1,
    )

    # 30秒ごと: 生成ステータス照会
    scheduler.add_job(
        poll_generation_status,
        CronTrigger(second="*/30", timezone="Asia/Tokyo"),
        id="poll_generation_status",
        max_instances=1,
    )

    # 5分ごと: 配信状態同期 (DELIVERY_STATUS_SYNC_ENABLED のときのみ実処理)
    scheduler.add_job(
        sync_delivery_statuses,
        CronTrigger(minute="*/5", timezone="Asia/Tokyo"),
        id="sync_delivery_statuses",
        max_instances=1,
    )

    # 5分ごと: 放置クレーム回収
    scheduler.add_job(
        claim_watchdog,
        CronTrigger(minute="*/5", timezone="Asia/Tokyo"),
        id="claim_watchdog",
        max_instances=1,
    )

    # 10分ごと: キャッシュウォームアップ
    scheduler.add_job(
        warm_up_cache,
        CronTrigger(minute="*/10", timezone="Asia/Tokyo"),
        id="cache_warmup",
        max_instances=1,
    )

    # 03:00 JST: 期限切れキャッシュ削除
    scheduler.add_job(
        cleanup_cache,
        CronTrigger(hour=3, minute=0, timezone="Asia/Tokyo"),
        id="cache_cleanup",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler終了")


if __name__ == "__main__":
    main()
else:
    main()
