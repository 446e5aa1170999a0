"""Worker エントリポイント: python -m mediablast.worker で起動"""
import time
import signal
from mediablast.core.logging import setup_logging, get_logger
from mediablast.core.redis import check_emergency_stop
from mediablast.services.pipeline import get_pipeline, shutdown_pipeline
from mediablast.worker.task_processor import process_pending_reports, reconcile_processing

setup_logging(process="worker")
logger = get_logger("worker")

RECONCILE_INTERVAL_SECONDS = 30

running = True


def signal_handler(sig, frame):
    global running
    logger.info("Worker停止シグナル受信")
    running = False


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def main():
    logger.info("Worker起動")
    pipeline = get_pipeline()
    last_reconcile = 0.0
    while running:
        try:
            if check_emergency_stop():
                logger.debug("緊急停止中: 待機")
                time.sleep(10)
                continue

            had_task = process_pending_reports(pipeline)

            if time.monotonic() - last_reconcile >= RECONCILE_INTERVAL_SECONDS:
                checked = reconcile_processing(pipeline)
                last_reconcile = time.monotonic()
                if checked:
                    logger.info(f"ステータス照会: {checked}レポート")

            if not had_task:
                time.sleep(5)
        except Exception as e:
            logger.error(f"Workerループエラー: {e}")
            time.sleep(10)

    shutdown_pipeline()
    logger.info("Worker終了")


if __name__ == "__main__":
    main()
else:
    main()
