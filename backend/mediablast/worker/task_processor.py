"""生成タスク処理"""
from sqlalchemy import exists

from mediablast.core.database import SessionLocal
from mediablast.core.exceptions import ConcurrencyConflict
from mediablast.core.logging import get_logger
from mediablast.core.redis import check_emergency_stop
from mediablast.models.report import Report, REPORT_PROCESSING
from mediablast.models.report_item import ReportItem, GEN_PENDING
from mediablast.services.pipeline import Pipeline

logger = get_logger(__name__)


def find_reports_to_generate(session_factory=SessionLocal) -> list[int]:
    """PROCESSING のレポートのうち、除外されていない PENDING アイテムが残っているもの"""
    db = session_factory()
    try:
        pending = exists().where(
            ReportItem.report_id == Report.id,
            ReportItem.excluded == False,
            ReportItem.status == GEN_PENDING,
        )
        rows = db.query(Report.id).filter(
            Report.status == REPORT_PROCESSING,
            pending,
        ).order_by(Report.id).all()
        return [row.id for row in rows]
    finally:
        db.close()


def process_pending_reports(pipeline: Pipeline, session_factory=SessionLocal) -> bool:
    """
    未投入アイテムを持つレポートを生成投入する。

    Returns: 1件以上のレポートを処理したら True
    """
    if check_emergency_stop():
        logger.info("緊急停止中: 生成投入スキップ")
        return False

    report_ids = find_reports_to_generate(session_factory)
    processed = False
    for report_id in report_ids:
        try:
            result = pipeline.reports.start_generation(report_id)
            processed = True
            logger.info(f"生成投入完了: report_id={report_id}, result={result}")
        except ConcurrencyConflict:
            logger.info(f"他プロセスが生成投入中のためスキップ: report_id={report_id}")
        except Exception as e:
            logger.error(f"生成投入エラー: report_id={report_id} - {e}", exc_info=True)
    return processed


def reconcile_processing(pipeline: Pipeline) -> int:
    """PROCESSING アイテムのステータス照会。照会したレポート数を返す"""
    if check_emergency_stop():
        return 0
    return pipeline.reconciler.check_all_processing()
