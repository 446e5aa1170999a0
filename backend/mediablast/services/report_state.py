"""
レポート集計と状態確定

件数は常にアイテム状態からの再集計で求める (並行書き込みでずれないようにインクリメントしない)。
"""
from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from mediablast.core.config import settings
from mediablast.core.exceptions import InvariantViolation, NotFoundError
from mediablast.core.logging import get_logger
from mediablast.models.report import Report, REPORT_COMPLETED, REPORT_FAILED, REPORT_PROCESSING
from mediablast.models.report_item import (
    ReportItem,
    GEN_PENDING, GEN_PROCESSING, GEN_DONE, GEN_FAILED,
    DELIVERY_PENDING, DELIVERY_FAILED,
    DELIVERY_ACCEPTED_STATUSES, DELIVERY_FAILED_STATUSES,
)

logger = get_logger(__name__)

JST = ZoneInfo("Asia/Tokyo")

MISSING_ARTIFACT_ERROR = "Generation marked DONE but video_url is empty"


def now_jst() -> datetime:
    return datetime.now(JST)


def truncate_error(message, limit: int = None) -> str:
    limit = limit or settings.PROVIDER_ERROR_MAX_LENGTH
    text = str(message) if message is not None else ""
    return text if len(text) <= limit else text[: limit - 3] + "..."


def get_report_or_404(db: Session, report_id: int) -> Report:
    report = db.query(Report).filter(Report.id == report_id).first()
    if not report:
        raise NotFoundError(f"report {report_id} not found")
    return report


def generation_counts(db: Session, report_id: int) -> dict:
    """対象 (除外されていない) アイテムの生成ステータス別件数"""
    rows = db.query(ReportItem.status, func.count(ReportItem.id)).filter(
        ReportItem.report_id == report_id,
        ReportItem.excluded == False,
    ).group_by(ReportItem.status).all()
    counts = {GEN_PENDING: 0, GEN_PROCESSING: 0, GEN_DONE: 0, GEN_FAILED: 0}
    for status, count in rows:
        counts[status] = count
    return counts


def delivery_counts(db: Session, report_id: int) -> dict:
    """配信ステータス別件数 (NULL は None キー)"""
    rows = db.query(ReportItem.delivery_status, func.count(ReportItem.id)).filter(
        ReportItem.report_id == report_id,
    ).group_by(ReportItem.delivery_status).all()
    return {status: count for status, count in rows}


def recompute_progress(db: Session, report: Report) -> dict:
    """生成進捗の件数をレポートに反映 (commitは呼び出し側)"""
    counts = generation_counts(db, report.id)
    report.total_records = db.query(func.count(ReportItem.id)).filter(
        ReportItem.report_id == report.id,
    ).scalar()
    report.success_count = counts[GEN_DONE]
    report.failed_count = counts[GEN_FAILED]
    report.processed_records = counts[GEN_DONE] + counts[GEN_FAILED]
    return counts


def recompute_delivery_counts(db: Session, report: Report) -> tuple[int, int]:
    """送信済み (QUEUED/SENT/DELIVERED) と失敗 (FAILED/ERROR) を再集計 (commitは呼び出し側)"""
    counts = delivery_counts(db, report.id)
    report.delivery_sent_count = sum(counts.get(s, 0) for s in DELIVERY_ACCEPTED_STATUSES)
    report.delivery_failed_count = sum(counts.get(s, 0) for s in DELIVERY_FAILED_STATUSES)
    return report.delivery_sent_count, report.delivery_failed_count


def check_artifact(item: ReportItem):
    """DONE のアイテムは成果物URLを持つ"""
    if item.status == GEN_DONE and not item.artifact_url:
        raise InvariantViolation(f"item {item.id} is DONE without an artifact URL")


def downgrade_missing_artifacts(db: Session, report_id: int) -> int:
    """DONE なのに成果物URLが空のアイテムを FAILED に降格する"""
    candidates = db.query(ReportItem).filter(
        ReportItem.report_id == report_id,
        ReportItem.status == GEN_DONE,
        or_(ReportItem.artifact_url.is_(None), ReportItem.artifact_url == ""),
    ).all()
    downgraded = 0
    for item in candidates:
        try:
            check_artifact(item)
        except InvariantViolation as e:
            logger.warning(f"不変条件違反のためFAILEDに降格: report_id={report_id} - {e}")
            item.status = GEN_FAILED
            item.artifact_url = None
            item.error_message = MISSING_ARTIFACT_ERROR
            if item.delivery_status is None or item.delivery_status == DELIVERY_PENDING:
                item.delivery_status = DELIVERY_FAILED
                item.delivery_error = "No video available"
            downgraded += 1
    return downgraded


def refresh_status(db: Session, report_id: int) -> Report:
    """
    件数を再集計しレポートステータスを確定する。

    - PENDING/PROCESSING のアイテムが無く、終端アイテムが1件以上あれば
      失敗ありなら FAILED、それ以外は COMPLETED (遷移時のみ completed_at を記録)
    - 未完了アイテムが残っているのに終端ステータスなら PROCESSING に戻す
    """
    report = get_report_or_404(db, report_id)
    downgrade_missing_artifacts(db, report_id)
    db.flush()

    counts = recompute_progress(db, report)
    recompute_delivery_counts(db, report)

    in_flight = counts[GEN_PENDING] + counts[GEN_PROCESSING]
    terminal = counts[GEN_DONE] + counts[GEN_FAILED]

    if in_flight == 0 and terminal > 0:
        new_status = REPORT_FAILED if counts[GEN_FAILED] > 0 else REPORT_COMPLETED
        if report.status != new_status:
            report.status = new_status
            report.completed_at = now_jst()
            logger.info(
                f"レポート確定: report_id={report_id}, status={new_status}, "
                f"成功={counts[GEN_DONE]}, 失敗={counts[GEN_FAILED]}"
            )
    elif in_flight > 0 and report.status in (REPORT_COMPLETED, REPORT_FAILED):
        report.status = REPORT_PROCESSING
        report.completed_at = None

    db.commit()
    return report


def get_item_or_404(db: Session, report_id: int, item_id: int) -> ReportItem:
    item = db.query(ReportItem).filter(
        ReportItem.id == item_id,
        ReportItem.report_id == report_id,
    ).first()
    if not item:
        raise NotFoundError(f"item {item_id} not found in report {report_id}")
    return item


def reset_generation(item: ReportItem):
    """生成状態を初期化 (オペレーター操作による巻き戻し)"""
    item.status = GEN_PENDING
    item.provider_job_id = None
    item.secondary_job_id = None
    item.primary_result_url = None
    item.artifact_url = None
    item.error_message = None
    item.generated_at = None
