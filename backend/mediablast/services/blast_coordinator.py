"""
配信ブラスト

- レポート単位の排他ロックで同時実行は1つだけ (取得できなければ何もしない)
- 配信対象は1回の条件付き UPDATE で CLAIMED にしてから送る (比較交換)
- 結果は宛先番号ではなくアイテムIDで対応付ける (同一番号の重複に対応)
- 送信後に CLAIMED のまま残ったアイテムは ERROR にする
- 件数はアイテム状態から再集計する
"""
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from mediablast.core.config import settings
from mediablast.core.database import SessionLocal
from mediablast.core.exceptions import ConcurrencyConflict, ProviderError, ValidationError
from mediablast.core.locks import LockRegistry, blast_lock_key
from mediablast.core.logging import get_logger
from mediablast.core.security import make_artifact_token
from mediablast.models.report import Report
from mediablast.models.report_item import (
    ReportItem,
    GEN_DONE,
    DELIVERY_PENDING, DELIVERY_CLAIMED, DELIVERY_QUEUED, DELIVERY_SENT,
    DELIVERY_DELIVERED, DELIVERY_ERROR, DELIVERY_DISABLED, DELIVERY_FAILED_STATUSES,
)
from mediablast.services.bulk_sender import BulkRetrySender
from mediablast.services.delivery_channel import DeliveryChannel, OutboundMessage, SendResult
from mediablast.services.report_state import (
    get_item_or_404, get_report_or_404, now_jst, recompute_delivery_counts, truncate_error,
)
from mediablast.services.variable_resolver import (
    DEFAULT_DELIVERY_TEMPLATE, build_recipient_fields, resolve_variables,
)

logger = get_logger(__name__)

NO_RESULT_ERROR = "No delivery result returned for this item"
CLAIM_EXPIRED_ERROR = "Claim expired: blast did not finish"


def share_link(report_id: int, item_id: int, site_url: str = None) -> str:
    """共有 (ストリーミング) リンク"""
    base = (site_url or settings.SITE_URL).rstrip("/")
    return f"{base}/api/share/{make_artifact_token(report_id, item_id)}.mp4"


def render_delivery_message(report: Report, item: ReportItem, site_url: str = None) -> str:
    template = report.delivery_template or DEFAULT_DELIVERY_TEMPLATE
    fields = build_recipient_fields(item.name, item.phone, link=share_link(report.id, item.id, site_url))
    return resolve_variables(template, fields)


def delivery_status_for(result: SendResult) -> str:
    """成功結果をチャネルの受理状態に応じて QUEUED/SENT/DELIVERED に振り分ける"""
    status = (result.status or "").lower()
    if status == "pending":
        return DELIVERY_QUEUED
    if status in ("delivered", "received", "read"):
        return DELIVERY_DELIVERED
    return DELIVERY_SENT


def ready_for_blast_filter(report_id: int) -> tuple:
    return (
        ReportItem.report_id == report_id,
        ReportItem.status == GEN_DONE,
        ReportItem.excluded == False,
        or_(ReportItem.delivery_status.is_(None), ReportItem.delivery_status == DELIVERY_PENDING),
    )


class BlastCoordinator:
    def __init__(
        self,
        sender: BulkRetrySender,
        lock_registry: LockRegistry,
        session_factory: Callable[[], Session] = SessionLocal,
        channel: DeliveryChannel = None,
        max_attempts: int = None,
        site_url: str = None,
        alert: Optional[Callable[..., object]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.sender = sender
        self.channel = channel or sender.channel
        self.lock_registry = lock_registry
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.DELIVERY_MAX_ATTEMPTS
        self.site_url = site_url
        self.alert = alert
        self._sleep = sleep

    # --- ブラスト ---

    def run_blast(self, report_id: int) -> Optional[dict]:
        """
        配信対象をクレームして一括送信する。
        他の実行がロックを保持していれば None を返して何もしない。
        """
        try:
            with self.lock_registry.hold(blast_lock_key(report_id)):
                return self._run_blast_locked(report_id)
        except ConcurrencyConflict:
            logger.info(f"ブラスト実行中のためスキップ: report_id={report_id}")
            return None

    def claim_batch(self, report_id: int, batch_id: str = None) -> tuple[str, list[int]]:
        """
        配信対象を1回の条件付き UPDATE で CLAIMED にする。
        並行して呼ばれてもクレーム集合は重ならない。

        Returns: (batch_id, クレームしたアイテムID一覧)
        """
        batch_id = batch_id or uuid.uuid4().hex
        db = self.session_factory()
        try:
            result = db.execute(
                update(ReportItem)
                .where(*ready_for_blast_filter(report_id))
                .values(
                    delivery_status=DELIVERY_CLAIMED,
                    delivery_batch_id=batch_id,
                    delivery_claimed_at=now_jst(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount == 0:
                return batch_id, []
            item_ids = [row.id for row in db.query(ReportItem.id).filter(
                ReportItem.delivery_batch_id == batch_id,
                ReportItem.delivery_status == DELIVERY_CLAIMED,
            ).order_by(ReportItem.row_number, ReportItem.id).all()]
            return batch_id, item_ids
        finally:
            db.close()

    def _run_blast_locked(self, report_id: int) -> dict:
        batch_id = uuid.uuid4().hex
        try:
            return self._blast(report_id, batch_id)
        except Exception as e:
            logger.error(f"ブラスト異常終了: report_id={report_id}, batch_id={batch_id} - {e}", extra={"report_id": report_id, "batch_id": batch_id})
            marked = self._fail_claimed(batch_id, truncate_error(f"Blast failed: {e}"))
            self._send_alert(report_id, e, {"batch_id": batch_id, "marked_error": marked})
            raise

    def _blast(self, report_id: int, batch_id: str) -> dict:
        # 読み込みセッションはクレーム後に開く
        _, item_ids = self.claim_batch(report_id, batch_id)
        if not item_ids:
            logger.info(f"配信対象なし: report_id={report_id}")
            return {"claimed": 0, "sent": 0, "failed": 0}
        logger.info(f"ブラスト開始: report_id={report_id}, クレーム={len(item_ids)}件, batch_id={batch_id}", extra={"report_id": report_id, "batch_id": batch_id})

        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            items = db.query(ReportItem).filter(ReportItem.id.in_(item_ids)).all()
            messages = [
                OutboundMessage(
                    correlation_id=str(item.id),
                    phone=item.phone,
                    message=render_delivery_message(report, item, self.site_url),
                )
                for item in items
            ]

            results = self.sender.send_batch_with_retry(messages, self.max_attempts)
            sent, failed = self._apply_results(items, results)

            # 結果の返らなかったアイテム
            for item in items:
                if item.delivery_status == DELIVERY_CLAIMED:
                    item.delivery_status = DELIVERY_ERROR
                    item.delivery_error = NO_RESULT_ERROR
                    failed += 1
            db.flush()

            recompute_delivery_counts(db, report)
            db.commit()
            logger.info(f"ブラスト完了: report_id={report_id}, 送信={sent}, 失敗={failed}", extra={"report_id": report_id})
            return {"claimed": len(items), "sent": sent, "failed": failed}
        finally:
            db.close()

    def _apply_results(self, items: list[ReportItem], results: list[SendResult]) -> tuple[int, int]:
        by_id = {str(item.id): item for item in items}
        sent = 0
        failed = 0
        now = now_jst()
        for result in results:
            item = by_id.get(result.correlation_id)
            if item is None or item.delivery_status != DELIVERY_CLAIMED:
                continue
            if result.success:
                item.delivery_status = delivery_status_for(result)
                item.delivery_message_id = result.message_id
                item.delivery_error = None
                item.delivered_at = now
                sent += 1
            else:
                item.delivery_status = DELIVERY_ERROR
                item.delivery_message_id = result.message_id
                item.delivery_error = truncate_error(result.error or "Unknown error")
                failed += 1
        return sent, failed

    def _fail_claimed(self, batch_id: str, message: str) -> int:
        """このバッチがクレームしたままのアイテムを ERROR にする"""
        db = self.session_factory()
        try:
            result = db.execute(
                update(ReportItem)
                .where(
                    ReportItem.delivery_batch_id == batch_id,
                    ReportItem.delivery_status == DELIVERY_CLAIMED,
                )
                .values(delivery_status=DELIVERY_ERROR, delivery_error=message)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount
        except Exception as e:
            db.rollback()
            logger.error(f"クレーム解除失敗: batch_id={batch_id} - {e}")
            return 0
        finally:
            db.close()

    def _send_alert(self, report_id: int, error: Exception, details: dict):
        if self.alert is None:
            return
        try:
            self.alert(report_id=report_id, error_message=f"配信ブラスト失敗: {error}", details=details)
        except Exception as e:
            logger.error(f"アラート送信失敗: report_id={report_id} - {e}")

    # --- 個別操作 ---

    def resend_item(self, report_id: int, item_id: int, max_attempts: int = None) -> ReportItem:
        """1件再送 (リトライ付き)。ブラスト実行中は ConcurrencyConflict"""
        with self.lock_registry.hold(blast_lock_key(report_id)):
            db = self.session_factory()
            try:
                report = get_report_or_404(db, report_id)
                item = get_item_or_404(db, report_id, item_id)
                if item.status != GEN_DONE or not item.artifact_url:
                    raise ValidationError("Video not ready yet")
                if item.excluded:
                    raise ValidationError("Item is excluded")
                if item.delivery_status == DELIVERY_DISABLED:
                    raise ValidationError("Delivery is disabled for this report")

                message = OutboundMessage(
                    correlation_id=str(item.id),
                    phone=item.phone,
                    message=render_delivery_message(report, item, self.site_url),
                )
                item.delivery_status = DELIVERY_CLAIMED
                results = self.sender.send_batch_with_retry([message], max_attempts or self.max_attempts)
                self._apply_results([item], results)
                if item.delivery_status == DELIVERY_CLAIMED:
                    item.delivery_status = DELIVERY_ERROR
                    item.delivery_error = NO_RESULT_ERROR
                db.flush()
                recompute_delivery_counts(db, report)
                db.commit()
                logger.info(f"再送: item_id={item_id}, status={item.delivery_status}")
                return item
            finally:
                db.close()

    def retry_failed_delivery(self, report_id: int) -> dict:
        """配信失敗 (FAILED/ERROR) の生成済みアイテムを PENDING に戻して再ブラスト"""
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            reset = db.execute(
                update(ReportItem)
                .where(
                    ReportItem.report_id == report_id,
                    ReportItem.status == GEN_DONE,
                    ReportItem.excluded == False,
                    ReportItem.delivery_status.in_(DELIVERY_FAILED_STATUSES),
                )
                .values(
                    delivery_status=DELIVERY_PENDING,
                    delivery_error=None,
                    delivery_message_id=None,
                    delivery_batch_id=None,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            recompute_delivery_counts(db, report)
            db.commit()
        finally:
            db.close()

        logger.info(f"配信失敗リトライ: report_id={report_id}, {reset}件をPENDINGに戻しました")
        if reset == 0:
            return {"reset": 0, "blast": None}
        return {"reset": reset, "blast": self.run_blast(report_id)}

    def sync_delivery_status(self, report_id: int, delay: float = 0.2) -> dict:
        """
        QUEUED/SENT のアイテムについてチャネルに配信状態を問い合わせる。

        delivered/read → DELIVERED, sent → SENT, pending → QUEUED,
        cancel/rejected/failed → ERROR。照会自体の例外はアイテムを変更しない。
        """
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            items = db.query(ReportItem).filter(
                ReportItem.report_id == report_id,
                ReportItem.delivery_message_id.isnot(None),
                ReportItem.delivery_message_id != "",
                ReportItem.delivery_status.in_([DELIVERY_QUEUED, DELIVERY_SENT]),
            ).order_by(ReportItem.row_number).all()

            summary = {"checked": len(items), "updated": 0, "delivered": 0, "failed": 0, "errors": 0}
            for index, item in enumerate(items):
                if index > 0 and delay:
                    self._sleep(delay)
                try:
                    info = self.channel.get_delivery_status(item.delivery_message_id)
                except ProviderError as e:
                    summary["errors"] += 1
                    logger.warning(f"配信状態照会失敗: item_id={item.id} - {e}")
                    continue

                new_status, error = _map_channel_status(info.status, info.error)
                if new_status is None:
                    continue
                if new_status == DELIVERY_DELIVERED:
                    summary["delivered"] += 1
                elif new_status == DELIVERY_ERROR:
                    summary["failed"] += 1
                if new_status != item.delivery_status:
                    item.delivery_status = new_status
                    item.delivery_error = error
                    summary["updated"] += 1

            db.flush()
            recompute_delivery_counts(db, report)
            db.commit()
            logger.info(
                f"配信状態同期: report_id={report_id}, 照会={summary['checked']}, "
                f"更新={summary['updated']}, 配達={summary['delivered']}, 失敗={summary['failed']}"
            )
            return summary
        finally:
            db.close()

    def apply_status_callback(
        self, message_id: str, status: Optional[str], event_time: datetime = None,
    ) -> Optional[dict]:
        """
        チャネルから通知された配信状態を message_id のアイテムに反映する。

        対応付けは sync_delivery_status と同じ。未知の状態は無視し、
        受理済みの状態が後から届いた古い通知で巻き戻ることはない。
        message_id に該当するアイテムがなければ None。
        """
        db = self.session_factory()
        try:
            item = db.query(ReportItem).filter(ReportItem.delivery_message_id == message_id).first()
            if item is None:
                return None

            old_status = item.delivery_status
            new_status, error = (None, None)
            if status and status.strip():
                new_status, error = _map_channel_status(status.strip(), None)
            if new_status is not None and _advances(old_status, new_status):
                item.delivery_status = new_status
                item.delivery_error = error
                if event_time is not None:
                    item.delivered_at = event_time
                db.flush()
                report = db.query(Report).filter(Report.id == item.report_id).first()
                recompute_delivery_counts(db, report)
                db.commit()
                logger.info(f"配信状態通知: item_id={item.id}, {old_status} → {new_status}")

            return {"message_id": message_id, "old_status": old_status, "new_status": item.delivery_status}
        finally:
            db.close()

    # --- 定期処理 ---

    def find_reports_ready_for_blast(self) -> list[int]:
        db = self.session_factory()
        try:
            rows = db.query(ReportItem.report_id).filter(
                ReportItem.status == GEN_DONE,
                ReportItem.excluded == False,
                or_(ReportItem.delivery_status.is_(None), ReportItem.delivery_status == DELIVERY_PENDING),
            ).distinct().all()
            return [row.report_id for row in rows]
        finally:
            db.close()

    def find_reports_to_sync(self) -> list[int]:
        db = self.session_factory()
        try:
            rows = db.query(ReportItem.report_id).filter(
                ReportItem.delivery_message_id.isnot(None),
                ReportItem.delivery_status.in_([DELIVERY_QUEUED, DELIVERY_SENT]),
            ).distinct().all()
            return [row.report_id for row in rows]
        finally:
            db.close()

    def recover_stale_claims(self, timeout_minutes: int = None) -> int:
        """
        クレームから一定時間経っても CLAIMED のままのアイテムを ERROR にする
        (ブラスト中のプロセス停止からの復旧)。ロック保持中のレポートは対象外。
        """
        timeout_minutes = timeout_minutes or settings.CLAIM_TIMEOUT_MINUTES
        threshold = now_jst() - timedelta(minutes=timeout_minutes)
        db = self.session_factory()
        try:
            stale = db.query(ReportItem).filter(
                ReportItem.delivery_status == DELIVERY_CLAIMED,
                ReportItem.delivery_claimed_at < threshold,
            ).all()

            recovered = 0
            touched = set()
            for item in stale:
                if self.lock_registry.is_held(blast_lock_key(item.report_id)):
                    continue
                item.delivery_status = DELIVERY_ERROR
                item.delivery_error = CLAIM_EXPIRED_ERROR
                touched.add(item.report_id)
                recovered += 1
            db.flush()

            for report_id in touched:
                report = db.query(Report).filter(Report.id == report_id).first()
                if report:
                    recompute_delivery_counts(db, report)
            db.commit()

            if recovered:
                logger.warning(f"期限切れクレームを回収: {recovered}件 (レポート{len(touched)}件)")
            return recovered
        finally:
            db.close()


def _map_channel_status(status: Optional[str], error: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """チャネルの配信状態をアイテムの配信ステータスへ"""
    if status is None:
        message = f"WA status check failed: {error}" if error else "WA status check failed"
        return DELIVERY_ERROR, message
    value = status.lower()
    if value in ("delivered", "received", "read"):
        return DELIVERY_DELIVERED, None
    if value == "sent":
        return DELIVERY_SENT, None
    if value == "pending":
        return DELIVERY_QUEUED, None
    if value in ("cancel", "rejected", "failed"):
        return DELIVERY_ERROR, f"Wablas status: {status}"
    return None, None


_ACCEPTED_ORDER = {DELIVERY_QUEUED: 0, DELIVERY_SENT: 1, DELIVERY_DELIVERED: 2}


def _advances(current: Optional[str], new: str) -> bool:
    """受理済み状態の中では QUEUED → SENT → DELIVERED の順にしか進めない"""
    if new == current:
        return False
    if current in _ACCEPTED_ORDER and new in _ACCEPTED_ORDER:
        return _ACCEPTED_ORDER[new] > _ACCEPTED_ORDER[current]
    return True
