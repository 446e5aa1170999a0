"""
生成ステータスの照合

PROCESSING のアイテムについてプロバイダへジョブ状態を問い合わせ、状態機械を進める。
二次変換 (翻訳) が必要なレポートでは、一次生成の完了後に二次ジョブを投入し、
その完了をもって DONE とする。

照会は件数が閾値を超えると専用のスレッドプールで並列に行う
(生成投入プールとは別なので、投入負荷で照会が滞らない)。
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from sqlalchemy.orm import Session

from mediablast.core.config import settings
from mediablast.core.database import SessionLocal
from mediablast.core.logging import get_logger
from mediablast.core.security import make_artifact_token
from mediablast.models.report import Report, REPORT_COMPLETED, REPORT_FAILED
from mediablast.models.report_item import ReportItem, GEN_PROCESSING, GEN_DONE, GEN_FAILED
from mediablast.services.artifact_cache import ArtifactCache
from mediablast.services.generation_provider import (
    GenerationProvider,
    SecondaryTransformProvider,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_NOT_FOUND,
)
from mediablast.services.report_state import get_report_or_404, now_jst, refresh_status, truncate_error

logger = get_logger(__name__)

OUTCOME_DONE = "done"
OUTCOME_FAILED = "failed"
OUTCOME_WAITING = "waiting"
OUTCOME_ERROR = "error"

TRANSLATION_UNAVAILABLE_ERROR = "Translation requested but no translation provider is configured"


class StatusReconciler:
    def __init__(
        self,
        provider: GenerationProvider,
        secondary_provider: SecondaryTransformProvider = None,
        cache: ArtifactCache = None,
        session_factory: Callable[[], Session] = SessionLocal,
        parallelism: int = None,
        parallel_threshold: int = None,
        cache_inline: bool = False,
    ):
        self.provider = provider
        self.secondary_provider = secondary_provider
        self.cache = cache
        self.session_factory = session_factory
        self.parallelism = parallelism or settings.STATUS_POLL_PARALLELISM
        self.parallel_threshold = (
            settings.STATUS_PARALLEL_THRESHOLD if parallel_threshold is None else parallel_threshold
        )
        # True: DONE にする前にキャッシュへ取り込む (失敗時は FAILED)
        self.cache_inline = cache_inline
        self._executor: Optional[ThreadPoolExecutor] = None
        self._guard = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._guard:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.parallelism, thread_name_prefix="status-poll"
                )
            return self._executor

    def shutdown(self, wait: bool = True):
        with self._guard:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None

    def check_report(self, report_id: int) -> dict:
        """レポート内の PROCESSING アイテムを照会し、最後にレポート状態を確定する"""
        db = self.session_factory()
        try:
            report = get_report_or_404(db, report_id)
            target_language = report.target_language
            item_ids = [row.id for row in db.query(ReportItem.id).filter(
                ReportItem.report_id == report_id,
                ReportItem.status == GEN_PROCESSING,
            ).all()]
        finally:
            db.close()

        outcomes = {OUTCOME_DONE: 0, OUTCOME_FAILED: 0, OUTCOME_WAITING: 0, OUTCOME_ERROR: 0}
        if item_ids:
            logger.info(f"ステータス照会: report_id={report_id}, {len(item_ids)}件")
            if len(item_ids) > self.parallel_threshold:
                futures = [
                    self._get_executor().submit(self._check_item, report_id, item_id, target_language)
                    for item_id in item_ids
                ]
                results = [f.result() for f in futures]
            else:
                results = [self._check_item(report_id, item_id, target_language) for item_id in item_ids]
            for outcome in results:
                outcomes[outcome] += 1

        db = self.session_factory()
        try:
            refresh_status(db, report_id)
        finally:
            db.close()
        return outcomes

    def check_all_processing(self) -> int:
        """PROCESSING アイテムを持つ全レポートを照会。照会したレポート数を返す"""
        db = self.session_factory()
        try:
            report_ids = [row.report_id for row in db.query(ReportItem.report_id).filter(
                ReportItem.status == GEN_PROCESSING,
            ).distinct().all()]
        finally:
            db.close()

        for report_id in report_ids:
            try:
                self.check_report(report_id)
            except Exception as e:
                logger.error(f"ステータス照会エラー: report_id={report_id} - {e}")
        return len(report_ids)

    def poll_until_terminal(
        self,
        report_id: int,
        deadline: Optional[float] = None,
        interval: float = 30.0,
        stop_event: threading.Event = None,
    ) -> str:
        """
        レポートが COMPLETED/FAILED になるまで照会を繰り返す。

        Args:
            deadline: time.monotonic() 基準の期限 (None なら無期限)
            interval: 照会間隔 (秒)
            stop_event: セットされたら次の待機で終了

        Returns: 終了時点のレポートステータス
        """
        stop_event = stop_event or threading.Event()
        while True:
            self.check_report(report_id)
            db = self.session_factory()
            try:
                status = db.query(Report.status).filter(Report.id == report_id).scalar()
            finally:
                db.close()

            if status in (REPORT_COMPLETED, REPORT_FAILED):
                return status
            if stop_event.is_set():
                return status
            wait = interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(f"ポーリング期限切れ: report_id={report_id}, status={status}")
                    return status
                wait = min(interval, remaining)
            if stop_event.wait(wait):
                return status

    def _check_item(self, report_id: int, item_id: int, target_language: Optional[str]) -> str:
        """1件照会。例外はアイテムのエラー欄に記録して外に出さない"""
        db = self.session_factory()
        try:
            item = db.query(ReportItem).filter(ReportItem.id == item_id).first()
            if item is None or item.status != GEN_PROCESSING:
                return OUTCOME_WAITING
            try:
                outcome = self._advance(db, report_id, item, target_language)
            except Exception as e:
                db.rollback()
                item = db.query(ReportItem).filter(ReportItem.id == item_id).first()
                item.error_message = truncate_error(f"Status check failed: {e}")
                db.commit()
                logger.warning(f"ステータス照会失敗: item_id={item_id} - {e}")
                return OUTCOME_ERROR
            db.commit()
            return outcome
        except Exception as e:
            db.rollback()
            logger.error(f"ステータス照会処理エラー: item_id={item_id} - {e}")
            return OUTCOME_ERROR
        finally:
            db.close()

    def _advance(self, db: Session, report_id: int, item: ReportItem, target_language: Optional[str]) -> str:
        needs_secondary = bool(target_language)
        if (needs_secondary or item.secondary_job_id) and self.secondary_provider is None:
            return self._fail(item, TRANSLATION_UNAVAILABLE_ERROR)

        # 二次変換の照会
        if item.secondary_job_id:
            status = self.secondary_provider.get_secondary_status(item.secondary_job_id)
            if status.status == STATUS_COMPLETED:
                if not status.result_url:
                    return self._fail(item, "Translation completed but video_url is empty")
                return self._finish(report_id, item, status.result_url)
            if status.status == STATUS_FAILED:
                return self._fail(item, status.error or "Translation failed")
            if status.status == STATUS_NOT_FOUND:
                # 次回照会で一次結果から再投入する
                logger.warning(f"二次ジョブが見つからないためクリア: item_id={item.id}, job_id={item.secondary_job_id}")
                item.secondary_job_id = None
            return OUTCOME_WAITING

        # 一次生成済みで二次変換が未投入
        if item.primary_result_url and needs_secondary:
            return self._start_secondary(item, item.primary_result_url, target_language)

        if not item.provider_job_id:
            return OUTCOME_WAITING

        status = self.provider.get_status(item.provider_job_id)
        if status.status == STATUS_COMPLETED:
            if not status.result_url:
                return self._fail(item, "Generation completed but video_url is empty")
            if needs_secondary:
                item.primary_result_url = status.result_url
                return self._start_secondary(item, status.result_url, target_language)
            return self._finish(report_id, item, status.result_url)
        if status.status == STATUS_FAILED:
            return self._fail(item, status.error or "Generation failed")
        if status.status == STATUS_NOT_FOUND:
            return self._fail(item, f"Generation job not found: {item.provider_job_id}")
        return OUTCOME_WAITING

    def _start_secondary(self, item: ReportItem, result_url: str, language: str) -> str:
        item.secondary_job_id = self.secondary_provider.submit_secondary(result_url, language)
        item.updated_at = now_jst()
        logger.info(f"二次変換投入: item_id={item.id}, job_id={item.secondary_job_id}, language={language}")
        return OUTCOME_WAITING

    def _fail(self, item: ReportItem, error: str) -> str:
        item.status = GEN_FAILED
        item.artifact_url = None
        item.error_message = truncate_error(error)
        item.updated_at = now_jst()
        logger.warning(f"生成失敗: item_id={item.id} - {item.error_message}")
        return OUTCOME_FAILED

    def _finish(self, report_id: int, item: ReportItem, result_url: str) -> str:
        token = make_artifact_token(report_id, item.id)
        if self.cache is not None and self.cache_inline:
            try:
                self.cache.ensure_cached(token, result_url)
            except Exception as e:
                return self._fail(item, f"Failed to download video to local: {e}")

        item.status = GEN_DONE
        item.artifact_url = result_url
        item.error_message = None
        item.generated_at = now_jst()
        item.updated_at = item.generated_at
        logger.info(f"生成完了: item_id={item.id}")

        if self.cache is not None and not self.cache_inline:
            self.cache.warm_async(token, result_url)
        return OUTCOME_DONE
