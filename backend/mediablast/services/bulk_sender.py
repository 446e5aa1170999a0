"""一括送信 + リトライ

入力メッセージはチャネルの上限件数ごとのサブバッチに分割して送る。
各入力に対して必ず1件の終端結果 (成功 / 恒久エラー / "Failed after N attempts") を返す。
"""
import time
from typing import Callable

from mediablast.core.config import settings
from mediablast.core.exceptions import ProviderError
from mediablast.core.logging import get_logger
from mediablast.services.delivery_channel import DeliveryChannel, OutboundMessage, SendResult

logger = get_logger(__name__)

# 宛先起因のエラー (リトライしても成功しない)
PERMANENT_ERROR_KEYWORDS = (
    "not registered",
    "tidak terdaftar",
    "invalid phone",
    "blocked",
    "rejected",
)

NO_RESPONSE_ERROR = "No response from API for this item"


def is_retryable_error(error: str) -> bool:
    if not error:
        return True
    lowered = error.lower()
    return not any(keyword in lowered for keyword in PERMANENT_ERROR_KEYWORDS)


def split_batches(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BulkRetrySender:
    def __init__(
        self,
        channel: DeliveryChannel,
        batch_size: int = None,
        retry_delay: float = None,
        batch_delay: float = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.channel = channel
        self.batch_size = batch_size or settings.DELIVERY_BATCH_SIZE
        self.retry_delay = settings.DELIVERY_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.batch_delay = settings.DELIVERY_BATCH_DELAY_SECONDS if batch_delay is None else batch_delay
        self._sleep = sleep

    def send_batch(self, messages: list[OutboundMessage]) -> list[SendResult]:
        """リトライなし。サブバッチごとに1回だけ送信"""
        results = []
        batches = split_batches(messages, self.batch_size)
        for number, batch in enumerate(batches, start=1):
            try:
                results.extend(self._send_once(batch))
            except ProviderError as e:
                logger.error(f"一括送信失敗: batch {number}/{len(batches)} - {e}")
                results.extend(_failed(m, str(e)) for m in batch)
            if number < len(batches):
                self._sleep(self.batch_delay)
        return results

    def send_batch_with_retry(self, messages: list[OutboundMessage], max_attempts: int = None) -> list[SendResult]:
        """リトライ可能な失敗のみ max_attempts 回まで再送"""
        max_attempts = max_attempts or settings.DELIVERY_MAX_ATTEMPTS
        if not messages:
            logger.warning("一括送信: 送信対象なし")
            return []

        batches = split_batches(messages, self.batch_size)
        logger.info(
            f"一括送信開始: {len(messages)}件, バッチ数={len(batches)}, "
            f"バッチサイズ={self.batch_size}, 最大試行={max_attempts}"
        )

        all_results = []
        for number, batch in enumerate(batches, start=1):
            batch_results = self._send_with_retry(batch, max_attempts, number, len(batches))
            all_results.extend(batch_results)
            success = sum(1 for r in batch_results if r.success)
            logger.info(f"バッチ {number}/{len(batches)} 完了: 成功={success}, 失敗={len(batch) - success}")
            if number < len(batches):
                self._sleep(self.batch_delay)

        success = sum(1 for r in all_results if r.success)
        logger.info(f"一括送信完了: 合計={len(all_results)}, 成功={success}, 失敗={len(all_results) - success}")
        return all_results

    def _send_with_retry(self, batch: list[OutboundMessage], max_attempts: int, number: int, total: int) -> list[SendResult]:
        results = []
        pending = list(batch)

        for attempt in range(1, max_attempts + 1):
            if not pending:
                break
            logger.info(f"バッチ {number}/{total} 試行 {attempt}/{max_attempts} ({len(pending)}件)")
            last_attempt = attempt == max_attempts

            try:
                attempt_results = self._send_once(pending)
            except ProviderError as e:
                logger.error(f"バッチ {number}/{total} 試行 {attempt} エラー: {e}")
                if e.retryable and not last_attempt:
                    self._sleep(self.retry_delay)
                    continue
                error = _final_error(max_attempts, str(e)) if e.retryable else str(e)
                results.extend(_failed(m, error) for m in pending)
                break

            by_id = {m.correlation_id: m for m in pending}
            retry = []
            for result in attempt_results:
                if result.success:
                    results.append(result)
                elif not is_retryable_error(result.error):
                    results.append(result)
                elif last_attempt:
                    result.error = _final_error(max_attempts, result.error)
                    results.append(result)
                else:
                    retry.append(by_id[result.correlation_id])
            pending = retry

            if pending and not last_attempt:
                logger.info(f"{len(pending)}件をリトライ: {self.retry_delay}s 待機")
                self._sleep(self.retry_delay)

        return results

    def _send_once(self, batch: list[OutboundMessage]) -> list[SendResult]:
        """チャネルへ1回送信し、入力1件につき結果1件になるよう揃える"""
        returned = {}
        for result in self.channel.send_batch(batch):
            if result.correlation_id not in returned:
                returned[result.correlation_id] = result
        return [returned.get(m.correlation_id) or _failed(m, NO_RESPONSE_ERROR) for m in batch]


def _failed(message: OutboundMessage, error: str) -> SendResult:
    return SendResult(correlation_id=message.correlation_id, success=False, phone=message.phone, error=error)


def _final_error(max_attempts: int, error: str) -> str:
    return f"Failed after {max_attempts} attempts: {error}"
