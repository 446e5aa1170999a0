"""配信チャネル (WhatsApp / Wablas) クライアント"""
import re
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from mediablast.core.config import settings
from mediablast.core.exceptions import ProviderPermanentError, ProviderTransientError
from mediablast.core.logging import get_logger

logger = get_logger(__name__)

INVALID_PHONE_ERROR = "Invalid phone number format"

# 送信レスポンス・状態照会でチャネルが返すステータスのうち失敗扱いのもの
_FAILED_STATUSES = {"failed", "error", "rejected", "cancel"}


@dataclass
class OutboundMessage:
    correlation_id: str
    phone: str
    message: str


@dataclass
class SendResult:
    correlation_id: str
    success: bool
    phone: str = ""
    message_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DeliveryStatusInfo:
    status: Optional[str]
    updated_at: Optional[str] = None
    error: Optional[str] = None


class DeliveryChannel(Protocol):
    def send_one(self, phone: str, message: str) -> SendResult: ...

    def send_batch(self, messages: list[OutboundMessage]) -> list[SendResult]: ...

    def get_delivery_status(self, message_id: str) -> DeliveryStatusInfo: ...


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    国際形式 (先頭+なし) に正規化する。
    08xxx → 628xxx, 62xxx はそのまま, 9〜13桁の番号は 62 を付与。
    10桁未満は None (無効)。
    """
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("62"):
        result = digits
    elif digits.startswith("0"):
        result = "62" + digits[1:]
    elif 9 <= len(digits) <= 13:
        result = "62" + digits
    else:
        result = digits
    if len(result) < 10:
        return None
    return result


class WablasChannel:
    """Wablas API (v1 単発 / v2 一括)"""

    def __init__(self, base_url: str, token: str, client: httpx.Client = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(
                settings.PROVIDER_READ_TIMEOUT,
                connect=settings.PROVIDER_CONNECT_TIMEOUT,
            ),
        )

    def _post(self, path: str, context: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.post(
                self.base_url + path, headers={"Authorization": self.token}, **kwargs
            )
        except httpx.TransportError as e:
            raise ProviderTransientError(f"{context}: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProviderTransientError(f"{context}: HTTP {resp.status_code}")
        return resp

    def send_one(self, phone: str, message: str) -> SendResult:
        """1件送信 (v1, form-urlencoded)"""
        formatted = normalize_phone(phone)
        if formatted is None:
            return SendResult(correlation_id="", success=False, phone=phone or "", error=INVALID_PHONE_ERROR)

        resp = self._post(
            "/api/send-message", "wablas send",
            data={"phone": formatted, "message": message},
        )
        payload = _json(resp)
        if resp.status_code != 200 or not payload.get("status"):
            error = payload.get("message") or f"HTTP {resp.status_code}"
            return SendResult(correlation_id="", success=False, phone=formatted, error=str(error))

        messages = (payload.get("data") or {}).get("messages") or []
        first = messages[0] if messages else {}
        status = first.get("status")
        return SendResult(
            correlation_id="",
            success=(status or "").lower() not in _FAILED_STATUSES,
            phone=formatted,
            message_id=first.get("id"),
            status=status,
            error=first.get("message") if (status or "").lower() in _FAILED_STATUSES else None,
        )

    def send_batch(self, messages: list[OutboundMessage]) -> list[SendResult]:
        """
        一括送信 (v2)。レスポンスは要求と同じ順序で返るので、
        電話番号ではなくインデックスで correlation_id を対応付ける (同一番号の重複に対応)。

        HTTP 429/5xx・通信エラーは ProviderTransientError を送出。
        """
        results: list[SendResult] = []
        valid: list[OutboundMessage] = []
        data = []
        for m in messages:
            formatted = normalize_phone(m.phone)
            if formatted is None:
                results.append(SendResult(
                    correlation_id=m.correlation_id, success=False, phone=m.phone or "",
                    error=INVALID_PHONE_ERROR,
                ))
                continue
            valid.append(m)
            data.append({"phone": formatted, "message": m.message})

        if not data:
            logger.warning("一括送信: 有効な電話番号がありません")
            return results

        resp = self._post(
            "/api/v2/send-message", "wablas bulk send",
            json={"data": data, "retry": True, "priority": False},
        )
        payload = _json(resp)
        entries = (payload.get("data") or {}).get("messages") if isinstance(payload.get("data"), dict) else None

        if resp.status_code != 200 or not payload.get("status") or not isinstance(entries, list):
            error = payload.get("message") or f"HTTP {resp.status_code}"
            logger.error(f"一括送信APIエラー: {error}")
            for m in valid:
                results.append(SendResult(
                    correlation_id=m.correlation_id, success=False, phone=m.phone,
                    error=f"API error: {error}",
                ))
            return results

        for index, m in enumerate(valid):
            entry = entries[index] if index < len(entries) else None
            if not isinstance(entry, dict):
                results.append(SendResult(
                    correlation_id=m.correlation_id, success=False, phone=m.phone,
                    error="No response from API for this item",
                ))
                continue
            status = str(entry.get("status") or "unknown")
            detail = str(entry.get("message") or "")
            failed = status.lower() in _FAILED_STATUSES or "not registered" in detail.lower()
            results.append(SendResult(
                correlation_id=m.correlation_id,
                success=not failed,
                phone=str(entry.get("phone") or m.phone),
                message_id=str(entry["id"]) if entry.get("id") else None,
                status=status,
                error=(detail or f"Status: {status}") if failed else None,
            ))
        return results

    def get_delivery_status(self, message_id: str) -> DeliveryStatusInfo:
        """配信状態照会: pending/sent/delivered/read/cancel/rejected/failed"""
        try:
            resp = self._client.get(
                self.base_url + "/api/report/message",
                params={"message_id": message_id},
                headers={"Authorization": self.token},
            )
        except httpx.TransportError as e:
            raise ProviderTransientError(f"wablas status: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProviderTransientError(f"wablas status: HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise ProviderPermanentError(f"wablas status: HTTP {resp.status_code}")

        payload = _json(resp)
        entries = payload.get("message")
        if not payload.get("status") or not isinstance(entries, list):
            error = entries if isinstance(entries, str) else "Unknown error"
            return DeliveryStatusInfo(status=None, error=error)
        if not entries:
            return DeliveryStatusInfo(status=None, error="Message not found in response")
        entry = entries[0]
        date = entry.get("date") or {}
        return DeliveryStatusInfo(status=entry.get("status"), updated_at=date.get("updated_at"))


def _json(resp: httpx.Response) -> dict:
    try:
        payload = resp.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def build_delivery_channel() -> WablasChannel:
    return WablasChannel(settings.WABLAS_API_URL, settings.WABLAS_API_TOKEN)
