"""生成プロバイダ (クリップ生成・二次変換) クライアント

プロバイダのステータスは以下に正規化する:
    pending / processing / completed / failed / not_found
"""
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from mediablast.core.config import settings
from mediablast.core.exceptions import ProviderPermanentError, ProviderTransientError
from mediablast.core.logging import get_logger

logger = get_logger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_NOT_FOUND = "not_found"

_STATUS_ALIASES = {
    "created": STATUS_PENDING,
    "queued": STATUS_PENDING,
    "pending": STATUS_PENDING,
    "waiting": STATUS_PENDING,
    "started": STATUS_PROCESSING,
    "processing": STATUS_PROCESSING,
    "running": STATUS_PROCESSING,
    "done": STATUS_COMPLETED,
    "completed": STATUS_COMPLETED,
    "success": STATUS_COMPLETED,
    "succeeded": STATUS_COMPLETED,
    "error": STATUS_FAILED,
    "failed": STATUS_FAILED,
    "rejected": STATUS_FAILED,
}


def normalize_status(raw: Optional[str]) -> str:
    """プロバイダ固有のステータス文字列を正規化。不明なものは processing 扱い"""
    return _STATUS_ALIASES.get((raw or "").strip().lower(), STATUS_PROCESSING)


@dataclass
class JobSpec:
    """生成ジョブ入力"""
    script: str
    avatar: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass
class JobStatus:
    status: str
    result_url: Optional[str] = None
    error: Optional[str] = None


class GenerationProvider(Protocol):
    def submit(self, spec: JobSpec) -> str: ...

    def get_status(self, job_id: str) -> JobStatus: ...


class SecondaryTransformProvider(Protocol):
    def submit_secondary(self, result_url: str, language: str) -> str: ...

    def get_secondary_status(self, job_id: str) -> JobStatus: ...


def _raise_for_status(resp: httpx.Response, context: str):
    """HTTPステータスを例外分類に変換 (429/5xx → 一時的, その他4xx → 恒久的)"""
    if resp.status_code < 400:
        return
    body = resp.text[:500]
    if resp.status_code == 429 or resp.status_code >= 500:
        raise ProviderTransientError(f"{context}: HTTP {resp.status_code} {body}")
    raise ProviderPermanentError(f"{context}: HTTP {resp.status_code} {body}")


def _data(payload) -> dict:
    """{"data": {...}} 形式のラップを外す"""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload if isinstance(payload, dict) else {}


class _HttpProvider:
    def __init__(self, base_url: str, api_key: str, client: httpx.Client = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(
                settings.PROVIDER_READ_TIMEOUT,
                connect=settings.PROVIDER_CONNECT_TIMEOUT,
            ),
        )

    def _request(self, method: str, path: str, context: str, **kwargs) -> httpx.Response:
        try:
            return self._client.request(
                method, self.base_url + path, headers=self._headers(), **kwargs
            )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"{context}: timeout ({e})") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"{context}: {e}") from e

    def _headers(self) -> dict:
        return {"Authorization": f"Basic {self.api_key}", "Accept": "application/json"}

    def close(self):
        self._client.close()


class ClipsGenerationProvider(_HttpProvider):
    """クリップ生成API (POST /clips, GET /clips/{id})"""

    def submit(self, spec: JobSpec) -> str:
        if not spec.script or not spec.script.strip():
            raise ProviderPermanentError("script is empty")
        body = {
            "presenter_id": spec.avatar,
            "script": {"type": "text", "input": spec.script},
        }
        resp = self._request("POST", "/clips", "clip submit", json=body)
        _raise_for_status(resp, "clip submit")
        job_id = _data(resp.json()).get("id")
        if not job_id:
            raise ProviderTransientError("clip submit: response has no id")
        return str(job_id)

    def get_status(self, job_id: str) -> JobStatus:
        resp = self._request("GET", f"/clips/{job_id}", "clip status")
        if resp.status_code == 404:
            return JobStatus(status=STATUS_NOT_FOUND, error="job not found")
        _raise_for_status(resp, "clip status")
        data = _data(resp.json())
        result_url = data.get("result_url")
        if not result_url and isinstance(data.get("result"), dict):
            result_url = data["result"].get("url")
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("description") or error.get("kind") or str(error)
        return JobStatus(
            status=normalize_status(data.get("status")),
            result_url=result_url,
            error=error,
        )


class VideoTranslationProvider(_HttpProvider):
    """二次変換 (翻訳) API"""

    def _headers(self) -> dict:
        return {"X-Api-Key": self.api_key, "Accept": "application/json"}

    def submit_secondary(self, result_url: str, language: str) -> str:
        if not result_url:
            raise ProviderPermanentError("video_url is required")
        if not language:
            raise ProviderPermanentError("output_language is required")
        body = {"video_url": result_url, "output_language": normalize_language(language)}
        resp = self._request("POST", "/v2/video_translate", "translate submit", json=body)
        _raise_for_status(resp, "translate submit")
        data = _data(resp.json())
        job_id = data.get("video_translate_id") or data.get("id")
        if not job_id:
            raise ProviderTransientError("translate submit: response has no id")
        return str(job_id)

    def get_secondary_status(self, job_id: str) -> JobStatus:
        resp = self._request("GET", f"/v2/video_translate/{job_id}", "translate status")
        if resp.status_code == 404:
            return JobStatus(status=STATUS_NOT_FOUND, error="translation not found")
        _raise_for_status(resp, "translate status")
        data = _data(resp.json())
        return JobStatus(
            status=normalize_status(data.get("status")),
            result_url=data.get("video_url") or data.get("url"),
            error=data.get("error") or data.get("message"),
        )


_LANGUAGES = {
    "en": "English",
    "id": "Indonesian",
    "in": "Indonesian",
    "ja": "Japanese",
    "jp": "Japanese",
    "th": "Thai",
    "vi": "Vietnamese",
    "km": "Khmer",
    "zh": "Chinese",
    "cn": "Chinese",
}


def normalize_language(language: str) -> str:
    """言語コード/名称を翻訳APIの言語名に正規化 ("ja-JP" → "Japanese")"""
    value = (language or "").strip()
    primary = value.lower().split("-")[0]
    if primary in _LANGUAGES:
        return _LANGUAGES[primary]
    for name in set(_LANGUAGES.values()):
        if value.lower() == name.lower():
            return name
    return value


def build_generation_provider() -> ClipsGenerationProvider:
    return ClipsGenerationProvider(settings.GENERATION_API_URL, settings.GENERATION_API_KEY)


def build_translation_provider() -> VideoTranslationProvider:
    return VideoTranslationProvider(settings.TRANSLATION_API_URL, settings.TRANSLATION_API_KEY)
