"""
成果物ローカルキャッシュ

ファイル構成 (token = make_artifact_token(report_id, item_id)):
    {token}.mp4       配信用ファイル
    {token}.raw.mp4   後処理前の元ファイル (後処理有効時のみ)
    {token}.sig       後処理設定の署名
    locks/{token}.lock プロセス間ロック (filelock)

ロックは非ブロッキング。他ワーカーが保持中ならスキップする。
ロックはOSのファイルロックなので、保持プロセスが落ちればカーネルが解放する。
ロックファイルは削除しない。
"""
import os
import re
import shutil
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import httpx
from filelock import FileLock, Timeout

from mediablast.core.config import settings
from mediablast.core.exceptions import ArtifactTooLargeError, ProviderTransientError
from mediablast.core.logging import get_logger
from mediablast.services.postprocess import PostProcessConfig, run_postprocess

logger = get_logger(__name__)

CACHE_CACHED = "cached"
CACHE_ALREADY = "already_cached"
CACHE_SKIPPED = "skipped"

SIG_UPDATED = "updated"
SIG_CURRENT = "current"
SIG_MISSING = "missing"

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_CHUNK_SIZE = 64 * 1024


class ArtifactCache:
    def __init__(
        self,
        cache_dir: str,
        max_bytes: int = 200 * 1024 * 1024,
        postprocess: PostProcessConfig = None,
        http_client: httpx.Client = None,
        pool_size: int = 4,
    ):
        self.cache_dir = Path(cache_dir)
        self.max_bytes = max_bytes
        self.postprocess = postprocess or PostProcessConfig.from_settings()
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(
                settings.ARTIFACT_DOWNLOAD_READ_TIMEOUT,
                connect=settings.ARTIFACT_DOWNLOAD_CONNECT_TIMEOUT,
            ),
            follow_redirects=True,
        )
        self._pool_size = pool_size
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_guard = threading.Lock()

    # --- パス ---

    def _check_token(self, token: str):
        if not token or not _TOKEN_RE.match(token):
            raise ValueError(f"invalid cache token: {token!r}")

    def path_for(self, token: str) -> Path:
        self._check_token(token)
        return self.cache_dir / f"{token}.mp4"

    def _raw_path(self, token: str) -> Path:
        return self.cache_dir / f"{token}.raw.mp4"

    def _sig_path(self, token: str) -> Path:
        return self.cache_dir / f"{token}.sig"

    def _lock_path(self, token: str) -> Path:
        return self.cache_dir / "locks" / f"{token}.lock"

    def is_cached(self, token: str) -> bool:
        path = self.path_for(token)
        return path.is_file() and path.stat().st_size > 0

    # --- ロック ---

    def _try_lock(self, token: str) -> Optional[FileLock]:
        """非ブロッキングでロック取得。取れなければ None"""
        lock_path = self._lock_path(token)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(lock_path), timeout=0)
        try:
            lock.acquire()
        except Timeout:
            return None
        return lock

    # --- 公開API ---

    def ensure_cached(self, token: str, source_url: str) -> str:
        """
        成果物をキャッシュに取り込む。

        Returns:
            CACHE_CACHED: 今回ダウンロードした
            CACHE_ALREADY: 既にキャッシュ済み
            CACHE_SKIPPED: 他ワーカーがロック保持中
        """
        target = self.path_for(token)
        if not source_url:
            raise ValueError("source_url is empty")
        lock = self._try_lock(token)
        if lock is None:
            logger.debug(f"キャッシュ処理中のためスキップ: token={token}")
            return CACHE_SKIPPED

        tmp_download = self.cache_dir / f".{token}.{os.getpid()}.{threading.get_ident()}.download"
        tmp_processed = self.cache_dir / f".{token}.{os.getpid()}.{threading.get_ident()}.processed"
        try:
            if target.is_file() and target.stat().st_size > 0:
                return CACHE_ALREADY

            size = self._download(source_url, tmp_download)

            if self.postprocess.enabled:
                run_postprocess(str(tmp_download), str(tmp_processed), self.postprocess)
                os.replace(tmp_download, self._raw_path(token))
                os.replace(tmp_processed, target)
            else:
                os.replace(tmp_download, target)
            self._write_signature(token)

            logger.info(f"キャッシュ保存: token={token}, size={size}", extra={"token": token})
            return CACHE_CACHED
        finally:
            for tmp in (tmp_download, tmp_processed):
                try:
                    tmp.unlink()
                except FileNotFoundError:
                    pass
            lock.release()

    def ensure_up_to_date(self, token: str) -> str:
        """
        保存済み署名と現在の後処理設定を比較し、違えばその場で再処理する。

        Returns: SIG_UPDATED / SIG_CURRENT / SIG_MISSING / CACHE_SKIPPED
        """
        target = self.path_for(token)
        if not target.is_file():
            return SIG_MISSING
        current = self.postprocess.signature()
        if self.read_signature(token) == current:
            return SIG_CURRENT
        lock = self._try_lock(token)
        if lock is None:
            return CACHE_SKIPPED

        tmp = self.cache_dir / f".{token}.{os.getpid()}.{threading.get_ident()}.reprocess"
        try:
            raw = self._raw_path(token)
            source = raw if raw.is_file() else target
            if self.postprocess.enabled:
                if source == target:
                    # 元ファイルを退避してから処理する
                    shutil.copyfile(target, raw)
                    source = raw
                run_postprocess(str(source), str(tmp), self.postprocess)
                os.replace(tmp, target)
            elif source != target:
                shutil.copyfile(source, tmp)
                os.replace(tmp, target)
                raw.unlink()
            self._write_signature(token)
            logger.info(f"キャッシュ再処理: token={token}, signature={current}")
            return SIG_UPDATED
        finally:
            try:
                tmp.unlink()
            except FileNotFoundError:
                pass
            lock.release()

    def warm_async(self, token: str, source_url: str) -> Future:
        """キャッシュプールに ensure_cached を投入。戻り値は待たなくてよい"""
        future = self._get_executor().submit(self.ensure_cached, token, source_url)
        future.add_done_callback(lambda f: self._log_warm_result(token, f))
        return future

    def delete(self, token: str) -> bool:
        """キャッシュファイル一式を削除。何か削除したら True"""
        removed = False
        for path in (self.path_for(token), self._raw_path(token), self._sig_path(token)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                pass
        return removed

    def cleanup_expired(self, retention_days: int) -> int:
        """保持期間を過ぎたキャッシュを削除。処理中 (ロックあり) は対象外"""
        if not self.cache_dir.is_dir():
            return 0
        threshold = time.time() - retention_days * 86400
        deleted = 0
        for path in self.cache_dir.glob("*.mp4"):
            if path.name.endswith(".raw.mp4"):
                continue
            token = path.name[: -len(".mp4")]
            try:
                if path.stat().st_mtime >= threshold:
                    continue
            except FileNotFoundError:
                continue
            lock = self._try_lock(token)
            if lock is None:
                continue
            try:
                if self.delete(token):
                    deleted += 1
            finally:
                lock.release()
        if deleted:
            logger.info(f"期限切れキャッシュ削除: {deleted}件 (保持{retention_days}日)")
        return deleted

    def read_signature(self, token: str) -> Optional[str]:
        try:
            return self._sig_path(token).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None

    def shutdown(self, wait: bool = True):
        with self._executor_guard:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None

    # --- 内部 ---

    def _download(self, url: str, dest: Path) -> int:
        """上限バイト数付きでストリームダウンロード (途中ファイルは呼び出し側が削除)"""
        written = 0
        try:
            with self._client.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    raise ProviderTransientError(f"artifact download failed: HTTP {resp.status_code}")
                length = resp.headers.get("Content-Length")
                if length and length.isdigit() and int(length) > self.max_bytes:
                    raise ArtifactTooLargeError(
                        f"artifact too large: {length} bytes (max {self.max_bytes})"
                    )
                with open(dest, "wb") as f:
                    for chunk in resp.iter_bytes(_CHUNK_SIZE):
                        written += len(chunk)
                        if written > self.max_bytes:
                            raise ArtifactTooLargeError(
                                f"artifact too large: over {self.max_bytes} bytes"
                            )
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"artifact download failed: {e}") from e
        if written == 0:
            raise ProviderTransientError("artifact download returned empty body")
        return written

    def _write_signature(self, token: str):
        sig_path = self._sig_path(token)
        tmp = sig_path.with_name(sig_path.name + f".{os.getpid()}.tmp")
        tmp.write_text(self.postprocess.signature(), encoding="utf-8")
        os.replace(tmp, sig_path)

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_guard:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._pool_size, thread_name_prefix="artifact-cache"
                )
            return self._executor

    def _log_warm_result(self, token: str, future: Future):
        exc = future.exception()
        if exc is not None:
            logger.warning(f"キャッシュウォームアップ失敗: token={token} - {exc}")


_cache: ArtifactCache = None
_cache_guard = threading.Lock()


def get_artifact_cache() -> ArtifactCache:
    """プロセス共通のキャッシュ (設定値から生成)"""
    global _cache
    with _cache_guard:
        if _cache is None:
            _cache = ArtifactCache(
                cache_dir=settings.ARTIFACT_CACHE_DIR,
                max_bytes=settings.ARTIFACT_DOWNLOAD_MAX_BYTES,
                pool_size=settings.CACHE_POOL_SIZE,
            )
        return _cache
