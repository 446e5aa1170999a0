import base64
import binascii
from cryptography.hazmat.primitives import constant_time, hashes, hmac
from mediablast.core.config import settings

SIGNATURE_LENGTH = 16  # 切り詰め後のHMACバイト数


def _get_key(secret: str = None) -> bytes:
    """HMACキーをバイト列で取得"""
    key = secret or settings.ARTIFACT_TOKEN_SECRET
    if not key:
        raise ValueError("ARTIFACT_TOKEN_SECRET が設定されていません")
    return key.encode("utf-8")


def _sign(report_id: int, item_id: int, secret: str = None) -> bytes:
    h = hmac.HMAC(_get_key(secret), hashes.SHA256())
    h.update(f"{report_id}:{item_id}".encode("utf-8"))
    return h.finalize()[:SIGNATURE_LENGTH]


def make_artifact_token(report_id: int, item_id: int, secret: str = None) -> str:
    """
    (report_id, item_id) から決定的なトークンを生成。
    キャッシュキーと共有リンクの両方に使う。

    形式: "{report_id}-{item_id}-{署名(base64url)}"
    """
    sig = base64.urlsafe_b64encode(_sign(report_id, item_id, secret)).decode("ascii").rstrip("=")
    return f"{report_id}-{item_id}-{sig}"


def parse_artifact_token(token: str, secret: str = None) -> tuple[int, int] | None:
    """トークンを検証して (report_id, item_id) を返す。不正ならNone"""
    parts = (token or "").split("-", 2)
    if len(parts) != 3:
        return None
    try:
        report_id = int(parts[0])
        item_id = int(parts[1])
        padded = parts[2] + "=" * (-len(parts[2]) % 4)
        sig = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (ValueError, binascii.Error):
        return None

    if not constant_time.bytes_eq(sig, _sign(report_id, item_id, secret)):
        return None
    return report_id, item_id


def verify_shared_secret(provided: str | None, expected: str) -> bool:
    """Webhook の共有シークレットを定数時間で比較。未設定なら検証しない"""
    if not expected:
        return True
    return constant_time.bytes_eq((provided or "").strip().encode("utf-8"), expected.encode("utf-8"))
