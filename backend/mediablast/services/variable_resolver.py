"""変数置換エンジン (:field 形式)"""
import re
from typing import Optional
from mediablast.core.logging import get_logger

logger = get_logger(__name__)

# :name, :linkvideo など。英字で始まる最長一致
TOKEN_PATTERN = re.compile(r":([A-Za-z][A-Za-z0-9_]*)")

DEFAULT_SCRIPT_TEMPLATE = "Halo :name, terima kasih telah menjadi bagian dari keluarga kami."
DEFAULT_DELIVERY_TEMPLATE = "Halo :name, berikut video personal untuk Anda: :link"


def resolve_variables(text: str, fields: dict) -> str:
    """
    :field トークンを置換する。

    - fields に無いトークンはそのまま残す (エラーにしない)
    - None は空文字として扱う
    - 置換結果は再走査しない (値の中の ":xxx" は置換されない)
    """
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in fields:
            return match.group(0)
        value = fields[key]
        return "" if value is None else str(value)

    return TOKEN_PATTERN.sub(_replace, text)


def build_recipient_fields(
    name: Optional[str],
    phone: Optional[str],
    link: Optional[str] = None,
    extra: Optional[dict] = None,
) -> dict:
    """宛先属性から置換用dictを構築"""
    fields = dict(extra or {})
    fields["name"] = name or ""
    fields["phone"] = phone or ""
    if link is not None:
        # 旧テンプレート互換: :linkvideo も同じリンク
        fields["link"] = link
        fields["linkvideo"] = link
    return fields


def find_tokens(text: str) -> list[str]:
    """テンプレート内のトークン名一覧 (出現順・重複なし)"""
    seen = []
    for m in TOKEN_PATTERN.finditer(text or ""):
        if m.group(1) not in seen:
            seen.append(m.group(1))
    return seen
