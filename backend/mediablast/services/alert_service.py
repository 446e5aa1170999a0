"""運用アラート (Resend API メール送信)"""
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape

from mediablast.core.config import settings
from mediablast.core.logging import get_logger

logger = get_logger(__name__)

JST = ZoneInfo("Asia/Tokyo")

template_dir = Path(__file__).parent.parent / "templates" / "email"
jinja_env = Environment(
    loader=FileSystemLoader(str(template_dir)),
    autoescape=select_autoescape(["html"]),
)


def render_error_alert(
    report_id: int = None,
    report_name: str = None,
    error_message: str = "",
    details: dict = None,
    occurred_at: datetime = None,
) -> str:
    """エラーアラートHTMLを生成"""
    template = jinja_env.get_template("error_alert.html")
    return template.render(
        site_name=settings.SITE_NAME,
        report_id=report_id,
        report_name=report_name,
        error_message=error_message,
        details=details,
        occurred_at=occurred_at or datetime.now(JST),
    )


def send_error_alert(
    report_id: int = None,
    report_name: str = None,
    error_message: str = "",
    details: dict = None,
) -> int:
    """
    エラーアラートを ALERT_EMAILS の全宛先に即時送信 (ベストエフォート)

    Returns: 送信できた件数
    """
    recipients = settings.alert_emails_list
    if not recipients:
        logger.warning("エラーアラート送信先 (ALERT_EMAILS) が未設定です")
        return 0
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY 未設定のためエラーアラートを送信しません")
        return 0

    if report_name:
        subject = f"【{settings.SITE_NAME}】[エラー] {report_name}"
    else:
        subject = f"【{settings.SITE_NAME}】[エラー] システムエラー"

    html = render_error_alert(
        report_id=report_id,
        report_name=report_name,
        error_message=error_message,
        details=details,
    )

    resend.api_key = settings.RESEND_API_KEY
    sent = 0
    for email in recipients:
        try:
            resend.Emails.send({
                "from": settings.RESEND_FROM_EMAIL,
                "to": [email],
                "subject": subject,
                "html": html,
            })
            sent += 1
            logger.info(f"エラーアラート送信: to={email}, report_id={report_id}")
        except Exception as e:
            logger.error(f"エラーアラート送信失敗: to={email} - {e}")
    return sent
