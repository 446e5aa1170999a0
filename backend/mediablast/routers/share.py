"""共有リンク: 成果物動画の配信"""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse, RedirectResponse
from sqlalchemy.orm import Session

from mediablast.core.database import get_db
from mediablast.core.logging import get_logger
from mediablast.core.rate_limit import limiter, SHARE_RATE_LIMIT
from mediablast.core.security import parse_artifact_token
from mediablast.models.report_item import ReportItem, GEN_DONE
from mediablast.services.artifact_cache import ArtifactCache, get_artifact_cache
from mediablast.services.postprocess import PostProcessError

logger = get_logger(__name__)

router = APIRouter(prefix="/api/share", tags=["share"])


def artifact_cache_dep() -> ArtifactCache:
    return get_artifact_cache()


@router.get("/{token}.mp4")
@limiter.limit(SHARE_RATE_LIMIT)
def stream_artifact(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
    cache: ArtifactCache = Depends(artifact_cache_dep),
):
    """
    キャッシュ済みならファイルを返す。
    未キャッシュならプロバイダURLへリダイレクトし、裏でキャッシュを温める。
    """
    parsed = parse_artifact_token(token)
    if parsed is None:
        raise HTTPException(status_code=404, detail="動画が見つかりません")
    report_id, item_id = parsed

    if cache.is_cached(token):
        try:
            cache.ensure_up_to_date(token)
        except (PostProcessError, OSError) as e:
            logger.warning(f"キャッシュ再処理失敗 (既存ファイルを配信): token={token} - {e}")
        return FileResponse(
            str(cache.path_for(token)),
            media_type="video/mp4",
            filename=f"{token}.mp4",
            content_disposition_type="inline",
        )

    item = db.query(ReportItem).filter(
        ReportItem.id == item_id,
        ReportItem.report_id == report_id,
    ).first()
    if not item or item.status != GEN_DONE or not item.artifact_url:
        raise HTTPException(status_code=404, detail="動画が見つかりません")

    cache.warm_async(token, item.artifact_url)
    return RedirectResponse(item.artifact_url, status_code=302)
