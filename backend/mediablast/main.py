from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from mediablast.core.config import settings
from mediablast.core.exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from mediablast.core.logging import setup_logging, get_logger
from mediablast.core.rate_limit import limiter, rate_limit_exceeded_handler
from mediablast.routers import health, reports, share, webhooks_wablas
from mediablast.services.pipeline import shutdown_pipeline

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG)
    logger.info("アプリケーション起動")
    yield
    shutdown_pipeline(wait=False)
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


# --- ドメイン例外 → HTTP ---

@app.exception_handler(ValidationError)
async def domain_validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConcurrencyConflict)
async def conflict_handler(request: Request, exc: ConcurrencyConflict):
    return JSONResponse(status_code=409, content={"detail": f"処理中のため実行できません: {exc}"})


# --- バリデーションエラー日本語化 ---
_FIELD_JA = {
    "name": "名前",
    "phone": "電話番号",
    "message_template": "メッセージテンプレート",
    "delivery_template": "配信テンプレート",
    "target_language": "翻訳先言語",
    "recipients": "宛先一覧",
    "preview_only": "プレビュー専用",
    "active": "緊急停止フラグ",
    "page": "ページ",
    "per_page": "表示件数",
    "report_id": "レポートID",
    "item_id": "アイテムID",
}


def _translate_error(err: dict) -> str:
    t = err.get("type", "")
    ctx = err.get("ctx", {})
    loc = err.get("loc", [])
    field = str(loc[-1]) if loc else ""
    fj = _FIELD_JA.get(field, field)

    if t == "missing":
        return f"{fj}は必須です"
    if t in ("int_parsing", "int_type"):
        return f"{fj}は数値で入力してください"
    if t == "greater_than_equal":
        return f"{fj}は{ctx.get('ge', '')}以上の値を入力してください"
    if t == "less_than_equal":
        return f"{fj}は{ctx.get('le', '')}以下の値を入力してください"
    if t == "string_type":
        return f"{fj}は文字列で入力してください"
    if t == "bool_parsing":
        return f"{fj}は真偽値で入力してください"
    if t == "list_type":
        return f"{fj}は配列で入力してください"
    return f"{fj}: 入力値が不正です"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [_translate_error(e) for e in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": "、".join(messages)})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(reports.router)
app.include_router(share.router)
app.include_router(webhooks_wablas.router)
