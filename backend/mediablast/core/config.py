from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://blastuser:blastpassword@db:3306/mediablast?charset=utf8mb4"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # セキュリティ (共有リンク・キャッシュトークン用HMACキー)
    ARTIFACT_TOKEN_SECRET: str = "dev-secret-change-me"

    # 生成プロバイダ (クリップ生成)
    GENERATION_API_URL: str = "https://api.d-id.com"
    GENERATION_API_KEY: str = ""
    # 二次変換プロバイダ (翻訳)
    TRANSLATION_API_URL: str = "https://api.heygen.com"
    TRANSLATION_API_KEY: str = ""
    PROVIDER_CONNECT_TIMEOUT: float = 10.0
    PROVIDER_READ_TIMEOUT: float = 60.0
    PROVIDER_ERROR_MAX_LENGTH: int = 1000

    # 生成ワーカー
    GENERATION_PARALLELISM: int = 8
    GENERATION_PROGRESS_INTERVAL: int = 50
    STATUS_POLL_PARALLELISM: int = 8
    STATUS_PARALLEL_THRESHOLD: int = 10

    # 配信チャネル (Wablas)
    WABLAS_API_URL: str = "https://tegal.wablas.com"
    WABLAS_API_TOKEN: str = ""
    WABLAS_WEBHOOK_ENABLED: bool = True
    WABLAS_WEBHOOK_SECRET: str = ""
    WABLAS_TIMEZONE: str = "Asia/Jakarta"
    DELIVERY_BATCH_SIZE: int = 100
    DELIVERY_MAX_ATTEMPTS: int = 3
    DELIVERY_RETRY_DELAY_SECONDS: float = 2.0
    DELIVERY_BATCH_DELAY_SECONDS: float = 0.5
    DELIVERY_STATUS_SYNC_ENABLED: bool = False
    CLAIM_TIMEOUT_MINUTES: int = 30

    # 成果物キャッシュ
    ARTIFACT_CACHE_DIR: str = "/data/artifacts"
    ARTIFACT_DOWNLOAD_MAX_BYTES: int = 200 * 1024 * 1024
    ARTIFACT_DOWNLOAD_CONNECT_TIMEOUT: float = 10.0
    ARTIFACT_DOWNLOAD_READ_TIMEOUT: float = 120.0
    ARTIFACT_RETENTION_DAYS: int = 30
    ARTIFACT_WARMUP_BATCH_SIZE: int = 50
    CACHE_POOL_SIZE: int = 4

    # 後処理 (ffmpeg 音声ノーマライズ)
    POSTPROCESS_ENABLED: bool = False
    FFMPEG_PATH: str = "ffmpeg"
    AUDIO_FILTER: str = "volume=12dB,loudnorm=I=-3:TP=-1.0:LRA=4,alimiter=limit=0.99"
    AUDIO_BITRATE: str = "320k"
    OUTPUT_WIDTH: int = 720
    OUTPUT_HEIGHT: int = 1280
    POSTPROCESS_TIMEOUT_SECONDS: int = 480

    # アラート (Resend)
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = "noreply@example.com"
    ALERT_EMAILS: str = ""

    # サービス設定
    SITE_URL: str = "http://localhost:8000"
    SITE_NAME: str = "Media Blast"
    ALLOWED_ORIGINS: str = "http://localhost:8000,http://localhost:3000"

    # 環境
    ENV: str = "development"
    DEBUG: bool = True

    @field_validator(
        "GENERATION_PARALLELISM",
        "GENERATION_PROGRESS_INTERVAL",
        "STATUS_POLL_PARALLELISM",
        "DELIVERY_BATCH_SIZE",
        "DELIVERY_MAX_ATTEMPTS",
        "ARTIFACT_DOWNLOAD_MAX_BYTES",
        "CACHE_POOL_SIZE",
    )
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("DELIVERY_RETRY_DELAY_SECONDS", "DELIVERY_BATCH_DELAY_SECONDS")
    @classmethod
    def _must_not_be_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def alert_emails_list(self) -> list[str]:
        return [e.strip() for e in self.ALERT_EMAILS.split(",") if e.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
