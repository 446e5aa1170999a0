"""成果物の後処理 (ffmpeg による音声ノーマライズ・解像度統一)"""
import hashlib
import subprocess
from dataclasses import dataclass

from mediablast.core.config import settings
from mediablast.core.logging import get_logger

logger = get_logger(__name__)

# 処理内容を変えたら上げる (署名に含まれるので既存キャッシュが再処理される)
PIPELINE_VERSION = "1"


class PostProcessError(Exception):
    """ffmpeg 実行失敗"""


@dataclass(frozen=True)
class PostProcessConfig:
    enabled: bool
    ffmpeg_path: str
    audio_filter: str
    audio_bitrate: str
    width: int
    height: int
    timeout_seconds: int

    @classmethod
    def from_settings(cls) -> "PostProcessConfig":
        return cls(
            enabled=settings.POSTPROCESS_ENABLED,
            ffmpeg_path=settings.FFMPEG_PATH,
            audio_filter=settings.AUDIO_FILTER,
            audio_bitrate=settings.AUDIO_BITRATE,
            width=settings.OUTPUT_WIDTH,
            height=settings.OUTPUT_HEIGHT,
            timeout_seconds=settings.POSTPROCESS_TIMEOUT_SECONDS,
        )

    def signature(self) -> str:
        """
        後処理設定の署名。キャッシュ済みファイルの .sig と比較して
        グローバル設定変更後の再処理要否を判定する。
        """
        if not self.enabled:
            return "raw"
        material = "|".join([
            PIPELINE_VERSION,
            self.audio_filter,
            self.audio_bitrate,
            f"{self.width}x{self.height}",
        ])
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


def build_command(src: str, dst: str, config: PostProcessConfig) -> list[str]:
    """ffmpeg コマンドライン (縦長にパディングしつつ音声を正規化)"""
    scale = (
        f"scale={config.width}:{config.height}:force_original_aspect_ratio=decrease,"
        f"pad={config.width}:{config.height}:(ow-iw)/2:(oh-ih)/2"
    )
    return [
        config.ffmpeg_path,
        "-y",
        "-i", src,
        "-vf", scale,
        "-af", config.audio_filter,
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-c:a", "aac",
        "-b:a", config.audio_bitrate,
        "-movflags", "+faststart",
        "-f", "mp4",
        dst,
    ]


def run_postprocess(src: str, dst: str, config: PostProcessConfig):
    """src を処理して dst に書き出す。失敗時は PostProcessError"""
    cmd = build_command(src, dst, config)
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=config.timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise PostProcessError(f"ffmpeg timeout after {config.timeout_seconds}s") from e
    except OSError as e:
        raise PostProcessError(f"ffmpeg not executable: {e}") from e

    if proc.returncode != 0:
        stderr = (proc.stderr or b"").decode("utf-8", errors="replace")[-500:]
        raise PostProcessError(f"ffmpeg exited with {proc.returncode}: {stderr}")
    logger.info(f"後処理完了: {dst}")
