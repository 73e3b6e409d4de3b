from pydantic import BaseModel, ConfigDict
from functools import lru_cache
import os
from dotenv import load_dotenv

load_dotenv()


def _csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [p.strip() for p in raw.split(',') if p.strip()]


class Settings(BaseModel):
    # Provider keys come from the environment (.env not committed); an empty key
    # makes the matching provider report itself unavailable.
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")
    elevenlabs_api_key: str = os.getenv("ELEVENLABS_API_KEY") or os.getenv("ELEVEN_LABS_API_KEY", "")

    database_url: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./localizer.db")
    app_env: str = os.getenv("APP_ENV", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    upload_dir: str = os.getenv("UPLOAD_DIR", "uploads")
    work_dir: str = os.getenv("WORK_DIR", "storage")
    max_upload_size_mb: int = int(os.getenv("MAX_UPLOAD_MB", "500"))

    whisper_model: str = os.getenv("WHISPER_MODEL", "base")
    transcription_models: list[str] = _csv("TRANSCRIPTION_MODELS", "openai,gemini")
    fallback_providers: list[str] = _csv("FALLBACK_PROVIDERS", "gemini,elevenlabs")
    translation_model: str = os.getenv("TRANSLATION_MODEL", "gemini")

    max_segment_seconds: float = float(os.getenv("MAX_SEGMENT_SECONDS", "7.0"))
    detection_sample_seconds: int = int(os.getenv("DETECTION_SAMPLE_SECONDS", "30"))

    processing_timeout_seconds: float = float(os.getenv("PROCESSING_TIMEOUT_SECONDS", "600"))
    translation_timeout_seconds: float = float(os.getenv("TRANSLATION_TIMEOUT_SECONDS", "300"))
    dubbing_timeout_seconds: float = float(os.getenv("DUBBING_TIMEOUT_SECONDS", "600"))
    provider_http_timeout: float = float(os.getenv("PROVIDER_HTTP_TIMEOUT", "120"))
    dubbing_watermark: bool = os.getenv("DUBBING_WATERMARK", "true").lower() in ("1", "true", "yes")

    model_config = ConfigDict(arbitrary_types_allowed=True)


@lru_cache
def get_settings() -> Settings:
    return Settings()
