import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class Settings:
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")
    gemini_base_url: str = os.getenv(
        "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
    )
    gemini_caption_model: str = os.getenv("GEMINI_CAPTION_MODEL", "gemini-2.5-flash")
    gemini_image_model: str = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image-preview")
    api_timeout_s: float = float(os.getenv("GEMINI_TIMEOUT_S", "60"))
    fetch_timeout_s: float = float(os.getenv("MCP_FETCH_TIMEOUT_S", "30"))
    max_image_bytes: int = int(os.getenv("MCP_MAX_IMAGE_BYTES", str(20 * 1024 * 1024)))
    max_prompt_chars: int = int(os.getenv("MCP_MAX_PROMPT_CHARS", "2000"))
    max_message_bytes: int = int(os.getenv("MCP_MAX_MESSAGE_BYTES", str(4 * 1024 * 1024)))
    retry_max_attempts: int = int(os.getenv("MCP_RETRY_MAX_ATTEMPTS", "3"))
    retry_base_delay_s: float = float(os.getenv("MCP_RETRY_BASE_DELAY_S", "0.5"))
    retry_max_delay_s: float = float(os.getenv("MCP_RETRY_MAX_DELAY_S", "8.0"))
    strict_lifecycle: bool = _env_bool("MCP_STRICT_LIFECYCLE", "false")
    allow_http_sources: bool = _env_bool("MCP_ALLOW_HTTP_SOURCES", "false")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_json: bool = _env_bool("LOG_JSON", "true")


settings = Settings()


def resolve_api_key(explicit: str | None, env_value: str) -> str | None:
    """Command line key wins over the environment; blank values count as unset."""
    if explicit is not None:
        return explicit.strip() or None
    return env_value.strip() or None
