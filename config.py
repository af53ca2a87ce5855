"""
Process configuration, resolved once at startup from environment variables
(and an optional .env file) and injected into the app.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from cloud_logging import log_structured

VISION_BACKENDS = ("auto", "label_detection", "classifier", "local", "test")
IMAGE_REPLY_MODES = ("push", "reply")
DEFAULT_HUGGINGFACE_MODEL = "nateraw/food"

logger = logging.getLogger(__name__)


def _env(name: str) -> Optional[str]:
    value = os.environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_flag(name: str) -> bool:
    return (_env(name) or "").lower() in ("1", "true", "yes", "on")


def _env_choice(name: str, choices, default: str) -> str:
    value = (_env(name) or default).lower()
    if value not in choices:
        log_structured(logger, "WARNING", "Invalid configuration value, using default",
                       name=name, value=value, default=default, choices=list(choices))
        return default
    return value


def _env_number(name: str, convert, default):
    value = _env(name)
    if value is None:
        return default
    try:
        number = convert(value)
    except ValueError:
        number = None
    if number is None or not number > 0:
        log_structured(logger, "WARNING", "Invalid configuration value, using default",
                       name=name, value=value, default=default)
        return default
    return number


@dataclass(frozen=True)
class Settings:
    line_channel_access_token: Optional[str] = None
    line_channel_secret: Optional[str] = None
    vision_backend: str = "auto"
    vision_test_mode: bool = False
    vision_fallback: str = "none"
    huggingface_api_key: Optional[str] = None
    huggingface_model: str = DEFAULT_HUGGINGFACE_MODEL
    google_credentials: Optional[str] = None
    image_reply_mode: str = "push"
    http_timeout: float = 30.0
    port: int = 8080

    @property
    def line_configured(self) -> bool:
        return bool(self.line_channel_access_token and self.line_channel_secret)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        """
        Reads every setting from the environment. Values already present in
        the environment win over the .env file.
        """
        load_dotenv(dotenv_path, override=False)
        return cls(
            line_channel_access_token=_env("LINE_CHANNEL_ACCESS_TOKEN"),
            line_channel_secret=_env("LINE_CHANNEL_SECRET"),
            vision_backend=_env_choice("VISION_BACKEND", VISION_BACKENDS, "auto"),
            vision_test_mode=_env_flag("VISION_TEST_MODE"),
            vision_fallback=_env_choice("VISION_FALLBACK", ("local", "none"), "none"),
            huggingface_api_key=_env("HUGGINGFACE_API_KEY"),
            huggingface_model=_env("HUGGINGFACE_MODEL") or DEFAULT_HUGGINGFACE_MODEL,
            google_credentials=_env("GOOGLE_APPLICATION_CREDENTIALS"),
            image_reply_mode=_env_choice("IMAGE_REPLY_MODE", IMAGE_REPLY_MODES, "push"),
            http_timeout=_env_number("HTTP_TIMEOUT", float, 30.0),
            port=_env_number("PORT", int, 8080),
        )
