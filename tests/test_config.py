"""Unit tests for environment-based settings."""

import json
import logging

import pytest

from config import Settings

ENV_VARS = [
    "LINE_CHANNEL_ACCESS_TOKEN", "LINE_CHANNEL_SECRET", "VISION_BACKEND", "VISION_TEST_MODE",
    "VISION_FALLBACK", "HUGGINGFACE_API_KEY", "HUGGINGFACE_MODEL", "GOOGLE_APPLICATION_CREDENTIALS",
    "IMAGE_REPLY_MODE", "HTTP_TIMEOUT", "PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in ENV_VARS:
        # setenv first so values written later by load_dotenv get cleaned up too
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def test_defaults(tmp_path) -> None:
    settings = Settings.from_env(str(tmp_path / "missing.env"))

    assert settings == Settings()
    assert settings.huggingface_model == "nateraw/food"
    assert settings.image_reply_mode == "push"
    assert settings.http_timeout == 30.0
    assert not settings.line_configured


def test_reads_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("LINE_CHANNEL_ACCESS_TOKEN", "token")
    monkeypatch.setenv("LINE_CHANNEL_SECRET", "secret")
    monkeypatch.setenv("VISION_BACKEND", "Classifier")
    monkeypatch.setenv("VISION_TEST_MODE", "true")
    monkeypatch.setenv("HUGGINGFACE_MODEL", "  ")
    monkeypatch.setenv("IMAGE_REPLY_MODE", "reply")
    monkeypatch.setenv("HTTP_TIMEOUT", "15")

    settings = Settings.from_env(str(tmp_path / "missing.env"))

    assert settings.line_configured
    assert settings.vision_backend == "classifier"
    assert settings.vision_test_mode is True
    assert settings.huggingface_model == "nateraw/food"
    assert settings.image_reply_mode == "reply"
    assert settings.http_timeout == 15.0


def test_dotenv_file_does_not_override_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("LINE_CHANNEL_SECRET=from-file\nHUGGINGFACE_API_KEY=hf-from-file\n")
    monkeypatch.setenv("LINE_CHANNEL_SECRET", "from-env")

    settings = Settings.from_env(str(env_file))

    assert settings.line_channel_secret == "from-env"
    assert settings.huggingface_api_key == "hf-from-file"


def test_unknown_backend_falls_back_to_default(monkeypatch: pytest.MonkeyPatch, tmp_path, caplog) -> None:
    monkeypatch.setenv("VISION_BACKEND", "magic")
    monkeypatch.setenv("IMAGE_REPLY_MODE", "later")

    with caplog.at_level(logging.WARNING, logger="config"):
        settings = Settings.from_env(str(tmp_path / "missing.env"))

    assert settings.vision_backend == "auto"
    assert settings.image_reply_mode == "push"
    warnings = [json.loads(r.getMessage()) for r in caplog.records if r.levelno == logging.WARNING]
    assert {w["name"] for w in warnings} == {"VISION_BACKEND", "IMAGE_REPLY_MODE"}


@pytest.mark.parametrize("name, value, attribute, default", [
    ("HTTP_TIMEOUT", "thirty", "http_timeout", 30.0),
    ("HTTP_TIMEOUT", "-5", "http_timeout", 30.0),
    ("HTTP_TIMEOUT", "nan", "http_timeout", 30.0),
    ("PORT", "80a", "port", 8080),
    ("PORT", "0", "port", 8080),
])
def test_bad_numbers_fall_back_to_default(
    monkeypatch: pytest.MonkeyPatch, tmp_path, caplog, name, value, attribute, default
) -> None:
    monkeypatch.setenv(name, value)

    with caplog.at_level(logging.WARNING, logger="config"):
        settings = Settings.from_env(str(tmp_path / "missing.env"))

    assert getattr(settings, attribute) == default
    assert name in caplog.text


def test_valid_port(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("PORT", "9000")

    assert Settings.from_env(str(tmp_path / "missing.env")).port == 9000
