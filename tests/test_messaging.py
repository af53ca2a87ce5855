"""Unit tests for the LINE messaging wrapper, with LineBotApi mocked."""

from unittest.mock import MagicMock

import pytest
import requests
from linebot.exceptions import LineBotApiError
from linebot.models import TextSendMessage
from linebot.models.error import Error

from errors import ConfigurationMissing, DeliveryFailure, ReplyTokenConsumed, TransportFailure
from messaging import LineMessenger


def api_error(status_code=400, message="Invalid reply token") -> LineBotApiError:
    return LineBotApiError(status_code=status_code, headers={}, error=Error(message=message))


@pytest.fixture
def api() -> MagicMock:
    return MagicMock()


@pytest.fixture
def messenger(api: MagicMock) -> LineMessenger:
    return LineMessenger(api, timeout=15)


class TestReply:
    def test_reply_sends_text_message(self, messenger: LineMessenger, api: MagicMock) -> None:
        messenger.reply_text("token-1", "hello")

        token, message = api.reply_message.call_args.args
        assert token == "token-1"
        assert isinstance(message, TextSendMessage)
        assert message.text == "hello"
        assert api.reply_message.call_args.kwargs["timeout"] == 15

    def test_second_reply_with_same_token_fails(self, messenger: LineMessenger, api: MagicMock) -> None:
        messenger.reply_text("token-1", "first")

        with pytest.raises(ReplyTokenConsumed):
            messenger.reply_text("token-1", "second")
        assert api.reply_message.call_count == 1

    def test_failed_reply_still_consumes_token(self, messenger: LineMessenger, api: MagicMock) -> None:
        api.reply_message.side_effect = api_error()

        with pytest.raises(DeliveryFailure):
            messenger.reply_text("token-1", "first")
        with pytest.raises(ReplyTokenConsumed):
            messenger.reply_text("token-1", "second")

    def test_missing_token(self, messenger: LineMessenger) -> None:
        with pytest.raises(DeliveryFailure):
            messenger.reply_text("", "hello")

    def test_transport_error_is_delivery_failure(self, messenger: LineMessenger, api: MagicMock) -> None:
        api.reply_message.side_effect = requests.ConnectionError("reset")

        with pytest.raises(DeliveryFailure):
            messenger.reply_text("token-2", "hello")


class TestPush:
    def test_push_can_repeat(self, messenger: LineMessenger, api: MagicMock) -> None:
        messenger.push_text("U1", "one")
        messenger.push_text("U1", "two")

        assert api.push_message.call_count == 2
        assert api.push_message.call_args.args[0] == "U1"

    def test_push_error_is_delivery_failure(self, messenger: LineMessenger, api: MagicMock) -> None:
        api.push_message.side_effect = api_error(status_code=429, message="Too many requests")

        with pytest.raises(DeliveryFailure, match="429"):
            messenger.push_text("U1", "one")


class TestImageContent:
    def test_returns_bytes(self, messenger: LineMessenger, api: MagicMock) -> None:
        api.get_message_content.return_value = MagicMock(content=b"\xff\xd8jpeg")

        assert messenger.get_image_content("m1") == b"\xff\xd8jpeg"
        api.get_message_content.assert_called_once_with("m1", timeout=15)

    def test_api_error_is_transport_failure(self, messenger: LineMessenger, api: MagicMock) -> None:
        api.get_message_content.side_effect = api_error(status_code=404, message="Not found")

        with pytest.raises(TransportFailure):
            messenger.get_image_content("m1")

    def test_timeout_is_transport_failure(self, messenger: LineMessenger, api: MagicMock) -> None:
        api.get_message_content.side_effect = requests.Timeout("slow")

        with pytest.raises(TransportFailure):
            messenger.get_image_content("m1")


def test_from_access_token_requires_token() -> None:
    with pytest.raises(ConfigurationMissing):
        LineMessenger.from_access_token("")
