"""
Thin wrapper over the LINE Messaging API client: reply, push, and image
content download, with SDK and transport errors mapped to our own kinds.
"""
import logging
import threading
from collections import OrderedDict

import requests
from linebot import LineBotApi
from linebot.exceptions import LineBotApiError
from linebot.models import TextSendMessage

from cloud_logging import log_structured
from errors import ConfigurationMissing, DeliveryFailure, ReplyTokenConsumed, TransportFailure

logger = logging.getLogger(__name__)

# Reply tokens live for about a minute; remembering the last few thousand is plenty.
USED_TOKEN_CACHE_SIZE = 4096


class LineMessenger:
    def __init__(self, line_bot_api: LineBotApi, timeout: float = 30.0):
        self.api = line_bot_api
        self.timeout = timeout
        self._used_tokens = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_access_token(cls, access_token: str, timeout: float = 30.0) -> "LineMessenger":
        if not access_token:
            raise ConfigurationMissing("LINE_CHANNEL_ACCESS_TOKEN is not set")
        return cls(LineBotApi(access_token, timeout=timeout), timeout=timeout)

    def _consume_token(self, reply_token: str):
        with self._lock:
            if reply_token in self._used_tokens:
                raise ReplyTokenConsumed(f"Reply token {reply_token[:8]}... was already used")
            self._used_tokens[reply_token] = True
            while len(self._used_tokens) > USED_TOKEN_CACHE_SIZE:
                self._used_tokens.popitem(last=False)

    def reply_text(self, reply_token: str, text: str):
        """
        Sends the one synchronous reply a reply token allows. A second call
        with the same token raises ReplyTokenConsumed without reaching LINE.
        """
        if not reply_token:
            raise DeliveryFailure("Missing reply token")
        self._consume_token(reply_token)
        try:
            self.api.reply_message(reply_token, TextSendMessage(text=text), timeout=self.timeout)
        except LineBotApiError as e:
            raise DeliveryFailure(f"Reply failed ({e.status_code}): {e.error.message}") from e
        except requests.RequestException as e:
            raise DeliveryFailure(f"Reply failed: {e}") from e

    def push_text(self, user_id: str, text: str):
        try:
            self.api.push_message(user_id, TextSendMessage(text=text), timeout=self.timeout)
        except LineBotApiError as e:
            raise DeliveryFailure(f"Push failed ({e.status_code}): {e.error.message}") from e
        except requests.RequestException as e:
            raise DeliveryFailure(f"Push failed: {e}") from e

    def get_image_content(self, message_id: str) -> bytes:
        """
        Downloads the bytes of an image message from the LINE content API.
        """
        try:
            message_content = self.api.get_message_content(message_id, timeout=self.timeout)
            image_data = message_content.content
        except LineBotApiError as e:
            raise TransportFailure(f"Content download failed ({e.status_code}): {e.error.message}") from e
        except requests.RequestException as e:
            raise TransportFailure(f"Content download failed: {e}") from e

        log_structured(logger, "INFO", "Image content downloaded", message_id=message_id, size=len(image_data))
        return image_data
