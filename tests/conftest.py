"""Shared fakes for the LINE delivery gateway and webhook events."""

import pytest
from linebot.models import ImageMessage, MessageEvent, SourceUser, TextMessage

from errors import ReplyTokenConsumed, TransportFailure


class FakeMessenger:
    """In-memory stand-in for LineMessenger that records every message."""

    def __init__(self, images=None):
        self.images = dict(images or {})
        self.sent = []
        self.used_tokens = set()

    def reply_text(self, reply_token, text):
        if reply_token in self.used_tokens:
            raise ReplyTokenConsumed(reply_token)
        self.used_tokens.add(reply_token)
        self.sent.append(("reply", reply_token, text))

    def push_text(self, user_id, text):
        self.sent.append(("push", user_id, text))

    def get_image_content(self, message_id):
        if message_id not in self.images:
            raise TransportFailure(f"content for {message_id} not found")
        return self.images[message_id]


def text_event(text, reply_token="r-text", user_id="U1"):
    return MessageEvent(
        reply_token=reply_token,
        source=SourceUser(user_id=user_id),
        message=TextMessage(id="t1", text=text),
    )


def image_event(message_id, reply_token="r-image", user_id="U1"):
    return MessageEvent(
        reply_token=reply_token,
        source=SourceUser(user_id=user_id),
        message=ImageMessage(id=message_id),
    )


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger(images={"m1": b"image-one", "m2": b"image-two", "m3": b"image-three"})
