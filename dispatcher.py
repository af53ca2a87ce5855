"""
Routes parsed LINE webhook events: text messages are echoed back, image
messages go through download -> recognize -> estimate -> deliver.

Image delivery follows IMAGE_REPLY_MODE:
    - "push" (default): the reply token acknowledges the image right away,
      the pipeline runs as a background job and pushes the result to the
      sender. Pipeline latency never races the reply token's lifetime.
    - "reply": the pipeline runs inline and its single message consumes the
      reply token. A slow backend can make LINE reject the late reply.
"""
import logging
import threading
import traceback
from contextlib import contextmanager
from functools import partial
from typing import Callable, Iterable, Optional

from linebot.models import ImageMessage, MessageEvent, TextMessage

from calorie import CalorieEstimate, estimate_calories
from cloud_logging import log_structured
from errors import DeliveryFailure, RecognitionUnavailable, TransportFailure
from messaging import LineMessenger
from vision import RecognitionBackend, RecognitionResult

logger = logging.getLogger(__name__)

TEXT_REPLY_PREFIX = "收到你的訊息："
IMAGE_ACK_TEXT = "收到你的圖片！我正在分析食物內容..."
DOWNLOAD_FAILED_TEXT = "抱歉，無法下載圖片內容，請稍後再試！"
UNRECOGNIZED_TEXT = "抱歉，我暫時無法從圖片辨識食物內容，請換張清晰的餐點照再試一次喔！"
FAILURE_TEXT = "抱歉，圖片分析時發生錯誤，請稍後再試！"

OUTCOME_DELIVERED = "delivered"
OUTCOME_DOWNLOAD_FAILED = "download_failed"
OUTCOME_UNRECOGNIZED = "unrecognized"
OUTCOME_FAILED = "failed"
OUTCOME_NO_TARGET = "no_target"


def format_result(recognition: RecognitionResult, estimate: CalorieEstimate) -> str:
    confidence = recognition.score * 100
    return (
        f"我辨識到：{estimate.food_name}（信心 {confidence:.1f}%）\n"
        f"估計熱量：約 {estimate.estimated_calories} {estimate.unit}"
    )


def run_inline(fn: Callable, *args):
    fn(*args)


class EventDispatcher:
    def __init__(
        self,
        messenger: LineMessenger,
        recognizer: RecognitionBackend,
        image_reply_mode: str = "push",
    ):
        if image_reply_mode not in ("push", "reply"):
            raise ValueError(f"Unknown image reply mode: {image_reply_mode}")
        self.messenger = messenger
        self.recognizer = recognizer
        self.image_reply_mode = image_reply_mode
        self._sender_locks = {}
        self._locks_guard = threading.Lock()

    # --------------------------------------------------------------------------
    # Batch entry point
    # --------------------------------------------------------------------------
    def dispatch(self, events: Iterable, submit: Optional[Callable] = None) -> int:
        """
        Handles every event of one webhook batch in order. A failing event is
        logged and skipped; its siblings still run.

        :param events: Parsed webhook events.
        :param submit: Called as submit(fn, *args) to run a background job.
                       Defaults to running the job inline.
        :return: Number of events handled without error.
        """
        submit = submit or run_inline
        handled = 0
        for event in events:
            try:
                self.handle_event(event, submit)
                handled += 1
            except Exception as e:
                log_structured(
                    logger, "ERROR", "Event handling failed",
                    event_type=getattr(event, "type", None), error=str(e),
                    traceback=traceback.format_exc(),
                )
        return handled

    def handle_event(self, event, submit: Callable):
        if not isinstance(event, MessageEvent):
            log_structured(logger, "INFO", "Ignoring event", event_type=getattr(event, "type", None))
            return

        if isinstance(event.message, TextMessage):
            self.handle_text(event)
        elif isinstance(event.message, ImageMessage):
            self.handle_image(event, submit)
        else:
            log_structured(logger, "INFO", "Ignoring message", message_type=event.message.type)

    # --------------------------------------------------------------------------
    # Text
    # --------------------------------------------------------------------------
    def handle_text(self, event: MessageEvent):
        self._deliver(
            partial(self.messenger.reply_text, event.reply_token),
            f"{TEXT_REPLY_PREFIX}{event.message.text}",
        )

    # --------------------------------------------------------------------------
    # Image
    # --------------------------------------------------------------------------
    def handle_image(self, event: MessageEvent, submit: Callable):
        message_id = event.message.id
        user_id = getattr(event.source, "user_id", None)
        log_structured(logger, "INFO", "Image message received", message_id=message_id, user_id=user_id)

        if self.image_reply_mode == "reply":
            self.run_image_pipeline(message_id, partial(self.messenger.reply_text, event.reply_token))
            return

        self._deliver(partial(self.messenger.reply_text, event.reply_token), IMAGE_ACK_TEXT)
        submit(self.process_image_for_sender, user_id, message_id)

    def process_image_for_sender(self, user_id: Optional[str], message_id: str) -> str:
        """
        Background job: runs the image pipeline and pushes the outcome to the
        sender. Jobs for the same sender never overlap.
        """
        if not user_id:
            log_structured(logger, "WARNING", "No user id on image event, cannot push result",
                           message_id=message_id)
            return OUTCOME_NO_TARGET

        with self._serialized(user_id):
            return self.run_image_pipeline(message_id, partial(self.messenger.push_text, user_id))

    def run_image_pipeline(self, message_id: str, deliver: Callable[[str], None]) -> str:
        """
        download -> recognize -> estimate -> deliver, exactly one message out.
        Never raises.
        """
        try:
            try:
                image = self.messenger.get_image_content(message_id)
            except TransportFailure as e:
                log_structured(logger, "ERROR", "Image download failed", message_id=message_id, error=str(e))
                self._deliver(deliver, DOWNLOAD_FAILED_TEXT)
                return OUTCOME_DOWNLOAD_FAILED

            try:
                recognition = self.recognizer.identify(image)
            except RecognitionUnavailable:
                self._deliver(deliver, UNRECOGNIZED_TEXT)
                return OUTCOME_UNRECOGNIZED

            estimate = estimate_calories(recognition.label)
            log_structured(
                logger, "INFO", "Calorie estimate",
                message_id=message_id, recognition=recognition.to_dict(), estimate=estimate.to_dict(),
            )
            self._deliver(deliver, format_result(recognition, estimate))
            return OUTCOME_DELIVERED
        except Exception as e:
            log_structured(
                logger, "ERROR", "Image pipeline failed",
                message_id=message_id, error=str(e), traceback=traceback.format_exc(),
            )
            self._deliver(deliver, FAILURE_TEXT)
            return OUTCOME_FAILED

    # --------------------------------------------------------------------------
    # Helpers
    # --------------------------------------------------------------------------
    def _deliver(self, send: Callable[[str], None], text: str) -> bool:
        try:
            send(text)
            return True
        except DeliveryFailure as e:
            log_structured(logger, "ERROR", "Message delivery failed", error=str(e),
                           error_type=type(e).__name__)
            return False

    @contextmanager
    def _serialized(self, user_id: str):
        with self._locks_guard:
            entry = self._sender_locks.setdefault(user_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._sender_locks[user_id]
