import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import (
    FastAPI,
    HTTPException,
    Request,
    File,
    UploadFile,
    BackgroundTasks
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

# LINE Bot SDK imports
from linebot import WebhookParser
from linebot.exceptions import InvalidSignatureError

from calorie import estimate_calories
from cloud_logging import configure_logging, log_structured
from config import Settings
from dispatcher import EventDispatcher
from errors import RecognitionUnavailable
from messaging import LineMessenger
from vision import RecognitionBackend, create_recognizer

# ------------------------------------------------------------------------------
# Configure Logging (structured for Google Cloud, also works locally)
# ------------------------------------------------------------------------------
configure_logging()
logger = logging.getLogger("food_bot")


# ------------------------------------------------------------------------------
# FastAPI Application
# ------------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    messenger: Optional[LineMessenger] = None,
    recognizer: Optional[RecognitionBackend] = None,
    parser: Optional[WebhookParser] = None,
) -> FastAPI:
    """
    Builds the app. Configuration and clients are resolved once here and
    shared read-only by every request.
    """
    settings = settings or Settings.from_env()

    if not settings.line_configured:
        log_structured(
            logger, "WARNING",
            "LINE_CHANNEL_ACCESS_TOKEN or LINE_CHANNEL_SECRET is not set, webhook is disabled",
        )
    if messenger is None and settings.line_configured:
        messenger = LineMessenger.from_access_token(
            settings.line_channel_access_token, timeout=settings.http_timeout
        )
    if parser is None and settings.line_channel_secret:
        parser = WebhookParser(settings.line_channel_secret)
    if recognizer is None:
        recognizer = create_recognizer(settings)

    dispatcher = None
    if messenger is not None:
        dispatcher = EventDispatcher(messenger, recognizer, settings.image_reply_mode)

    app = FastAPI(title="LINE Food Bot")

    # Enable CORS for all origins (customize as needed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.recognizer = recognizer

    # --------------------------------------------------------------------------
    # Health check
    # --------------------------------------------------------------------------
    def health():
        return {
            "status": "ok",
            "message": "LINE Food Bot is running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "lineBotConfigured": dispatcher is not None and parser is not None,
            "visionBackend": recognizer.name,
            "visionRemote": recognizer.remote,
        }

    app.get("/")(health)
    app.get("/webhook")(health)

    # --------------------------------------------------------------------------
    # LINE Webhook Endpoint
    # --------------------------------------------------------------------------
    @app.post("/webhook")
    async def webhook(request: Request, background_tasks: BackgroundTasks):
        """
        LINE Messaging API webhook endpoint. Answers once every event had its
        synchronous step; image analysis continues in the background.
        """
        if dispatcher is None or parser is None:
            return JSONResponse(status_code=500, content={"error": "LINE Bot is not configured"})

        signature = request.headers.get("X-Line-Signature", "")
        body = await request.body()

        try:
            events = parser.parse(body.decode("utf-8"), signature)
        except InvalidSignatureError:
            raise HTTPException(
                status_code=400,
                detail="Invalid signature. Check your channel access token/channel secret."
            )
        except Exception as e:
            log_structured(logger, "ERROR", "Could not parse webhook body", error=str(e))
            return JSONResponse(status_code=500, content={"error": "Invalid webhook body"})

        try:
            await run_in_threadpool(dispatcher.dispatch, events, background_tasks.add_task)
        except Exception as e:
            log_structured(logger, "ERROR", "Webhook handling failed", error=str(e))
            return JSONResponse(status_code=500, content={"error": "Webhook handling failed"})
        return "OK"

    # --------------------------------------------------------------------------
    # /classify Endpoint (Direct API for Testing)
    # --------------------------------------------------------------------------
    @app.post("/classify")
    def classify_image(file: UploadFile = File(...)):
        """
        Accepts an image upload and returns the recognition result and the
        calorie estimate, without going through LINE.
        """
        image_data = file.file.read()
        if not image_data:
            raise HTTPException(status_code=400, detail="Empty image upload")

        try:
            recognition = recognizer.identify(image_data)
        except RecognitionUnavailable as e:
            raise HTTPException(status_code=422, detail=str(e))

        estimate = estimate_calories(recognition.label)
        return {"recognition": recognition.to_dict(), "estimate": estimate.to_dict()}

    return app


app = create_app()

# ------------------------------------------------------------------------------
# Uvicorn Entry Point (if running locally or Docker without Gunicorn)
# ------------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=app.state.settings.port,
        log_level="info",
        timeout_keep_alive=0
    )
