import json
import logging
import sys


def configure_logging(level=logging.INFO):
    """
    Configure root logging once: message-only lines on stdout, so that
    Cloud Run hands every JSON line to Cloud Logging as a structured entry.
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def log_structured(logger: logging.Logger, severity: str, message: str, **fields):
    """
    Logs one JSON object with a Cloud Logging severity and extra fields.

    :param logger: Logger to emit on.
    :param severity: Cloud Logging severity, e.g. "INFO", "WARNING", "ERROR".
    :param message: Human readable message.
    """
    payload = {"severity": severity, "message": message}
    payload.update(fields)
    level = logging.getLevelName(severity)
    if not isinstance(level, int):
        level = logging.INFO
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
