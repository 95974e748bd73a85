import logging
import re

from pythonjsonlogger import jsonlogger

from .config import Settings


class ContactRedactingFilter(logging.Filter):
    _email_re = re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")
    _phone_re = re.compile(r"(?<![\w-])\+?\d[\d\s()-]{8,}\d\b")

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except Exception:
            return True
        msg = self._email_re.sub("[REDACTED_EMAIL]", msg)
        msg = self._phone_re.sub("[REDACTED_PHONE]", msg)
        record.msg = msg
        record.args = ()
        return True


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    handler = logging.StreamHandler()

    if settings.LOG_JSON:
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s"
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(ContactRedactingFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # Reduce noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
