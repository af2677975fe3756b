"""Logging configuration for the application"""
import logging
import re

from rsvp_dispatch.core.config import settings

# Loggers the dispatch code writes to besides module loggers
DOMAIN_LOGGERS = ("dispatch", "automation", "channels", "security", "api_access")

# Provider errors and transport exceptions can echo guest phone numbers
PHONE_PATTERN = re.compile(r"(?<![\w+-])(\+?\d[\d-]{6,}\d)(?![\w-])")
MIN_PHONE_DIGITS = 9


def mask_phone_numbers(text: str) -> str:
    """Replace all but the last 4 digits of phone-like sequences with '*'"""
    def _mask(match):
        digits = re.sub(r"\D", "", match.group(1))
        if len(digits) < MIN_PHONE_DIGITS:
            return match.group(1)
        prefix = "+" if match.group(1).startswith("+") else ""
        return prefix + "*" * (len(digits) - 4) + digits[-4:]
    return PHONE_PATTERN.sub(_mask, text)


class PhoneRedactionFilter(logging.Filter):
    """Masks phone numbers in the final message of every record"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_phone_numbers(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    redaction = PhoneRedactionFilter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(redaction)

    # Silence noisy third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    for name in DOMAIN_LOGGERS:
        logging.getLogger(name).setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
