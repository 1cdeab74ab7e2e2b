"""Structured JSON logging for Achei Leads."""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

from pythonjsonlogger import jsonlogger

current_user_id: ContextVar[str] = ContextVar("current_user_id", default="system")


EMOJIS = {
    "startup": "🚀",
    "search": "🕵️",
    "enrich": "🤖",
    "credits": "💰",
    "payment": "💳",
    "crm": "📋",
    "message": "💬",
    "export": "📤",
    "api": "⚡",
    "error": "❌",
    "success": "✅",
    "auth": "🔒",
    "rate_limit": "⏳",
}


class LudicFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).strftime("%H:%M:%S")
        log_record["level"] = record.levelname
        if "message" not in log_record:
            log_record["message"] = record.getMessage()

        event_type = log_record.get("event_type") or message_dict.get("event_type") or "system"
        log_record["icon"] = EMOJIS.get(str(event_type).lower(), "📝")
        log_record["user"] = str(current_user_id.get())[:8]


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("achei_leads")
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = LudicFormatter()
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.propagate = False

        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("asyncio").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger


logger = setup_logger()
