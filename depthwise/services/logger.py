"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from depthwise.config import settings

LOG_DIR = Path("logs")
LOG_DIR.mkdir(exist_ok=True)

logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

logger.add(
    LOG_DIR / "depthwise_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

# Reduce noise from framework/network libraries
for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "httpx",
    "httpcore",
    "openai._base_client",
    "redis",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log an LLM API call."""
    call_data = {
        "timestamp": _now(),
        "model": model,
        "caller": caller,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "duration_ms": duration_ms,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {call_data}")
    else:
        logger.info(f"LLM_CALL: {call_data}")


def log_research_step(
    chat_id: str,
    step_type: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log a research depth transition or activity."""
    step_data = {
        "timestamp": _now(),
        "chat_id": chat_id,
        "step_type": step_type,
        "status": status,
        "data": data,
    }
    logger.info(f"RESEARCH_STEP: {step_data}")


def log_db_operation(
    operation: str,
    key: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a key/value store operation."""
    op_data = {
        "timestamp": _now(),
        "operation": operation,
        "key": key,
        "status": status,
        "details": details,
        "error": error,
    }
    if error:
        logger.error(f"DB_OPERATION_FAILED: {op_data}")
    else:
        logger.info(f"DB_OPERATION: {op_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _now(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
