"""
LLM interaction logging.

Provides detailed logging of model requests and responses for debugging,
cost tracking, and auditing purposes.
"""

import json
import logging
import logging.handlers
import time
from datetime import datetime, timezone
from typing import Optional

from tutorchat.config import settings

logger = logging.getLogger(__name__)


class LLMLogger:
    """
    Logger for model provider interactions.

    Logs requests, responses, token usage, and errors to a separate log file
    when LLM logging is enabled in configuration.
    """

    def __init__(self):
        """Initialize LLM logger with separate file handler."""
        self.llm_logger = logging.getLogger("tutorchat.llm.requests")
        self.enabled = settings.llm_logging_enabled

        if self.enabled and settings.log_file_enabled:
            self._setup_file_handler()

    def _setup_file_handler(self) -> None:
        """Setup dedicated file handler for LLM logs."""
        llm_dir = settings.log_directory / "llm"
        llm_dir.mkdir(parents=True, exist_ok=True)

        handler = logging.handlers.RotatingFileHandler(
            llm_dir / "requests.log",
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(
            logging.Formatter(
                fmt="[%(asctime)s] [%(levelname)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

        self.llm_logger.addHandler(handler)
        self.llm_logger.setLevel(logging.INFO)
        self.llm_logger.propagate = False

    def log_request(
        self,
        provider: str,
        model: str,
        operation: str,
        prompt: str,
        schema_name: Optional[str] = None,
    ) -> str:
        """
        Log a provider request.

        Args:
            provider: Provider name (openai, anthropic)
            model: Model name
            operation: generate_json, stream_text, embed, ...
            prompt: Prompt text (system + user)
            schema_name: Structured output schema name, if any

        Returns:
            str: Request ID for correlating with the response
        """
        request_id = f"{operation}_{int(time.time() * 1000)}"
        if not self.enabled or not settings.llm_log_requests:
            return request_id

        log_entry = {
            "type": "request",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "provider": provider,
            "model": model,
            "operation": operation,
            "schema_name": schema_name,
            "prompt_preview": prompt[:500] + "..." if len(prompt) > 500 else prompt,
            "prompt_length": len(prompt),
        }
        self.llm_logger.info(f"REQUEST: {json.dumps(log_entry)}")
        return request_id

    def log_response(
        self,
        request_id: str,
        model: str,
        content: str,
        duration_ms: float,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> None:
        """
        Log a provider response.

        Args:
            request_id: Request ID from log_request()
            model: Model that answered
            content: Response text
            duration_ms: Request duration in milliseconds
            prompt_tokens: Input tokens, when reported
            completion_tokens: Output tokens, when reported
        """
        if not self.enabled or not settings.llm_log_responses:
            return

        log_entry = {
            "type": "response",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": model,
            "content_length": len(content or ""),
            "duration_ms": round(duration_ms, 2),
        }
        if settings.llm_log_tokens and (prompt_tokens or completion_tokens):
            log_entry["tokens"] = {
                "prompt": prompt_tokens,
                "completion": completion_tokens,
                "total": prompt_tokens + completion_tokens,
            }
        if content:
            log_entry["content_preview"] = (
                content[:200] + "..." if len(content) > 200 else content
            )
        self.llm_logger.info(f"RESPONSE: {json.dumps(log_entry)}")

    def log_error(self, request_id: str, error: Exception) -> None:
        """
        Log a provider error.

        Args:
            request_id: Request ID from log_request()
            error: Exception that occurred
        """
        if not self.enabled:
            return

        log_entry = {
            "type": "error",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error_type": type(error).__name__,
            "error_message": str(error),
        }
        self.llm_logger.error(f"ERROR: {json.dumps(log_entry)}")


# Global LLM logger instance
llm_logger = LLMLogger()
