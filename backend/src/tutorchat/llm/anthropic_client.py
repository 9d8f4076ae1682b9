"""Anthropic client implementation."""

import copy
import logging
import threading
import time
import uuid
from typing import Any, Callable, Optional

from anthropic import Anthropic, APIConnectionError, APIStatusError, APITimeoutError

from tutorchat.config import settings
from tutorchat.exceptions import (
    DependencyUnavailableError,
    ModelRefusalError,
    OperationCancelledError,
    RetryableError,
)
from tutorchat.llm.base import (
    DeltaCallback,
    LLMClient,
    LLMResponse,
    check_cancelled,
    parse_json_object,
)
from tutorchat.llm.llm_logger import llm_logger
from tutorchat.llm.retry import retry_call, status_error

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250514"

# Models that support native structured outputs (beta feature)
STRUCTURED_OUTPUT_MODELS = {
    "claude-sonnet-4-5-20250514",
    "claude-sonnet-4-5",
    "claude-opus-4-1-20250410",
    "claude-opus-4-1",
}

STRUCTURED_OUTPUTS_BETA = "structured-outputs-2025-11-13"

# Conversation handles are local: the planner already carries the hot window
LOCAL_CONVERSATION_PREFIX = "local_conv_"


def classify_anthropic_error(error: Exception) -> Exception:
    """Map an Anthropic SDK exception onto the engine's error kinds."""
    if isinstance(error, APITimeoutError):
        return RetryableError("anthropic", "request timed out", status_code=408)
    if isinstance(error, APIConnectionError):
        return RetryableError("anthropic", f"connection error: {error}")
    if isinstance(error, APIStatusError):
        return status_error("anthropic", error.status_code, str(error))
    return error


class AnthropicClient(LLMClient):
    """Anthropic client using the Anthropic Python SDK.

    Supports two methods for structured JSON output:
    1. Native structured outputs (beta) for Claude 4.5+ models
    2. Prompt-based JSON extraction for older models

    Anthropic has no embeddings endpoint, so embed() delegates to the
    configured embedder client.
    """

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        embedder: Optional[LLMClient] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize the Anthropic client.

        Args:
            api_key: Anthropic API key
            model: Model to use
            embedder: Client used for embeddings
            timeout: Request timeout in seconds
        """
        if not api_key:
            raise ValueError("Anthropic API key is required")

        self.client = Anthropic(
            api_key=api_key,
            max_retries=0,
            timeout=timeout or settings.llm_request_timeout_seconds,
        )
        self._model = model or DEFAULT_MODEL
        self._embedder = embedder
        self._supports_structured = self._check_structured_support(self._model)
        logger.info(
            f"Initialized Anthropic client with model: {self._model} "
            f"(structured outputs: {self._supports_structured})"
        )

    def _check_structured_support(self, model: str) -> bool:
        """Check if model supports native structured outputs."""
        if model in STRUCTURED_OUTPUT_MODELS:
            return True
        for supported in STRUCTURED_OUTPUT_MODELS:
            if model.startswith(supported.rsplit("-", 1)[0]):
                return True
        return False

    @property
    def provider_name(self) -> str:
        """Return 'anthropic' as the provider identifier."""
        return "anthropic"

    @property
    def model_name(self) -> str:
        """Return the model identifier."""
        return self._model

    def with_model(self, model: str) -> "AnthropicClient":
        clone = copy.copy(self)
        clone._model = model or self._model
        clone._supports_structured = clone._check_structured_support(clone._model)
        return clone

    def embed(self, texts: list[str]) -> list[list[float]]:
        if self._embedder is None:
            raise DependencyUnavailableError(
                "anthropic", "no embedding provider configured (set OPENAI_API_KEY)"
            )
        return self._embedder.embed(texts)

    def generate_json(
        self,
        system: str,
        user: str,
        schema_name: str,
        schema: dict[str, Any],
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        if not schema_name:
            raise ValueError("schema_name required")
        client = self.client.with_options(timeout=timeout) if timeout else self.client
        deadline = time.monotonic() + timeout if timeout else None

        request_params: dict[str, Any] = {
            "model": self._model,
            "max_tokens": settings.llm_max_tokens,
            "temperature": 0.2,
            "system": system,
            "messages": [{"role": "user", "content": user}],
        }

        def call() -> dict[str, Any]:
            if self._supports_structured:
                params = dict(request_params)
                params["betas"] = [STRUCTURED_OUTPUTS_BETA]
                params["output_format"] = {"type": "json_schema", "schema": schema}
                response = client.beta.messages.create(**params)
            else:
                params = dict(request_params)
                params["system"] = (
                    f"{system}\n\nIMPORTANT: You must respond with valid JSON only. "
                    "No markdown code blocks, no explanations, no additional text. "
                    "Return ONLY the raw JSON object."
                )
                response = client.messages.create(**params)
            result = self._build_response(response)
            return parse_json_object(result.content, schema)

        return self._call(
            "generate_json",
            call,
            prompt=f"{system}\n\n{user}",
            schema_name=schema_name,
            deadline=deadline,
            max_retries=0 if timeout and timeout < 30 else None,
        )

    def generate_text(self, system: str, user: str) -> str:
        def call() -> str:
            response = self.client.messages.create(
                model=self._model,
                max_tokens=settings.llm_max_tokens,
                temperature=0.2,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            content = self._build_response(response).content
            if not content.strip():
                raise RetryableError("anthropic", "empty text response")
            return content

        return self._call("generate_text", call, prompt=f"{system}\n\n{user}")

    def stream_text(
        self,
        system: str,
        user: str,
        on_delta: Optional[DeltaCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        request_id = llm_logger.log_request(
            self.provider_name, self._model, "stream_text", f"{system}\n\n{user}"
        )
        start_time = time.time()
        parts: list[str] = []
        try:
            with self.client.messages.stream(
                model=self._model,
                max_tokens=settings.llm_max_tokens,
                temperature=0.2,
                system=(system or "").strip(),
                messages=[{"role": "user", "content": user}],
            ) as stream:
                for delta in stream.text_stream:
                    if check_cancelled(cancel):
                        raise OperationCancelledError("stream cancelled")
                    if not delta:
                        continue
                    parts.append(delta)
                    if on_delta is not None:
                        on_delta(delta)
                final = stream.get_final_message()
                if getattr(final, "stop_reason", "") == "refusal":
                    raise ModelRefusalError("model refused", refusal="".join(parts))
        except (APIStatusError, APIConnectionError) as e:
            classified = classify_anthropic_error(e)
            llm_logger.log_error(request_id, classified)
            raise classified from e
        except Exception as e:
            llm_logger.log_error(request_id, e)
            raise

        full = "".join(parts)
        llm_logger.log_response(
            request_id, self._model, full, (time.time() - start_time) * 1000
        )
        return full

    def create_conversation(self) -> str:
        return f"{LOCAL_CONVERSATION_PREFIX}{uuid.uuid4().hex}"

    def generate_text_in_conversation(
        self, conversation_id: str, instructions: str, user: str
    ) -> str:
        if not (conversation_id or "").strip():
            raise ValueError("conversation_id required")
        return self.generate_text(instructions, user)

    def stream_text_in_conversation(
        self,
        conversation_id: str,
        instructions: str,
        user: str,
        on_delta: Optional[DeltaCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        if not (conversation_id or "").strip():
            raise ValueError("conversation_id required")
        return self.stream_text(instructions, user, on_delta, cancel)

    def _build_response(self, response: Any) -> LLMResponse:
        """Build LLMResponse from an Anthropic API response."""
        content = ""
        for block in response.content:
            if hasattr(block, "text"):
                content += block.text

        if getattr(response, "stop_reason", "") == "refusal":
            raise ModelRefusalError("model refused", refusal=content)

        usage = response.usage
        return LLMResponse(
            content=content,
            prompt_tokens=usage.input_tokens if usage else 0,
            completion_tokens=usage.output_tokens if usage else 0,
            model=response.model,
            duration_ms=0.0,
        )

    def _call(
        self,
        operation: str,
        fn: Callable[[], Any],
        prompt: str,
        schema_name: Optional[str] = None,
        deadline: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """Run one logical request with error classification, retries and logging."""
        request_id = llm_logger.log_request(
            self.provider_name, self._model, operation, prompt, schema_name
        )
        start_time = time.time()

        def attempt() -> Any:
            try:
                return fn()
            except (APIStatusError, APIConnectionError) as e:
                raise classify_anthropic_error(e) from e

        try:
            result = retry_call(
                attempt,
                operation=f"anthropic {operation}",
                max_retries=max_retries,
                deadline=deadline,
            )
        except Exception as e:
            llm_logger.log_error(request_id, e)
            raise

        llm_logger.log_response(
            request_id, self._model, str(result), (time.time() - start_time) * 1000
        )
        return result
