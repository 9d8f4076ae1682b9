"""OpenAI client implementation (Responses, Conversations and Embeddings APIs)."""

import copy
import logging
import threading
import time
from typing import Any, Callable, Optional

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from tutorchat.config import settings
from tutorchat.exceptions import (
    ModelRefusalError,
    OperationCancelledError,
    RetryableError,
)
from tutorchat.llm.base import (
    DeltaCallback,
    LLMClient,
    check_cancelled,
    parse_json_object,
)
from tutorchat.llm.llm_logger import llm_logger
from tutorchat.llm.retry import retry_call, status_error

logger = logging.getLogger(__name__)

TEMPERATURE = 0.2


def classify_openai_error(error: Exception) -> Exception:
    """Map an OpenAI SDK exception onto the engine's error kinds."""
    if isinstance(error, APITimeoutError):
        return RetryableError("openai", "request timed out", status_code=408)
    if isinstance(error, APIConnectionError):
        return RetryableError("openai", f"connection error: {error}")
    if isinstance(error, APIStatusError):
        return status_error("openai", error.status_code, str(error))
    return error


def _response_refusal(response: Any) -> str:
    for item in getattr(response, "output", None) or []:
        for part in getattr(item, "content", None) or []:
            if getattr(part, "type", "") == "refusal":
                return getattr(part, "refusal", "") or "refused"
    return ""


class OpenAIClient(LLMClient):
    """OpenAI client using the OpenAI Python SDK.

    Retries are handled by retry_call, so the SDK's own retry loop is disabled.
    """

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize the OpenAI client.

        Args:
            api_key: OpenAI API key
            model: Chat model (default: settings.chat_model)
            embedding_model: Embedding model (default: settings.embedding_model)
            base_url: Optional API base URL override
            timeout: Request timeout in seconds
        """
        if not api_key:
            raise ValueError("OpenAI API key is required")

        self.client = OpenAI(
            api_key=api_key,
            base_url=base_url or None,
            max_retries=0,
            timeout=timeout or settings.llm_request_timeout_seconds,
        )
        self._model = model or settings.chat_model
        self._embedding_model = embedding_model or settings.embedding_model
        logger.info(f"Initialized OpenAI client with model: {self._model}")

    @property
    def provider_name(self) -> str:
        """Return 'openai' as the provider identifier."""
        return "openai"

    @property
    def model_name(self) -> str:
        """Return the model identifier."""
        return self._model

    def with_model(self, model: str) -> "OpenAIClient":
        clone = copy.copy(self)
        clone._model = model or self._model
        return clone

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Embed texts with one batch request.

        Blank inputs are sent as a single space. If the response misses any
        index the request is retried once before failing.
        """
        if not texts:
            return []
        clean = [(t or "").strip() or " " for t in texts]

        vectors = self._embed_once(clean)
        if any(not v for v in vectors):
            logger.warning(
                f"Embeddings response missing indices; retrying once "
                f"(requested={len(clean)}, model={self._embedding_model})"
            )
            vectors = self._embed_once(clean)
            if any(not v for v in vectors):
                raise RetryableError(
                    "openai",
                    f"embeddings missing indices after retry: requested={len(clean)}",
                )
        return vectors

    def _embed_once(self, clean: list[str]) -> list[list[float]]:
        def call() -> Any:
            return self.client.embeddings.create(model=self._embedding_model, input=clean)

        response = self._call("embed", call, prompt="\n".join(clean)[:500])
        out: list[list[float]] = [[] for _ in clean]
        for item in response.data:
            if 0 <= item.index < len(out):
                out[item.index] = [float(x) for x in item.embedding]
        return out

    # ------------------------------------------------------------------
    # Responses API
    # ------------------------------------------------------------------

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
        if not schema:
            raise ValueError("schema required")

        client = self.client.with_options(timeout=timeout) if timeout else self.client
        deadline = time.monotonic() + timeout if timeout else None

        def call() -> dict[str, Any]:
            response = client.responses.create(
                model=self._model,
                input=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=TEMPERATURE,
                text={
                    "format": {
                        "type": "json_schema",
                        "name": schema_name,
                        "schema": schema,
                        "strict": True,
                    }
                },
            )
            refusal = _response_refusal(response)
            if refusal:
                raise ModelRefusalError(f"model refused: {refusal}", refusal=refusal)
            return parse_json_object(response.output_text, schema)

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
            response = self.client.responses.create(
                model=self._model,
                input=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=TEMPERATURE,
            )
            return self._output_text(response)

        return self._call("generate_text", call, prompt=f"{system}\n\n{user}")

    def stream_text(
        self,
        system: str,
        user: str,
        on_delta: Optional[DeltaCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        return self._stream(
            {
                "model": self._model,
                "input": [
                    {"role": "system", "content": (system or "").strip()},
                    {"role": "user", "content": user},
                ],
                "temperature": TEMPERATURE,
            },
            on_delta,
            cancel,
        )

    # ------------------------------------------------------------------
    # Conversations API
    # ------------------------------------------------------------------

    def create_conversation(self) -> str:
        conversation = self._call(
            "create_conversation", lambda: self.client.conversations.create(), prompt=""
        )
        conversation_id = (getattr(conversation, "id", "") or "").strip()
        if not conversation_id:
            raise RetryableError("openai", "create conversation: missing id")
        return conversation_id

    def generate_text_in_conversation(
        self, conversation_id: str, instructions: str, user: str
    ) -> str:
        conversation_id = (conversation_id or "").strip()
        if not conversation_id:
            raise ValueError("conversation_id required")

        def call() -> str:
            response = self.client.responses.create(
                model=self._model,
                conversation=conversation_id,
                instructions=(instructions or "").strip(),
                input=[{"role": "user", "content": user}],
                temperature=TEMPERATURE,
            )
            return self._output_text(response)

        return self._call(
            "generate_text_in_conversation", call, prompt=f"{instructions}\n\n{user}"
        )

    def stream_text_in_conversation(
        self,
        conversation_id: str,
        instructions: str,
        user: str,
        on_delta: Optional[DeltaCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        conversation_id = (conversation_id or "").strip()
        if not conversation_id:
            raise ValueError("conversation_id required")
        return self._stream(
            {
                "model": self._model,
                "conversation": conversation_id,
                "instructions": (instructions or "").strip(),
                "input": [{"role": "user", "content": user}],
                "temperature": TEMPERATURE,
            },
            on_delta,
            cancel,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _output_text(self, response: Any) -> str:
        refusal = _response_refusal(response)
        if refusal:
            raise ModelRefusalError(f"model refused: {refusal}", refusal=refusal)
        text = response.output_text or ""
        if not text.strip():
            raise RetryableError("openai", "no output_text found in response")
        return text

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
                raise classify_openai_error(e) from e

        try:
            result = retry_call(
                attempt,
                operation=f"openai {operation}",
                max_retries=max_retries,
                deadline=deadline,
            )
        except Exception as e:
            llm_logger.log_error(request_id, e)
            raise

        duration_ms = (time.time() - start_time) * 1000
        if isinstance(result, (str, dict)):
            llm_logger.log_response(request_id, self._model, str(result), duration_ms)
        return result

    def _stream(
        self,
        params: dict[str, Any],
        on_delta: Optional[DeltaCallback],
        cancel: Optional[threading.Event],
    ) -> str:
        """Consume a Responses API event stream, forwarding output_text deltas."""
        request_id = llm_logger.log_request(
            self.provider_name,
            self._model,
            "stream_text",
            f"{params.get('instructions', '')}\n\n{params['input']}",
        )
        start_time = time.time()
        parts: list[str] = []
        stream = None
        try:
            stream = self.client.responses.create(stream=True, **params)
            for event in stream:
                if check_cancelled(cancel):
                    raise OperationCancelledError("stream cancelled")
                event_type = getattr(event, "type", "") or ""
                if event_type == "response.refusal.delta":
                    raise ModelRefusalError("model refused", refusal=event.delta or "")
                if event_type in ("error", "response.failed"):
                    detail = getattr(event, "message", None) or getattr(
                        event, "response", None
                    )
                    raise RetryableError("openai", f"stream error: {detail}")
                if event_type == "response.output_text.delta":
                    delta = (getattr(event, "delta", "") or "").rstrip("\x00")
                    if not delta:
                        continue
                    parts.append(delta)
                    if on_delta is not None:
                        on_delta(delta)
        except (APIStatusError, APIConnectionError) as e:
            classified = classify_openai_error(e)
            llm_logger.log_error(request_id, classified)
            raise classified from e
        except Exception as e:
            llm_logger.log_error(request_id, e)
            raise
        finally:
            if stream is not None:
                stream.close()

        full = "".join(parts)
        llm_logger.log_response(
            request_id, self._model, full, (time.time() - start_time) * 1000
        )
        return full

