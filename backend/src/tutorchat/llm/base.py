"""Base protocol and types for LLM clients."""

import json
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tutorchat.exceptions import RetryableError

DeltaCallback = Callable[[str], None]

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class LLMResponse:
    """Standardized response from a provider call.

    Attributes:
        content: The generated text content
        prompt_tokens: Number of tokens in the prompt
        completion_tokens: Number of tokens in the completion
        model: The actual model used (may differ from requested)
        duration_ms: Time taken for the API call in milliseconds
        refusal: Refusal text, if the model refused
    """

    content: str
    prompt_tokens: int
    completion_tokens: int
    model: str
    duration_ms: float
    refusal: str = ""


class LLMClient(ABC):
    """Capability set the chat engine needs from an inference provider.

    Implementations must handle:
    - Embeddings (one dense vector per input, same order)
    - Schema-constrained JSON generation
    - Plain and streamed text generation, with and without a
      server-side conversation handle
    - Classifying provider errors into RetryableError / NonRetryableError
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier (e.g., 'openai', 'anthropic')."""
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the chat model identifier being used."""
        ...

    @abstractmethod
    def with_model(self, model: str) -> "LLMClient":
        """Return a client sharing this one's connection but using another model."""
        ...

    @abstractmethod
    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts. Returns exactly one vector per input, in input order."""
        ...

    @abstractmethod
    def generate_json(
        self,
        system: str,
        user: str,
        schema_name: str,
        schema: dict[str, Any],
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Generate a JSON object constrained by schema.

        Args:
            system: System instructions
            user: User payload
            schema_name: Schema identifier sent to the provider
            schema: JSON Schema of the expected object
            timeout: Hard deadline in seconds for the whole call, retries included

        Returns:
            Parsed JSON object

        Raises:
            RetryableError: Transient failure or malformed output
            NonRetryableError: Permanent provider failure
            ModelRefusalError: The model refused
        """
        ...

    @abstractmethod
    def generate_text(self, system: str, user: str) -> str:
        """Generate plain text."""
        ...

    @abstractmethod
    def stream_text(
        self,
        system: str,
        user: str,
        on_delta: Optional[DeltaCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """Stream text deltas to on_delta and return the full text.

        Raises:
            OperationCancelledError: If cancel is set while streaming
        """
        ...

    @abstractmethod
    def create_conversation(self) -> str:
        """Create a provider-side conversation handle."""
        ...

    @abstractmethod
    def generate_text_in_conversation(
        self, conversation_id: str, instructions: str, user: str
    ) -> str:
        """Generate text inside a conversation (the user turn is persisted there)."""
        ...

    @abstractmethod
    def stream_text_in_conversation(
        self,
        conversation_id: str,
        instructions: str,
        user: str,
        on_delta: Optional[DeltaCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """Stream text inside a conversation."""
        ...


def parse_json_object(text: str, schema: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """
    Parse model output into a JSON object and check required keys.

    Malformed output counts as transient so the call is retried.

    Args:
        text: Raw model text (may be wrapped in a markdown fence)
        schema: Optional JSON Schema whose top-level "required" keys are checked

    Returns:
        Parsed object

    Raises:
        RetryableError: Empty, unparseable, non-object or missing required keys
    """
    cleaned = _FENCE_RE.sub("", (text or "").strip()).strip()
    if not cleaned:
        raise RetryableError("llm", "empty JSON output")
    try:
        obj = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise RetryableError("llm", f"malformed JSON output: {e}") from e
    if not isinstance(obj, dict):
        raise RetryableError("llm", "JSON output is not an object")

    for key in (schema or {}).get("required", []):
        if key not in obj:
            raise RetryableError("llm", f"JSON output missing required key {key!r}")
    return obj


def check_cancelled(cancel: Optional[threading.Event]) -> bool:
    """True when a cancellation event is present and set."""
    return cancel is not None and cancel.is_set()
