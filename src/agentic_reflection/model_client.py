"""Chat-completion client used by the LLM planner."""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from agentic_reflection.constants import DEFAULT_PLANNER_MAX_TOKENS

logger = logging.getLogger(__name__)


@dataclass
class Message:
    """A chat message."""
    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class CompletionResult:
    content: str
    model: str
    usage: Optional[Dict[str, Any]] = None


class ModelClientError(Exception):
    """Error from model client operations."""
    pass


class ModelClient(ABC):
    """Abstract interface for model clients."""

    @abstractmethod
    def complete(
        self,
        messages: List[Message],
        model: str,
        timeout: float = 60.0,
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        """
        Execute a chat completion.

        Args:
            messages: List of chat messages
            model: Model identifier
            timeout: Request timeout in seconds
            max_tokens: Maximum output tokens (if None, use model default)

        Returns:
            CompletionResult with content and metadata

        Raises:
            ModelClientError: On API or network errors
        """
        pass


class OpenRouterClient(ModelClient):
    """OpenRouter chat completions over httpx.

    API docs: https://openrouter.ai/docs
    """

    BASE_URL = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        """
        Initialize the client.

        Args:
            api_key: OpenRouter API key (defaults to OPENROUTER_API_KEY env var)
            base_url: Override the chat completions endpoint

        Raises:
            ModelClientError: If no API key is available
        """
        self.api_key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not self.api_key:
            raise ModelClientError("OPENROUTER_API_KEY environment variable is required.")
        self.base_url = base_url or self.BASE_URL

    def _post(self, payload: dict, timeout: float) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "agentic-reflection",
        }
        with httpx.Client(timeout=timeout) as client:
            response = client.post(self.base_url, headers=headers, json=payload)
            response.raise_for_status()
            return response.json()

    def complete(
        self,
        messages: List[Message],
        model: str,
        timeout: float = 60.0,
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        """Execute a chat completion against OpenRouter. See ModelClient.complete."""
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        logger.debug("Completion request: model=%s, max_tokens=%s", model, max_tokens)

        try:
            data = self._post(payload, timeout)
        except httpx.HTTPStatusError as e:
            try:
                error_msg = e.response.json().get("error", {}).get("message", str(e))
            except ValueError:
                error_msg = str(e)
            raise ModelClientError(f"API error ({e.response.status_code}): {error_msg}")
        except httpx.TimeoutException:
            raise ModelClientError(f"Request timed out after {timeout}s")
        except httpx.RequestError as e:
            raise ModelClientError(f"Network error: {e}")

        choices = data.get("choices") or []
        if not choices:
            raise ModelClientError("No choices in API response")
        content = (choices[0].get("message") or {}).get("content") or ""
        if not content:
            raise ModelClientError("Empty content in API response")

        return CompletionResult(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )


def traced_complete(
    client: ModelClient,
    messages: List[Message],
    model: str,
    task_id: str,
    iteration: int,
    timeout: float = 60.0,
    max_tokens: int = DEFAULT_PLANNER_MAX_TOKENS,
) -> CompletionResult:
    """
    Run a completion inside a LangSmith span.

    The span is named after the task and iteration so re-planning attempts
    for one task line up in the trace view.
    """
    from langsmith import traceable

    @traceable(
        name=f"plan_{task_id}_iter{iteration}",
        run_type="llm",
        metadata={"task_id": task_id, "iteration": iteration, "model": model},
    )
    def _traced_call(messages_input: List[dict], model_name: str) -> dict:
        result = client.complete(
            messages=[Message(role=m["role"], content=m["content"]) for m in messages_input],
            model=model_name,
            timeout=timeout,
            max_tokens=max_tokens,
        )
        return {"content": result.content, "model": result.model, "usage": result.usage}

    output = _traced_call([{"role": m.role, "content": m.content} for m in messages], model)
    return CompletionResult(
        content=output["content"],
        model=output["model"],
        usage=output.get("usage"),
    )
