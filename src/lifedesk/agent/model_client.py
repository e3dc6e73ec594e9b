"""
Model client interface for lifedesk.

This module is the only place that *directly* calls an LLM.  Everything else (agent loop, actions,
memory) stays model-agnostic and talks to :class:`BaseModelClient.complete`.

We support three back-ends out of the box:

1. **OpenAI / Anthropic** via their async SDKs (requires env keys).
2. **Hugging Face Text-Generation-Inference (TGI)** for self-hosted models.

Additional providers can be added by subclassing :class:`BaseModelClient` and registering via
:func:`register_model_client`.

Every call is bounded by ``settings.MODEL_TIMEOUT``.  Failures are classified so callers can decide
what to do with them: :class:`ModelUnavailableError` when the service cannot be reached at all,
:class:`ModelCallError` for timeouts and rejected requests.
"""

import asyncio
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Sequence,
    Type,
    TypedDict,
)

import httpx

from lifedesk.config import settings
from lifedesk.core.errors import (
    ModelCallError,
    ModelUnavailableError,
)
from lifedesk.core.schema import Image

logger = logging.getLogger(__name__)


class ChatMessage(TypedDict):
    """One conversational turn sent to the model; ``role`` is ``user`` or ``assistant``."""

    role: str
    content: str


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_MODEL_CLIENT_REGISTRY: dict[str, Type["BaseModelClient"]] = {}


def register_model_client(name: str) -> Callable:
    """Decorator to register a model client class under *name*."""

    def wrapper(cls: Type["BaseModelClient"]) -> Type["BaseModelClient"]:
        _MODEL_CLIENT_REGISTRY[name] = cls
        return cls

    return wrapper


def load_model_client(name: str | None = None) -> "BaseModelClient":
    """
    Factory that returns an instantiated model client.

    Fallback order:
    1. *name* arg
    2. ``settings.PLANNER`` env option
    3. default: ``"openai"``
    """
    target = name or getattr(settings, "PLANNER", "openai")
    cls = _MODEL_CLIENT_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Model client '{target}' is not registered.")
    return cls()


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseModelClient(ABC):
    """Abstract async client: system prompt + messages (+ images) in, text out."""

    def __init__(self, timeout: float | None = None, temperature: float | None = None):
        self.timeout = timeout if timeout is not None else settings.MODEL_TIMEOUT
        self.temperature = temperature if temperature is not None else settings.MODEL_TEMPERATURE

    async def complete(
        self,
        system: str,
        messages: Sequence[ChatMessage],
        images: Sequence[Image] = (),
    ) -> str:
        """
        Run one inference request.

        Parameters
        ----------
        system:
            System prompt.
        messages:
            Conversation turns, oldest first; the last one is the current request.
        images:
            Images attached to the last message, in order.

        Returns
        -------
        str
            The model's text output (possibly empty).

        Raises
        ------
        ModelUnavailableError
            If the model service cannot be reached.
        ModelCallError
            If the call timed out or was rejected.
        """
        try:
            content = await asyncio.wait_for(
                self._complete(system, list(messages), list(images)), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning("%s call timed out after %.1fs", type(self).__name__, self.timeout)
            raise ModelCallError(f"model call timed out after {self.timeout:.0f}s") from exc
        logger.debug("%s response: %s", type(self).__name__, content)
        return content or ""

    @abstractmethod
    async def _complete(
        self, system: str, messages: List[ChatMessage], images: List[Image]
    ) -> str:
        """Provider-specific request; must translate provider errors."""


# ---------------------------------------------------------------------------
# Concrete clients
# ---------------------------------------------------------------------------
@register_model_client("tgi")
class TGIModelClient(BaseModelClient):
    """TGI-based client over httpx.  Text only; images are dropped."""

    async def _complete(
        self, system: str, messages: List[ChatMessage], images: List[Image]
    ) -> str:
        endpoint = getattr(settings, "TGI_ENDPOINT", "http://tgi:8080/generate")
        if images:
            logger.warning("TGI client ignores %d image(s)", len(images))

        transcript = "\n\n".join(
            f"{'User' if m['role'] == 'user' else 'Assistant'}: {m['content']}" for m in messages
        )
        payload = {
            "inputs": f"{system}\n\n{transcript}\n\nAssistant:",
            "parameters": {
                "max_new_tokens": 1024,
                "temperature": max(self.temperature, 0.01),
                "stop": ["User:", "</s>"],
            },
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(endpoint, json=payload)
                resp.raise_for_status()
                return str(resp.json()["generated_text"])
        except httpx.TimeoutException as e:
            raise ModelCallError(f"TGI request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ModelCallError(f"TGI returned {e.response.status_code}") from e
        except httpx.TransportError as e:
            logger.error("TGI endpoint unreachable: %s", str(e))
            raise ModelUnavailableError(f"Cannot reach TGI endpoint {endpoint}: {e}") from e
        except (KeyError, ValueError) as e:
            raise ModelCallError(f"Unexpected TGI response: {e}") from e


@register_model_client("openai")
class OpenAIModelClient(BaseModelClient):
    """OpenAI chat-completions client."""

    def __init__(self, timeout: float | None = None, temperature: float | None = None):
        super().__init__(timeout, temperature)
        self._client: Any = None

    def _get_client(self) -> Any:
        import openai  # pylint: disable=import-outside-toplevel

        if self._client is None:
            if not settings.OPENAI_API_KEY:
                raise ModelUnavailableError("OPENAI_API_KEY is not configured")
            self._client = openai.AsyncOpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0)
        return self._client

    async def _complete(
        self, system: str, messages: List[ChatMessage], images: List[Image]
    ) -> str:
        import openai  # pylint: disable=import-outside-toplevel

        payload: List[Dict[str, Any]] = [{"role": "system", "content": system}]
        for index, message in enumerate(messages):
            if images and index == len(messages) - 1:
                content: Any = [{"type": "text", "text": message["content"]}] + [
                    {"type": "image_url", "image_url": {"url": image.to_data_url()}}
                    for image in images
                ]
            else:
                content = message["content"]
            payload.append({"role": message["role"], "content": content})

        client = self._get_client()
        try:
            resp = await client.chat.completions.create(
                model=getattr(settings, "OPENAI_MODEL", "gpt-4o-mini"),
                messages=payload,
                temperature=self.temperature,
            )
        except openai.APITimeoutError as e:
            raise ModelCallError(f"OpenAI request timed out: {e}") from e
        except openai.APIConnectionError as e:
            logger.error("OpenAI unreachable: %s", str(e))
            raise ModelUnavailableError(f"Cannot reach OpenAI: {e}") from e
        except openai.APIError as e:
            logger.error("OpenAI error: %s", str(e))
            raise ModelCallError(f"OpenAI error: {e}") from e

        return resp.choices[0].message.content or ""


@register_model_client("anthropic")
class AnthropicModelClient(BaseModelClient):
    """Anthropic Claude client."""

    def __init__(self, timeout: float | None = None, temperature: float | None = None):
        super().__init__(timeout, temperature)
        self._client: Any = None

    def _get_client(self) -> Any:
        import anthropic  # pylint: disable=import-outside-toplevel

        if self._client is None:
            if not settings.ANTHROPIC_API_KEY:
                raise ModelUnavailableError("ANTHROPIC_API_KEY is not configured")
            self._client = anthropic.AsyncAnthropic(
                api_key=settings.ANTHROPIC_API_KEY, max_retries=0
            )
        return self._client

    async def _complete(
        self, system: str, messages: List[ChatMessage], images: List[Image]
    ) -> str:
        import anthropic  # pylint: disable=import-outside-toplevel

        payload: List[Dict[str, Any]] = []
        for index, message in enumerate(messages):
            if images and index == len(messages) - 1:
                content: Any = [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": image.mime_type,
                            "data": image.to_base64(),
                        },
                    }
                    for image in images
                ] + [{"type": "text", "text": message["content"]}]
            else:
                content = message["content"]
            payload.append({"role": message["role"], "content": content})

        client = self._get_client()
        try:
            response = await client.messages.create(
                model=getattr(settings, "ANTHROPIC_MODEL", "claude-3-5-haiku-latest"),
                max_tokens=4096,
                system=system,
                messages=payload,
                temperature=self.temperature,
            )
        except anthropic.APITimeoutError as e:
            raise ModelCallError(f"Anthropic request timed out: {e}") from e
        except anthropic.APIConnectionError as e:
            logger.error("Anthropic unreachable: %s", str(e))
            raise ModelUnavailableError(f"Cannot reach Anthropic: {e}") from e
        except anthropic.APIError as e:
            logger.error("Anthropic error: %s", str(e))
            raise ModelCallError(f"Anthropic error: {e}") from e

        # Handle different content block types from Anthropic API
        return "".join(block.text for block in response.content if block.type == "text")
