"""
Generation Gateway — Text Generation over an Ollama-compatible API

Every caller goes through the :class:`GenerationGateway` protocol so tests can
script replies. The HTTP implementation posts ``{model, prompt, stream: false}``
to ``/api/generate`` and returns the ``response`` field.

Usage:
    from dispatcher.gateway import OllamaGateway

    gateway = OllamaGateway("http://127.0.0.1:11434")
    text = gateway.generate("gemma3:1b", "Name one colour", timeout=10)
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from dispatcher.errors import GatewayError, GatewayTimeout

logger = logging.getLogger(__name__)


@runtime_checkable
class GenerationGateway(Protocol):
    """Anything that turns a prompt into text."""

    def generate(self, model: str, prompt: str, timeout: float | None = None) -> str: ...


class OllamaGateway:
    """HTTP gateway for ``POST {base_url}/api/generate``."""

    provider = "ollama"

    def __init__(
        self,
        base_url: str,
        default_timeout: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_timeout = default_timeout
        self._transport = transport

    def generate(self, model: str, prompt: str, timeout: float | None = None) -> str:
        timeout = timeout or self.default_timeout
        body = {"model": model, "prompt": prompt, "stream": False}
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.post(f"{self.base_url}/api/generate", json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"Generation timed out after {timeout}s ({model})") from e
        except httpx.HTTPStatusError as e:
            raise GatewayError(
                f"Gateway error {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayError(f"Gateway request failed: {e}") from e

        if not isinstance(data, dict):
            raise GatewayError("Gateway returned a non-object payload")
        text = data.get("response")
        if not isinstance(text, str):
            raise GatewayError("Gateway payload has no 'response' text")
        logger.debug("Generated %d chars with %s", len(text), model)
        return text
