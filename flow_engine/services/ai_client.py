"""Client for an OpenAI-compatible chat completions provider."""

import json
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..core.exceptions import ConfigurationError, ExternalServiceError
from ..core.logging import get_logger

logger = get_logger(__name__)


class AIClient:
    """Thin async wrapper over ``POST {base_url}/chat/completions``."""

    service_name = "ai"

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        default_model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.default_model = default_model
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model_id: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> str:
        """
        Run one chat completion and return the assistant text.

        Raises:
            ConfigurationError: If no provider URL is configured
            ExternalServiceError: If the provider call fails
        """
        if not self.configured:
            raise ConfigurationError("AI provider is not configured", config_key="ai_base_url")

        payload = {
            "model": model_id or self.default_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(f"AI provider timed out: {e}", service=self.service_name)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"AI provider unreachable: {e}", service=self.service_name)

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"AI provider returned {response.status_code}: {response.text[:200]}",
                service=self.service_name,
                status_code=response.status_code,
            )

        try:
            data = response.json()
            return data["choices"][0]["message"]["content"].strip()
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise ExternalServiceError(
                f"Malformed AI provider response: {e}",
                service=self.service_name,
                recoverable=False,
            )

    async def classify_intent(
        self,
        content: str,
        supported_intents: List[str],
        model_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> Tuple[str, float]:
        """Ask the model to pick one of ``supported_intents`` with a confidence in [0, 1]."""
        instructions = system_prompt or (
            "You classify customer-service messages. "
            f"Allowed intents: {', '.join(supported_intents)}. "
            'Reply with JSON only: {"intent": "<intent>", "confidence": <0..1>}'
        )
        reply = await self.chat(
            [
                {"role": "system", "content": instructions},
                {"role": "user", "content": content},
            ],
            model_id=model_id,
            temperature=0.0,
            max_tokens=100,
        )
        return self._parse_intent(reply)

    def _parse_intent(self, reply: str) -> Tuple[str, float]:
        start, end = reply.find("{"), reply.rfind("}")
        if start == -1 or end <= start:
            raise ExternalServiceError(
                f"Intent reply is not JSON: {reply[:100]}", service=self.service_name, recoverable=False
            )
        try:
            parsed: Dict[str, Any] = json.loads(reply[start:end + 1])
            return str(parsed["intent"]).strip(), float(parsed.get("confidence", 0.0))
        except (ValueError, KeyError, TypeError) as e:
            raise ExternalServiceError(
                f"Intent reply could not be parsed: {e}", service=self.service_name, recoverable=False
            )
