"""
Provider Gateway

Contract for the external LLM gateway. Vendor selection, fallback across
vendors, and retries all live behind it; this core makes exactly one call
per attempt and turns any failure into ProviderUnavailable.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

import settings
from exceptions import ProviderUnavailable

logger = logging.getLogger(__name__)


@dataclass
class ProviderOptions:
    model: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stop_sequences: List[str] = field(default_factory=list)

    def cache_key_options(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stop_sequences": list(self.stop_sequences),
        }


@dataclass
class ProviderResult:
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: Optional[float] = None  # None: let the ledger price it

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ProviderGateway(ABC):
    """One completion per call. Raises ProviderUnavailable on any failure."""

    @abstractmethod
    async def execute(self, full_prompt: str, options: ProviderOptions) -> ProviderResult:
        ...

    async def aclose(self):
        pass


class HttpProviderGateway(ProviderGateway):
    """
    Gateway reached over HTTP.

    Request:  POST {url} {"prompt", "model", "temperature", "max_tokens", "stop_sequences"}
    Response: {"content", "model", "token_usage": {"input", "output"}, "cost"?}
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.AI_GATEWAY_URL
        headers = {"Content-Type": "application/json"}
        key = api_key if api_key is not None else settings.AI_GATEWAY_API_KEY
        if key:
            headers["Authorization"] = f"Bearer {key}"

        self.client = httpx.AsyncClient(
            timeout=timeout or settings.AI_GATEWAY_TIMEOUT_SECONDS,
            headers=headers,
            transport=transport,
        )
        logger.info(f"Initialized provider gateway client: {self.url}")

    async def execute(self, full_prompt: str, options: ProviderOptions) -> ProviderResult:
        payload = {
            "prompt": full_prompt,
            "model": options.model,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stop_sequences": options.stop_sequences or None,
        }
        payload = {k: v for k, v in payload.items() if v is not None}

        start = time.monotonic()
        try:
            response = await self.client.post(self.url, json=payload)
        except httpx.TimeoutException:
            logger.warning(f"Provider gateway timeout after {time.monotonic() - start:.1f}s (model={options.model})")
            raise ProviderUnavailable("AI provider timed out")
        except httpx.HTTPError as e:
            logger.warning(f"Provider gateway transport error: {type(e).__name__}")
            raise ProviderUnavailable()

        if response.status_code >= 400:
            # Body is not logged: it may echo the prompt
            logger.warning(f"Provider gateway returned HTTP {response.status_code} (model={options.model})")
            raise ProviderUnavailable(status_code=response.status_code)

        try:
            data = response.json()
            usage = data.get("token_usage") or {}
            content = data["content"]
            if not isinstance(content, str):
                raise TypeError("content must be a string")
            return ProviderResult(
                content=content,
                model=data.get("model") or options.model,
                input_tokens=int(usage.get("input", 0) or 0),
                output_tokens=int(usage.get("output", 0) or 0),
                cost=float(data["cost"]) if data.get("cost") is not None else None,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Provider gateway returned a malformed response ({type(e).__name__})")
            raise ProviderUnavailable("AI provider returned an invalid response")

    async def aclose(self):
        await self.client.aclose()
