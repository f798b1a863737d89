"""Async connectors for the content model service and the image asset service."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from .endpoints import KindEndpoint
from .errors import AssetFailure, RateLimitedError, UpstreamError, UpstreamTimeout


@dataclass(frozen=True)
class ModelResponse:
    text: str
    truncated: bool = False
    elapsed: float = 0.0
    tokens: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip()[:500]
    if isinstance(data, Mapping):
        error = data.get("error")
        if isinstance(error, Mapping):
            return str(error.get("message") or error)
        if error:
            return str(error)
    return str(data)[:500]


class ContentConnector:
    """Send chat-completion requests to an OpenAI-compatible service."""

    def __init__(
        self,
        *,
        timeout: float,
        logger: logging.Logger | None = None,
        api_key: str | None = None,
        api_key_env: str = "OPENROUTER_API_KEY",
        referer: str | None = None,
        title: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger("loreforge")
        self.api_key = api_key if api_key is not None else os.getenv(api_key_env, "")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if referer:
            headers["HTTP-Referer"] = referer
        if title:
            headers["X-Title"] = title
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], logger: logging.Logger | None = None, **kwargs) -> "ContentConnector":
        service = config.get("service", {})
        return cls(
            timeout=float(service.get("timeout", 30)),
            logger=logger,
            api_key_env=str(service.get("api_key_env") or "OPENROUTER_API_KEY"),
            referer=service.get("referer"),
            title=service.get("title"),
            **kwargs,
        )

    # ------------------------------------------------------------------
    async def generate(self, endpoint: KindEndpoint, prompt: str) -> ModelResponse:
        payload = {
            "model": endpoint.model,
            "messages": [
                {"role": "system", "content": endpoint.system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": endpoint.temperature,
            "max_tokens": endpoint.max_tokens,
            "stream": False,
        }
        start = time.perf_counter()
        try:
            response = await self._client.post(endpoint.content_url, json=payload)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"{endpoint.kind.value} request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{endpoint.kind.value} request failed: {exc}") from exc
        elapsed = time.perf_counter() - start

        if response.status_code == 429:
            raise RateLimitedError(_error_detail(response))
        if response.status_code >= 400:
            raise UpstreamError(
                f"OpenRouter API error: {response.status_code} - {_error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError("Upstream returned a non-JSON body", status_code=response.status_code) from exc
        text, finish_reason = self.extract_text(data)
        if not text:
            raise UpstreamError("No content received from AI", status_code=response.status_code)
        tokens = 0
        usage = data.get("usage")
        if isinstance(usage, Mapping):
            tokens = int(usage.get("total_tokens") or 0)
        truncated = finish_reason == "length"
        if truncated:
            self.logger.warning("%s response hit the token limit and was truncated", endpoint.kind.value)
        self.logger.debug("%s responded in %.2fs (%d tokens)", endpoint.model, elapsed, tokens)
        return ModelResponse(text=text, truncated=truncated, elapsed=elapsed, tokens=tokens, raw=data)

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def extract_text(payload: Mapping[str, Any]) -> tuple[str, Optional[str]]:
        choices = payload.get("choices") if isinstance(payload, Mapping) else None
        if isinstance(choices, list) and choices:
            choice = choices[0]
            if isinstance(choice, Mapping):
                finish_reason = choice.get("finish_reason")
                message = choice.get("message")
                if isinstance(message, Mapping):
                    text = message.get("content")
                    if isinstance(text, str):
                        return text.strip(), finish_reason
                return "", finish_reason
        return "", None


class AssetConnector:
    """Request an image for generated content; returns a URL or data URI."""

    def __init__(
        self,
        *,
        timeout: float,
        logger: logging.Logger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger("loreforge")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], logger: logging.Logger | None = None, **kwargs) -> "AssetConnector":
        return cls(timeout=float(config.get("assets", {}).get("timeout", 60)), logger=logger, **kwargs)

    async def generate(self, url: str, prompt: str, owner_id: str) -> str:
        try:
            response = await self._client.post(url, json={"prompt": prompt, "userId": owner_id})
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"Asset request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise AssetFailure(f"Asset request failed: {exc}") from exc
        if response.status_code == 429:
            raise RateLimitedError(_error_detail(response))
        if response.status_code >= 400:
            raise AssetFailure(f"Asset service error: {response.status_code} - {_error_detail(response)}")
        try:
            data = response.json()
        except ValueError as exc:
            raise AssetFailure("Asset service returned a non-JSON body") from exc
        image = data.get("imageUrl") or data.get("portrait") if isinstance(data, Mapping) else None
        if not image:
            raise AssetFailure("No image generated")
        return str(image)

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["ModelResponse", "ContentConnector", "AssetConnector"]
