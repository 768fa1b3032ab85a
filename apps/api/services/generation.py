"""Paid generation provider abstraction used by the preview route."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from config import settings


class GenerationProviderError(RuntimeError):
    """The upstream provider failed or is not configured."""


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    mode: str = "image"
    target_model: Optional[str] = None
    aspect_ratio: Optional[str] = None


@dataclass(frozen=True)
class GenerationResult:
    asset_url: str
    provider: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class BaseGenerationProvider(ABC):
    provider_name: str

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        raise NotImplementedError


class UnconfiguredGenerationProvider(BaseGenerationProvider):
    """Fails every call until GENERATION_PROVIDER_URL is set."""

    provider_name = "unconfigured"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        raise GenerationProviderError(
            "Generation provider is not configured. Set GENERATION_PROVIDER_URL and retry."
        )


class HttpGenerationProvider(BaseGenerationProvider):
    provider_name = "http"

    def __init__(self, *, base_url: str, api_key: str = "", timeout_seconds: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "prompt": request.prompt,
            "mode": request.mode,
            "target_model": request.target_model,
            "aspect_ratio": request.aspect_ratio,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(f"{self.base_url}/generate", json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise GenerationProviderError(f"Generation provider request failed: {exc}") from exc

        asset_url = str(data.get("asset_url") or data.get("url") or "").strip()
        if not asset_url:
            raise GenerationProviderError("Generation provider returned no asset URL.")
        return GenerationResult(
            asset_url=asset_url,
            provider=str(data.get("provider") or self.provider_name),
            metadata=dict(data.get("metadata") or {}),
        )


def get_generation_provider() -> BaseGenerationProvider:
    if not settings.GENERATION_PROVIDER_URL:
        return UnconfiguredGenerationProvider()
    return HttpGenerationProvider(
        base_url=settings.GENERATION_PROVIDER_URL,
        api_key=settings.GENERATION_PROVIDER_API_KEY,
        timeout_seconds=float(settings.GENERATION_PROVIDER_TIMEOUT_SECONDS),
    )
