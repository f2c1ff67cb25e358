"""Adapter lookup by provider family."""

import asyncio
from typing import Optional

import httpx

from orchestrator.providers.base import ProviderAdapter, ProviderFamily, Sleep
from orchestrator.providers.fal import FalAdapter
from orchestrator.providers.gemini import GeminiAdapter
from orchestrator.providers.minimax import MiniMaxAdapter
from orchestrator.providers.openai import OpenAIAdapter
from orchestrator.providers.replicate import ReplicateAdapter
from orchestrator.providers.stability import StabilityAdapter

ADAPTER_CLASSES = {
    ProviderFamily.GEMINI: GeminiAdapter,
    ProviderFamily.OPENAI: OpenAIAdapter,
    ProviderFamily.STABILITY: StabilityAdapter,
    ProviderFamily.MINIMAX: MiniMaxAdapter,
    ProviderFamily.REPLICATE: ReplicateAdapter,
    ProviderFamily.FAL: FalAdapter,
}


class AdapterFactory:
    """Builds adapters that share one HTTP client and sleep function."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, sleep: Sleep = asyncio.sleep):
        self.http_client = http_client
        self.sleep = sleep

    def for_family(self, family: ProviderFamily) -> ProviderAdapter:
        adapter_class = ADAPTER_CLASSES[family]
        return adapter_class(http_client=self.http_client, sleep=self.sleep)
