"""Chat completion client with async support and retry logic.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint. Used to run
delegated council reviews and council runner prompts.
"""

from __future__ import annotations

import asyncio
import os
import random
from typing import Any

import httpx

from .config import CompletionConfig


class CompletionClient:
    """
    Async HTTP client with retry/backoff logic.

    Features:
    - Exponential backoff with jitter for rate limits
    - Concurrency limiting via semaphore
    - Automatic retry on transient failures
    """

    def __init__(self, config: CompletionConfig):
        self.config = config
        self.semaphore = asyncio.Semaphore(config.max_concurrency)
        self.retry_max = int(os.getenv("GOVERNOR_RETRY_MAX", "6"))

    def _headers(self) -> dict[str, str]:
        if self.config.api_key:
            return {"Authorization": f"Bearer {self.config.api_key}"}
        return {}

    async def chat_completion(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """
        Send chat completion request with retry/backoff logic.

        Args:
            messages: List of message dicts with "role" and "content"
            temperature: Sampling temperature (default: from config)

        Returns:
            Response dict with "choices" containing the completion

        Retry strategy:
        - 429 (rate limit): Exponential backoff with jitter
        - 503/504 (server error): Exponential backoff
        - 400/401/403: No retry (client error)
        - Network errors: Retry with backoff

        Raises:
            RuntimeError: When GOVERNOR_DISABLE_NETWORK=1, or after max retries
            httpx.HTTPStatusError: On non-retryable client errors
        """
        if os.getenv("GOVERNOR_DISABLE_NETWORK") == "1":
            raise RuntimeError("Network access disabled (GOVERNOR_DISABLE_NETWORK=1)")

        if temperature is None:
            temperature = self.config.temperature

        async with self.semaphore:  # Limit concurrency
            for attempt in range(self.retry_max):
                try:
                    async with httpx.AsyncClient(
                        timeout=self.config.timeout_seconds
                    ) as client:
                        response = await client.post(
                            f"{self.config.base_url}/chat/completions",
                            headers=self._headers(),
                            json={
                                "model": self.config.model_id,
                                "messages": messages,
                                "temperature": temperature,
                            },
                        )

                        if response.status_code == 200:
                            return response.json()

                        # Retry on transient errors
                        if response.status_code in [429, 503, 504]:
                            sleep_time = (2**attempt) * 0.5  # Exponential backoff
                            jitter = random.uniform(0, 0.1 * sleep_time)
                            await asyncio.sleep(sleep_time + jitter)
                            continue

                        # Don't retry on client errors
                        response.raise_for_status()

                except (httpx.NetworkError, httpx.TimeoutException) as e:
                    if attempt < self.retry_max - 1:
                        sleep_time = (2**attempt) * 0.5
                        await asyncio.sleep(sleep_time)
                        continue
                    raise RuntimeError(
                        f"Network error after {self.retry_max} attempts: {e}"
                    ) from e

            raise RuntimeError(f"Max retries ({self.retry_max}) exceeded")

    async def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        """Single-turn completion returning the assistant text."""
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = await self.chat_completion(messages)
        return str(response["choices"][0]["message"]["content"])

    async def health_check(self) -> bool:
        """
        Check if the completion backend is accessible.

        Returns:
            True if API responds, False otherwise
        """
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.config.base_url}/models", headers=self._headers())
                return response.status_code == 200
        except httpx.HTTPError:
            return False
