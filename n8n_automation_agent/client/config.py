"""Configuration for the n8n HTTP client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class N8nSettings:
    """Immutable settings loaded from environment variables."""

    api_key: str = field(repr=False)
    api_endpoint: str = "http://localhost:5678"
    timeout: int = 120
    webhook_base_url: str | None = None
    publish_retry_delay: float = 1.0

    @classmethod
    def from_env(cls) -> N8nSettings:
        api_key = os.getenv("N8N_API_KEY", "")
        api_endpoint = os.getenv("N8N_API_ENDPOINT", "http://localhost:5678").rstrip("/")
        timeout = int(os.getenv("N8N_TIMEOUT", "120"))
        webhook_base_url = os.getenv("N8N_WEBHOOK_BASE_URL", "").rstrip("/") or None
        publish_retry_delay = float(os.getenv("N8N_PUBLISH_RETRY_DELAY", "1.0"))
        return cls(
            api_key=api_key,
            api_endpoint=api_endpoint,
            timeout=timeout,
            webhook_base_url=webhook_base_url,
            publish_retry_delay=publish_retry_delay,
        )

    @property
    def base_url(self) -> str:
        return f"{self.api_endpoint}/api/v1"

    @property
    def health_url(self) -> str:
        """The health probe lives outside the versioned API prefix."""
        return f"{self.api_endpoint}/healthz"

    @property
    def webhook_url_root(self) -> str:
        return self.webhook_base_url or self.api_endpoint

    @property
    def headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            h["X-N8N-API-KEY"] = self.api_key
        return h
