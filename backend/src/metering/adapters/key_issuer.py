"""Short-lived inference API keys for tier 3 self-hosted instances."""
from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

import httpx
import structlog

from metering.config import Settings, settings as default_settings
from metering.exceptions import ProvisioningError
from metering.utils.client_cache import ClientCache, client_cache

logger = structlog.get_logger(__name__)


class KeyIssuer(Protocol):
    """Issues API keys that stop working at a given time."""

    async def issue(self, user_id: str, expires_at: int) -> str:
        """Return a new key for the user valid until ``expires_at`` (epoch seconds)."""
        ...


class HttpKeyIssuer:
    """Creates keys through the inference provider's admin API."""

    def __init__(self, settings: Settings | None = None, clients: ClientCache | None = None):
        self.settings = settings or default_settings
        self.clients = clients or client_cache

    async def issue(self, user_id: str, expires_at: int) -> str:
        payload = {
            "name": f"Temporary API Key for User {user_id}",
            "expires_at": datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat(),
            "max_tokens": self.settings.key_issuer_max_tokens,
            "metadata": {"user_id": user_id},
        }

        try:
            async with self.clients.client(
                "key_issuer",
                lambda: httpx.AsyncClient(
                    timeout=self.settings.http_timeout_seconds,
                    headers={"Authorization": f"Bearer {self.settings.key_issuer_admin_key}"},
                ),
            ) as client:
                response = await client.post(f"{self.settings.key_issuer_base_url}/api/keys", json=payload)
                response.raise_for_status()
                key = response.json()["key"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise ProvisioningError(f"Failed to issue API key for user {user_id}: {exc}") from exc

        logger.info("api_key_issued", user_id=user_id, expires_at=expires_at)
        return key


class FakeKeyIssuer:
    """Generates synthetic keys without network calls."""

    def __init__(self):
        self.issued: list[tuple[str, int]] = []

    async def issue(self, user_id: str, expires_at: int) -> str:
        self.issued.append((user_id, expires_at))
        logger.info("api_key_issued", user_id=user_id, expires_at=expires_at, provider="mock")
        return f"tk_mock_{uuid4().hex[:32]}"


def get_key_issuer(settings: Settings | None = None) -> KeyIssuer:
    """Select the issuer configured by ``key_issuer_mode``."""
    settings = settings or default_settings
    if settings.key_issuer_mode == "http":
        return HttpKeyIssuer(settings)
    return FakeKeyIssuer()
