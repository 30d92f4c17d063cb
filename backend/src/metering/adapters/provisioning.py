"""Provider adapters for sub-accounts that each own one phone number."""
import itertools
import random
from dataclasses import dataclass
from typing import Protocol
from uuid import uuid4

import httpx
import structlog

from metering.config import Settings, settings as default_settings
from metering.exceptions import ProvisioningError
from metering.utils.client_cache import ClientCache, client_cache

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProvisionedAccount:
    """A freshly created sub-account with its number."""

    account_id: str
    secret: str
    phone_number: str
    country: str


class ProvisioningProvider(Protocol):
    """Creates, re-keys and deletes provider sub-accounts."""

    async def create_subaccount_and_number(self, country: str) -> ProvisionedAccount:
        ...

    async def rotate_secret(self, account_id: str) -> str:
        """Invalidate the current secret and return the new one."""
        ...

    async def delete_subaccount(self, account_id: str) -> None:
        """Delete the sub-account; an already missing account counts as deleted."""
        ...


class TwilioProvisioningProvider:
    """
    Twilio REST implementation.

    A sub-account is created under the main account, a number is bought on
    the main account and then transferred into the sub-account. US pools
    use toll-free numbers, other countries mobile numbers.
    """

    def __init__(self, settings: Settings | None = None, clients: ClientCache | None = None):
        self.settings = settings or default_settings
        self.clients = clients or client_cache

    def _client(self):
        sid = self.settings.twilio_account_sid
        return self.clients.client(
            f"twilio:{sid}",
            lambda: httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                auth=(sid, self.settings.twilio_auth_token),
            ),
        )

    def _url(self, path: str) -> str:
        return f"{self.settings.twilio_api_base_url}{path}"

    async def create_subaccount_and_number(self, country: str) -> ProvisionedAccount:
        main_sid = self.settings.twilio_account_sid
        number_type = "TollFree" if country == "US" else "Mobile"
        try:
            async with self._client() as client:
                account_id, secret, phone_number = await self._buy_number(client, main_sid, country, number_type)
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise ProvisioningError(f"Failed to provision {country} number: {exc}") from exc

        logger.info("pool_number_provisioned", account_id=account_id, phone_number=phone_number, country=country)
        return ProvisionedAccount(account_id=account_id, secret=secret, phone_number=phone_number, country=country)

    async def _buy_number(
        self, client: httpx.AsyncClient, main_sid: str, country: str, number_type: str
    ) -> tuple[str, str, str]:
        response = await client.post(self._url("/Accounts.json"), data={"FriendlyName": f"{country} Pool Number"})
        response.raise_for_status()
        account = response.json()
        account_id = account["sid"]
        secret = account["auth_token"]

        response = await client.get(
            self._url(f"/Accounts/{main_sid}/AvailablePhoneNumbers/{country}/{number_type}.json"),
            params={"Limit": 1},
        )
        response.raise_for_status()
        candidates = response.json().get("available_phone_numbers") or []
        if not candidates:
            raise ProvisioningError(f"No available {country} {number_type} numbers")
        phone_number = candidates[0]["phone_number"]

        response = await client.post(
            self._url(f"/Accounts/{main_sid}/IncomingPhoneNumbers.json"),
            data={"PhoneNumber": phone_number},
        )
        response.raise_for_status()
        number_sid = response.json()["sid"]

        response = await client.post(
            self._url(f"/Accounts/{main_sid}/IncomingPhoneNumbers/{number_sid}.json"),
            data={"AccountSid": account_id},
        )
        response.raise_for_status()
        return account_id, secret, phone_number

    async def rotate_secret(self, account_id: str) -> str:
        try:
            async with self._client() as client:
                # Re-activating the account issues a new auth token
                response = await client.post(self._url(f"/Accounts/{account_id}.json"), data={"Status": "active"})
            response.raise_for_status()
            return response.json()["auth_token"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise ProvisioningError(f"Failed to regenerate token for {account_id}: {exc}") from exc

    async def delete_subaccount(self, account_id: str) -> None:
        try:
            async with self._client() as client:
                response = await client.delete(self._url(f"/Accounts/{account_id}.json"))
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"Failed to connect to Twilio: {exc}") from exc

        if response.status_code == 404:
            logger.info("pool_subaccount_already_deleted", account_id=account_id)
            return
        if response.is_error:
            raise ProvisioningError(f"Failed to delete sub-account {account_id}: {response.text}")


class FakeProvisioningProvider:
    """In-memory provider generating synthetic identifiers."""

    def __init__(self):
        self.deleted: list[str] = []
        self._numbers = itertools.count(random.randint(0, 9999))

    async def create_subaccount_and_number(self, country: str) -> ProvisionedAccount:
        account = ProvisionedAccount(
            account_id=f"AC_pool_mock_{uuid4().hex[:16]}",
            secret=f"mock_token_{uuid4().hex[:24]}",
            phone_number=f"+1555POOL{next(self._numbers) % 10000:04d}",
            country=country,
        )
        logger.info("pool_number_provisioned", account_id=account.account_id, country=country, provider="mock")
        return account

    async def rotate_secret(self, account_id: str) -> str:
        return f"mock_token_revoked_{uuid4().hex[:24]}"

    async def delete_subaccount(self, account_id: str) -> None:
        self.deleted.append(account_id)
        logger.info("pool_subaccount_deleted", account_id=account_id, provider="mock")


def get_provisioning_provider(settings: Settings | None = None) -> ProvisioningProvider:
    """Select the provider configured by ``provisioning_mode``."""
    settings = settings or default_settings
    if settings.provisioning_mode == "twilio":
        return TwilioProvisioningProvider(settings)
    return FakeProvisioningProvider()
