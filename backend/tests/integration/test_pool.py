"""Integration tests for the number pool."""
import asyncio
import dataclasses
from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from conftest import RecordingAlerts
from metering.adapters.key_issuer import FakeKeyIssuer
from metering.adapters.provisioning import FakeProvisioningProvider, ProvisionedAccount
from metering.exceptions import NoActiveResource, PoolExhausted, ProvisioningError, ResourceNotFound
from metering.models.pool_resource import UNASSIGNED_OWNER, PoolResource, PoolResourceStatus
from metering.services.pool_service import ResourcePool

BASE_TIME = datetime(2025, 1, 1, 0, 0, 0)


class FlakyProvider(FakeProvisioningProvider):
    """Fails the listed create/delete calls (1-based)."""

    def __init__(self, failing_creates: set[int] = frozenset(), failing_deletes: set[str] = frozenset()):
        super().__init__()
        self.failing_creates = failing_creates
        self.failing_deletes = failing_deletes
        self.creates = 0

    async def create_subaccount_and_number(self, country: str) -> ProvisionedAccount:
        self.creates += 1
        if self.creates in self.failing_creates:
            raise ProvisioningError("No available US TollFree numbers")
        return await super().create_subaccount_and_number(country)

    async def delete_subaccount(self, account_id: str) -> None:
        if account_id in self.failing_deletes:
            raise ProvisioningError(f"Failed to delete sub-account {account_id}")
        await super().delete_subaccount(account_id)


REPEATED_NUMBER = "+15550000001"


class RepeatingNumberProvider(FakeProvisioningProvider):
    """Hands out the same phone number for the first ``repeats`` creates."""

    def __init__(self, repeats: int):
        super().__init__()
        self.repeats = repeats
        self.creates = 0

    async def create_subaccount_and_number(self, country: str) -> ProvisionedAccount:
        self.creates += 1
        account = await super().create_subaccount_and_number(country)
        if self.creates <= self.repeats:
            return dataclasses.replace(account, phone_number=REPEATED_NUMBER)
        return account


async def _seed_available(make_pool_resource, count: int, country: str = "US") -> list[PoolResource]:
    return [
        await make_pool_resource(country=country, created_at=BASE_TIME + timedelta(minutes=i))
        for i in range(count)
    ]


async def _rows(db_session) -> list[PoolResource]:
    result = await db_session.execute(select(PoolResource).execution_options(populate_existing=True))
    return list(result.scalars().all())


# maintain_buffer


@pytest.mark.asyncio
async def test_maintain_tops_up_to_low_watermark(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 1)
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    provisioned = await pool.maintain_buffer()

    assert provisioned == 2
    assert await pool.count_available() == 3
    new = [r for r in await _rows(db_session) if r.provider_account_id.startswith("AC_pool_mock_")]
    assert len(new) == 2
    assert all(r.owner_user_id == UNASSIGNED_OWNER and r.status is PoolResourceStatus.AVAILABLE for r in new)
    assert all(r.phone_number.startswith("+1555POOL") for r in new)


@pytest.mark.asyncio
async def test_maintain_is_noop_at_watermark(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 3)
    provider = FlakyProvider()
    pool = ResourcePool(db_session, provider)

    assert await pool.maintain_buffer() == 0
    assert provider.creates == 0


@pytest.mark.asyncio
async def test_maintain_ignores_assigned_and_foreign_units(db_session, make_pool_resource) -> None:
    await make_pool_resource(owner_user_id="u1", status=PoolResourceStatus.ASSIGNED)
    await make_pool_resource(country="GB")
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    assert await pool.maintain_buffer() == 3


@pytest.mark.asyncio
async def test_maintain_continues_after_failed_unit_and_alerts(db_session) -> None:
    provider = FlakyProvider(failing_creates={1})
    alerts = RecordingAlerts()
    pool = ResourcePool(db_session, provider, alerts=alerts)

    provisioned = await pool.maintain_buffer()

    assert provisioned == 2
    assert provider.creates == 3
    assert len(alerts.alerts) == 1
    subject, body = alerts.alerts[0]
    assert subject == "Number Pool Provisioning Failed - US"
    assert "No available US TollFree numbers" in body


@pytest.mark.asyncio
async def test_maintain_continues_after_unit_fails_to_store(db_session) -> None:
    provider = RepeatingNumberProvider(repeats=2)
    alerts = RecordingAlerts()
    pool = ResourcePool(db_session, provider, alerts=alerts)

    provisioned = await pool.maintain_buffer()
    await db_session.commit()

    assert provisioned == 2
    rows = await _rows(db_session)
    assert len(rows) == 2
    assert len({r.phone_number for r in rows}) == 2
    # The unit that could not be stored is given back to the provider
    assert len(provider.deleted) == 1
    assert provider.deleted[0] not in {r.provider_account_id for r in rows}
    subject, body = alerts.alerts[0]
    assert subject == "Number Pool Provisioning Failed - US"
    assert REPEATED_NUMBER in body


@pytest.mark.asyncio
async def test_pools_sharing_a_lock_serialize_maintenance(db_session) -> None:
    lock = asyncio.Lock()
    await lock.acquire()
    pool = ResourcePool(db_session, FakeProvisioningProvider(), lock=lock)

    run = asyncio.create_task(pool.maintain_buffer())
    await asyncio.sleep(0.01)
    assert not run.done()

    lock.release()
    assert await run == 3


# cleanup_excess


@pytest.mark.asyncio
async def test_cleanup_releases_oldest_down_to_low_watermark(db_session, make_pool_resource) -> None:
    seeded = await _seed_available(make_pool_resource, 12)
    provider = FakeProvisioningProvider()
    pool = ResourcePool(db_session, provider)

    released = await pool.cleanup_excess()

    assert released == 9
    assert provider.deleted == [r.provider_account_id for r in seeded[:9]]
    remaining = {r.id for r in await _rows(db_session)}
    assert remaining == {r.id for r in seeded[9:]}


@pytest.mark.asyncio
async def test_cleanup_is_noop_at_high_watermark(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 10)
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    assert await pool.cleanup_excess() == 0
    assert await pool.count_available() == 10


@pytest.mark.asyncio
async def test_cleanup_skips_units_that_fail_to_release(db_session, make_pool_resource) -> None:
    seeded = await _seed_available(make_pool_resource, 11)
    stuck = seeded[0]
    pool = ResourcePool(db_session, FlakyProvider(failing_deletes={stuck.provider_account_id}))

    released = await pool.cleanup_excess()

    assert released == 7
    assert stuck.id in {r.id for r in await _rows(db_session)}


# revoke / release


@pytest.mark.asyncio
async def test_revoke_rotates_secret_and_returns_unit(db_session, make_pool_resource) -> None:
    resource = await make_pool_resource(
        owner_user_id="user-1",
        status=PoolResourceStatus.ASSIGNED,
        provider_secret="old-secret",
    )
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    revoked = await pool.revoke(resource.id)

    assert revoked.owner_user_id == UNASSIGNED_OWNER
    assert revoked.status is PoolResourceStatus.AVAILABLE
    assert revoked.provider_secret.startswith("mock_token_revoked_")


@pytest.mark.asyncio
async def test_release_deletes_at_provider_then_row(db_session, make_pool_resource) -> None:
    resource = await make_pool_resource(country="GB")
    provider = FakeProvisioningProvider()
    pool = ResourcePool(db_session, provider)

    await pool.release(resource.id)

    assert provider.deleted == [resource.provider_account_id]
    assert await _rows(db_session) == []


@pytest.mark.asyncio
async def test_failed_provider_delete_keeps_row(db_session, make_pool_resource) -> None:
    resource = await make_pool_resource(country="GB")
    pool = ResourcePool(db_session, FlakyProvider(failing_deletes={resource.provider_account_id}))

    with pytest.raises(ProvisioningError):
        await pool.release(resource.id)
    assert len(await _rows(db_session)) == 1


@pytest.mark.asyncio
async def test_missing_resource(db_session) -> None:
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    with pytest.raises(ResourceNotFound):
        await pool.revoke(uuid4())
    with pytest.raises(ResourceNotFound):
        await pool.release(uuid4())


# tier 3 cancellation


@pytest.mark.asyncio
async def test_us_cancellation_returns_number_to_pool(db_session, make_pool_resource) -> None:
    user_id = uuid4()
    resource = await make_pool_resource(owner_user_id=str(user_id), status=PoolResourceStatus.ASSIGNED)
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    await pool.handle_tier3_cancellation(user_id)

    await db_session.refresh(resource)
    assert resource.status is PoolResourceStatus.AVAILABLE
    assert resource.owner_user_id == UNASSIGNED_OWNER


@pytest.mark.asyncio
async def test_us_cancellation_triggers_cleanup_above_high_watermark(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 10)
    user_id = uuid4()
    await make_pool_resource(
        owner_user_id=str(user_id),
        status=PoolResourceStatus.ASSIGNED,
        created_at=BASE_TIME + timedelta(days=1),
    )
    provider = FakeProvisioningProvider()
    pool = ResourcePool(db_session, provider)

    await pool.handle_tier3_cancellation(user_id)

    assert len(provider.deleted) == 8
    assert await pool.count_available() == 3


@pytest.mark.asyncio
async def test_non_us_cancellation_releases_number(db_session, make_pool_resource) -> None:
    user_id = uuid4()
    resource = await make_pool_resource(
        owner_user_id=str(user_id),
        status=PoolResourceStatus.ASSIGNED,
        country="FI",
    )
    provider = FakeProvisioningProvider()
    pool = ResourcePool(db_session, provider)

    await pool.handle_tier3_cancellation(user_id)

    assert provider.deleted == [resource.provider_account_id]
    assert await _rows(db_session) == []


@pytest.mark.asyncio
async def test_cancellation_without_assigned_number(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 2)
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    with pytest.raises(NoActiveResource):
        await pool.handle_tier3_cancellation(uuid4())


# assign


@pytest.mark.asyncio
async def test_assign_takes_oldest_available_unit(db_session, make_pool_resource) -> None:
    seeded = await _seed_available(make_pool_resource, 3)
    user_id = uuid4()
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    resource = await pool.assign(user_id, "US")

    assert resource.id == seeded[0].id
    assert resource.owner_user_id == str(user_id)
    assert resource.status is PoolResourceStatus.ASSIGNED
    assert await pool.count_available() == 2
    assert (await pool.assign(user_id, "US")).id == resource.id


@pytest.mark.asyncio
async def test_assign_from_empty_pool(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 2, country="GB")
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    with pytest.raises(PoolExhausted):
        await pool.assign(uuid4(), "US")


@pytest.mark.asyncio
async def test_status_matches_owner_after_lifecycle(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 3)
    pool = ResourcePool(db_session, FakeProvisioningProvider())
    user_id = uuid4()

    await pool.assign(user_id, "US")
    await pool.handle_tier3_cancellation(user_id)

    for resource in await _rows(db_session):
        assert (resource.status is PoolResourceStatus.AVAILABLE) == (resource.owner_user_id == UNASSIGNED_OWNER)


# inference API keys


@pytest.mark.asyncio
async def test_regenerate_key_stores_new_key_on_users_unit(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 1)
    issuer = FakeKeyIssuer()
    pool = ResourcePool(db_session, FakeProvisioningProvider(), key_issuer=issuer)
    user_id = uuid4()
    resource = await pool.assign(user_id, "US")

    first = await pool.regenerate_key(user_id, 1767225600)
    second = await pool.regenerate_key(user_id, 1769904000)

    assert first != second
    assert first.startswith("tk_mock_")
    assert issuer.issued == [(str(user_id), 1767225600), (str(user_id), 1769904000)]
    assert (await pool.get(resource.id)).api_key == second


@pytest.mark.asyncio
async def test_regenerate_key_without_assigned_unit(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 1)
    issuer = FakeKeyIssuer()
    pool = ResourcePool(db_session, FakeProvisioningProvider(), key_issuer=issuer)

    with pytest.raises(NoActiveResource):
        await pool.regenerate_key(uuid4(), 1767225600)
    assert issuer.issued == []


@pytest.mark.asyncio
async def test_regenerate_key_without_issuer(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 1)
    pool = ResourcePool(db_session, FakeProvisioningProvider())
    user_id = uuid4()
    await pool.assign(user_id, "US")

    with pytest.raises(ProvisioningError):
        await pool.regenerate_key(user_id, 1767225600)


@pytest.mark.asyncio
async def test_returned_unit_drops_its_key(db_session, make_pool_resource) -> None:
    await _seed_available(make_pool_resource, 1)
    pool = ResourcePool(db_session, FakeProvisioningProvider(), key_issuer=FakeKeyIssuer())
    user_id = uuid4()
    resource = await pool.assign(user_id, "US")
    await pool.regenerate_key(user_id, 1767225600)

    await pool.handle_tier3_cancellation(user_id)

    assert (await pool.get(resource.id)).api_key is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "days_until_renewal, days_elapsed, per_day",
    [(20, 10, 30000), (30, 1, 300000), (45, 1, 300000), (0, 30, 10000)],
)
async def test_key_renewal_notice(db_session, days_until_renewal: int, days_elapsed: int, per_day: int) -> None:
    alerts = RecordingAlerts()
    pool = ResourcePool(db_session, FakeProvisioningProvider(), alerts=alerts)
    user_id = uuid4()

    await pool.notify_key_renewal(user_id, "owner@example.com", days_until_renewal, 300000)

    subject, body = alerts.alerts[0]
    assert subject == f"API Key Renewal - User {user_id}"
    assert "User Email: owner@example.com" in body
    assert f"Days Until Next Billing: {days_until_renewal}" in body
    assert f"Days Since Last Renewal: {days_elapsed}" in body
    assert "Total Tokens Consumed: 300000" in body
    assert f"Average Tokens/Day: {per_day}" in body


@pytest.mark.asyncio
async def test_key_renewal_notice_without_alerts(db_session) -> None:
    pool = ResourcePool(db_session, FakeProvisioningProvider())

    await pool.notify_key_renewal(uuid4(), "owner@example.com", 10, 5)
