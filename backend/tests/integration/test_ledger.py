"""Integration tests for balance checks and deductions."""
import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import FakeChannel, RecordingAlerts
from metering.exceptions import InsufficientCredits, InvalidEventType, UserNotFound
from metering.models.user import SubscriptionTier, User, UserSettings
from metering.services.ledger_service import DEPLETED_NOTICE, BalanceLedger
from metering.services.notification_dispatcher import NotificationDispatcher
from metering.services.recharge_service import AutoRechargeTrigger
from metering.services.user_store import UserStore

NOW = 1_760_000_000


async def _no_sleep(delay: float) -> None:
    return None


class FakeCharger:
    def __init__(self, amount: float = 5.0):
        self.amount = amount
        self.charged: list = []

    async def charge(self, user: User) -> float:
        self.charged.append(user.id)
        return self.amount


@pytest.fixture
def charger() -> FakeCharger:
    return FakeCharger()


@pytest_asyncio.fixture
async def ledger(db_session, session_factory, tasks, channel: FakeChannel, recording_alerts, charger):
    return BalanceLedger(
        db_session,
        dispatcher=NotificationDispatcher(channel, sleep=_no_sleep),
        recharge=AutoRechargeTrigger(charger, tasks, session_factory, threshold=2.0),
        alerts=recording_alerts,
        tasks=tasks,
        clock=lambda: NOW,
    )


async def _reload(session_factory, user_id) -> User:
    async with session_factory() as db:
        return await UserStore(db).find_by_id(user_id)


# check_sufficient


@pytest.mark.asyncio
async def test_included_region_always_passes(ledger: BalanceLedger, make_user, tasks) -> None:
    user = await make_user(phone_number="+46701234567", credits=0.0, credits_left=0.0)

    await ledger.check_sufficient(user, "noti_call")
    await ledger.check_sufficient(user, "voice", 600)
    await tasks.drain()


@pytest.mark.asyncio
async def test_quota_alone_is_sufficient(ledger: BalanceLedger, make_user) -> None:
    user = await make_user(credits=0.0, credits_left=1.0)

    await ledger.check_sufficient(user, "message")


@pytest.mark.asyncio
async def test_credits_alone_are_sufficient(ledger: BalanceLedger, make_user) -> None:
    user = await make_user(credits=0.075, credits_left=0.0)

    await ledger.check_sufficient(user, "message")


@pytest.mark.asyncio
async def test_negative_balances_never_pass(ledger: BalanceLedger, make_user) -> None:
    user = await make_user(credits=-1.0, credits_left=-1.0)

    with pytest.raises(InsufficientCredits):
        await ledger.check_sufficient(user, "voice", 0)


@pytest.mark.asyncio
async def test_insufficient_notifies_user_and_stamps_time(
    ledger: BalanceLedger, make_user, tasks, channel: FakeChannel, db_session, session_factory
) -> None:
    user = await make_user(credits=0.01, credits_left=0.4)

    with pytest.raises(InsufficientCredits):
        await ledger.check_sufficient(user, "noti_msg")
    await db_session.commit()
    await tasks.drain()

    assert len(channel.sent) == 1
    assert channel.sent[0][1] == DEPLETED_NOTICE
    assert (await _reload(session_factory, user.id)).last_credits_notification == NOW


@pytest.mark.asyncio
async def test_user_is_notified_at_most_once_a_day(
    ledger: BalanceLedger, make_user, tasks, channel: FakeChannel
) -> None:
    user = await make_user(credits=0.0, credits_left=0.0, last_credits_notification=NOW - 3600)

    with pytest.raises(InsufficientCredits):
        await ledger.check_sufficient(user, "message")
    await tasks.drain()

    assert channel.sent == []


@pytest.mark.asyncio
async def test_stale_notification_stamp_allows_new_notice(
    ledger: BalanceLedger, make_user, tasks, channel: FakeChannel
) -> None:
    user = await make_user(credits=0.0, credits_left=0.0, last_credits_notification=NOW - 25 * 3600)

    with pytest.raises(InsufficientCredits):
        await ledger.check_sufficient(user, "message")
    await tasks.drain()

    assert len(channel.sent) == 1


@pytest.mark.asyncio
async def test_digest_rejection_is_silent(
    ledger: BalanceLedger, make_user, tasks, channel: FakeChannel, session_factory
) -> None:
    user = await make_user(credits=0.0, credits_left=2.0)

    with pytest.raises(InsufficientCredits):
        await ledger.check_sufficient(user, "digest", 3)
    await tasks.drain()

    assert channel.sent == []
    assert (await _reload(session_factory, user.id)).last_credits_notification is None


@pytest.mark.asyncio
async def test_unknown_event_type_is_rejected(ledger: BalanceLedger, make_user) -> None:
    user = await make_user()

    with pytest.raises(InvalidEventType):
        await ledger.check_sufficient(user, "fax")
    with pytest.raises(InvalidEventType):
        await ledger.deduct(user.id, "fax")


# auto-recharge


@pytest.mark.asyncio
async def test_low_balance_schedules_recharge_on_successful_check(
    ledger: BalanceLedger, make_user, tasks, charger: FakeCharger, session_factory
) -> None:
    user = await make_user(credits=1.5, credits_left=10.0, charge_when_under=True)

    await ledger.check_sufficient(user, "message")
    await tasks.drain()

    assert charger.charged == [user.id]
    assert (await _reload(session_factory, user.id)).credits == pytest.approx(6.5)


@pytest.mark.asyncio
async def test_low_balance_schedules_recharge_on_rejected_check(
    ledger: BalanceLedger, make_user, tasks, charger: FakeCharger
) -> None:
    user = await make_user(credits=0.0, credits_left=0.0, charge_when_under=True)

    with pytest.raises(InsufficientCredits):
        await ledger.check_sufficient(user, "message")
    await tasks.drain()

    assert charger.charged == [user.id]


@pytest.mark.asyncio
async def test_no_recharge_without_opt_in(ledger: BalanceLedger, make_user, tasks, charger: FakeCharger) -> None:
    user = await make_user(credits=0.5, charge_when_under=False)

    await ledger.check_sufficient(user, "message")
    await tasks.drain()

    assert charger.charged == []


# deduct


@pytest.mark.asyncio
async def test_deduct_spends_quota_first(ledger: BalanceLedger, make_user, session_factory) -> None:
    user = await make_user(credits=3.0, credits_left=5.0)

    deduction = await ledger.deduct(user.id, "message")
    await ledger.db.commit()

    assert deduction.balance == "quota"
    assert deduction.amount == 1.0
    reloaded = await _reload(session_factory, user.id)
    assert reloaded.credits_left == 4.0
    assert reloaded.credits == 3.0


@pytest.mark.asyncio
async def test_deduct_falls_back_to_credits(ledger: BalanceLedger, make_user, session_factory) -> None:
    user = await make_user(credits=1.0, credits_left=0.4)

    deduction = await ledger.deduct(user.id, "message")
    await ledger.db.commit()

    assert deduction.balance == "credits"
    reloaded = await _reload(session_factory, user.id)
    assert reloaded.credits == pytest.approx(0.925)
    assert reloaded.credits_left == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_deduct_clamps_at_zero(ledger: BalanceLedger, make_user, session_factory) -> None:
    user = await make_user(phone_number="+358401234567", credits=0.05, credits_left=0.0)

    await ledger.deduct(user.id, "noti_call")
    await ledger.db.commit()

    assert (await _reload(session_factory, user.id)).credits == 0.0


@pytest.mark.asyncio
async def test_voice_is_always_paid_from_credits(ledger: BalanceLedger, make_user, session_factory) -> None:
    user = await make_user(credits=10.0, credits_left=50.0)

    deduction = await ledger.deduct(user.id, "voice", 100)
    await ledger.db.commit()

    assert deduction.balance == "credits"
    reloaded = await _reload(session_factory, user.id)
    assert reloaded.credits == pytest.approx(9.67)
    assert reloaded.credits_left == 50.0


@pytest.mark.asyncio
async def test_digest_deducts_one_quota_unit_per_message(ledger: BalanceLedger, make_user, session_factory) -> None:
    user = await make_user(credits=1.0, credits_left=5.0)

    await ledger.deduct(user.id, "digest", 3)
    await ledger.db.commit()

    assert (await _reload(session_factory, user.id)).credits_left == 2.0


@pytest.mark.asyncio
async def test_deduct_in_included_region_changes_nothing(ledger: BalanceLedger, make_user, session_factory) -> None:
    user = await make_user(phone_number="+4915112345678", credits=1.0, credits_left=1.0)

    deduction = await ledger.deduct(user.id, "noti_call")

    assert deduction.balance is None
    reloaded = await _reload(session_factory, user.id)
    assert (reloaded.credits, reloaded.credits_left) == (1.0, 1.0)


@pytest.mark.asyncio
async def test_deduct_unknown_user(ledger: BalanceLedger) -> None:
    from uuid import uuid4

    with pytest.raises(UserNotFound):
        await ledger.deduct(uuid4(), "message")


# tier 3


@pytest.mark.asyncio
async def test_tier3_price_override_applies(ledger: BalanceLedger, make_user, session_factory) -> None:
    user = await make_user(
        phone_number="+358401234567",
        sub_tier=SubscriptionTier.TIER_3,
        credits=1.0,
        credits_left=0.0,
        settings={"outbound_message_pricing": 0.10},
    )

    cost = await ledger.cost_for(user, "message")
    await ledger.deduct(user.id, "message")
    await ledger.db.commit()

    assert cost.monetary == 0.10
    assert (await _reload(session_factory, user.id)).credits == pytest.approx(0.90)


@pytest.mark.asyncio
async def test_override_ignored_for_non_tier3(ledger: BalanceLedger, make_user) -> None:
    user = await make_user(phone_number="+358401234567", settings={"outbound_message_pricing": 0.10})

    cost = await ledger.cost_for(user, "message")

    assert cost.monetary == 0.30


@pytest.mark.asyncio
async def test_tier3_thousandth_message_alerts_once(
    ledger: BalanceLedger, make_user, tasks, recording_alerts: RecordingAlerts, db_session
) -> None:
    user = await make_user(
        sub_tier=SubscriptionTier.TIER_3,
        credits_left=100.0,
        settings={"monthly_message_count": 999},
    )

    await ledger.deduct(user.id, "message")
    await ledger.deduct(user.id, "message")
    await ledger.db.commit()
    await tasks.drain()

    assert len(recording_alerts.alerts) == 1
    subject, body = recording_alerts.alerts[0]
    assert subject == f"Tier 3 Usage Alert - User {user.id} - 1000 Messages"
    assert user.email in body
    assert "1000" in body

    result = await db_session.execute(
        select(UserSettings.monthly_message_count).where(UserSettings.user_id == user.id)
    )
    assert result.scalar_one() == 1001


@pytest.mark.asyncio
async def test_tier3_counter_ignores_other_events(ledger: BalanceLedger, make_user, db_session) -> None:
    user = await make_user(
        sub_tier=SubscriptionTier.TIER_3,
        credits=5.0,
        settings={"monthly_message_count": 10},
    )

    await ledger.deduct(user.id, "noti_msg")
    await ledger.deduct(user.id, "voice", 30)

    result = await db_session.execute(
        select(UserSettings.monthly_message_count).where(UserSettings.user_id == user.id)
    )
    assert result.scalar_one() == 10


@pytest.mark.asyncio
async def test_monthly_reset_only_touches_tier3(ledger: BalanceLedger, make_user, db_session) -> None:
    tier3 = await make_user(sub_tier=SubscriptionTier.TIER_3, settings={"monthly_message_count": 1200})
    tier2 = await make_user(settings={"monthly_message_count": 7})

    assert await ledger.reset_monthly_message_counts() == 1

    store = UserStore(db_session)
    assert await store.get_monthly_message_count(tier3.id) == 0
    assert await store.get_monthly_message_count(tier2.id) == 7
