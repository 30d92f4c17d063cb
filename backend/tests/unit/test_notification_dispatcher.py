"""Unit tests for notification retries."""
import pytest

from conftest import FakeChannel
from metering.exceptions import NotificationDeliveryFailed
from metering.models.user import User
from metering.services.notification_dispatcher import NotificationDispatcher
from utils.factories import UserFactory


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def user() -> User:
    return User(**UserFactory.create())


@pytest.mark.asyncio
async def test_first_attempt_success_does_not_sleep(user: User) -> None:
    channel = FakeChannel()
    sleep = SleepRecorder()
    dispatcher = NotificationDispatcher(channel, sleep=sleep)

    delivery_id = await dispatcher.send_with_retry("hello", user, media_ref="https://example.com/a.png")

    assert delivery_id == "SM0001"
    assert channel.sent == [(user, "hello", "https://example.com/a.png")]
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_recovers_after_transient_failures(user: User) -> None:
    channel = FakeChannel(failures=2)
    sleep = SleepRecorder()
    dispatcher = NotificationDispatcher(channel, sleep=sleep)

    delivery_id = await dispatcher.send_with_retry("hello", user)

    assert delivery_id == "SM0003"
    assert channel.attempts == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_exhausted_retries_report_once_and_raise(user: User) -> None:
    channel = FakeChannel(failures=10)
    sleep = SleepRecorder()
    reports: list[tuple] = []

    async def reporter(failed_user: User, message: str, error: BaseException) -> None:
        reports.append((failed_user, message, error))

    dispatcher = NotificationDispatcher(channel, error_reporter=reporter, sleep=sleep)

    with pytest.raises(NotificationDeliveryFailed) as exc_info:
        await dispatcher.send_with_retry("hello", user)

    assert channel.attempts == 3
    assert sleep.delays == [0.5, 1.0]
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, ConnectionError)
    assert len(reports) == 1
    assert reports[0][0] is user
    assert reports[0][1] == "hello"


@pytest.mark.asyncio
async def test_reporter_failure_does_not_mask_delivery_failure(user: User) -> None:
    async def reporter(failed_user: User, message: str, error: BaseException) -> None:
        raise RuntimeError("mail server down")

    dispatcher = NotificationDispatcher(FakeChannel(failures=3), error_reporter=reporter, sleep=SleepRecorder())

    with pytest.raises(NotificationDeliveryFailed):
        await dispatcher.send_with_retry("hello", user)


@pytest.mark.asyncio
async def test_notify_user_of_error_swallows_terminal_failure(user: User) -> None:
    channel = FakeChannel(failures=3)
    dispatcher = NotificationDispatcher(channel, sleep=SleepRecorder())

    await dispatcher.notify_user_of_error(user, "Your credits ran out")

    assert channel.attempts == 3
    assert channel.sent == []
