import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from studio_community.domain.community import dispatch
from studio_community.domain.community.exceptions import DispatchEnqueueFailed
from studio_community.domain.community.models import DeliveryJob
from studio_community.settings import settings


def _job(channel="push"):
    return DeliveryJob(
        user_id="u1",
        channel=channel,
        title="New message in Yin",
        body="See you tonight",
        source_ref="msg-1",
        notification_id="ntf-1",
        priority="medium",
    )


class SlowRedis:
    async def xadd(self, *args, **kwargs):
        await asyncio.sleep(1)


class DownRedis:
    async def xadd(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_queue_dispatcher_rejects_when_full():
    dispatcher = dispatch.QueueDispatcher(maxsize=1)
    await dispatcher.enqueue(_job("in_app"))
    with pytest.raises(DispatchEnqueueFailed) as excinfo:
        await dispatcher.enqueue(_job("push"))
    assert excinfo.value.channel == "push"
    assert excinfo.value.reason == "queue_full"
    assert [job.channel for job in dispatcher.pending()] == ["in_app"]
    assert dispatcher.pending() == []


@pytest.mark.asyncio
async def test_redis_stream_dispatcher_appends_job(fake_redis):
    dispatcher = dispatch.RedisStreamDispatcher(fake_redis, stream="test:delivery", maxlen=100)
    await dispatcher.enqueue(_job())
    entries = await fake_redis.xrange("test:delivery")
    assert len(entries) == 1
    _, fields = entries[0]
    assert fields["channel"] == "push"
    assert fields["notification_id"] == "ntf-1"
    assert fields["source_ref"] == "msg-1"


@pytest.mark.asyncio
async def test_redis_stream_dispatcher_times_out():
    dispatcher = dispatch.RedisStreamDispatcher(SlowRedis(), stream="s", maxlen=10, timeout=0.01)
    with pytest.raises(DispatchEnqueueFailed) as excinfo:
        await dispatcher.enqueue(_job("email"))
    assert excinfo.value.reason == "timeout"


@pytest.mark.asyncio
async def test_redis_stream_dispatcher_wraps_redis_errors():
    dispatcher = dispatch.RedisStreamDispatcher(DownRedis(), stream="s", maxlen=10)
    with pytest.raises(DispatchEnqueueFailed) as excinfo:
        await dispatcher.enqueue(_job())
    assert excinfo.value.reason == "ConnectionError"


def test_build_dispatcher_follows_settings(monkeypatch):
    assert isinstance(dispatch.build_dispatcher(), dispatch.QueueDispatcher)
    monkeypatch.setattr(settings, "dispatcher_backend", "redis")
    built = dispatch.build_dispatcher()
    assert isinstance(built, dispatch.RedisStreamDispatcher)
    assert built.stream == settings.dispatcher_stream
