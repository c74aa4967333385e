import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from studio_community.api import community as community_api
from studio_community.domain.community import (
	ClassThreadService,
	MessageService,
	NotificationRouter,
	NotificationService,
	ReadTracker,
	ThreadService,
)
from studio_community.domain.community.dispatch import QueueDispatcher
from studio_community.domain.community.repo import CommunityRepository, reset_memory_state
from studio_community.infra import postgres
from studio_community.main import app
from studio_community.settings import settings


# Ensure a selector-based event loop policy on Windows to avoid Proactor issues with async IO
if hasattr(asyncio, "WindowsSelectorEventLoopPolicy"):
	try:
		asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
	except Exception:
		# Non-fatal; proceed with default policy
		pass


class TickingClock:
	"""Deterministic clock advancing by `step` on every read."""

	def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)) -> None:
		self.now = start
		self.step = step

	def __call__(self) -> datetime:
		current = self.now
		self.now = current + self.step
		return current

	def set(self, value: datetime) -> None:
		self.now = value


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from studio_community.infra.redis import redis_client, set_redis_client
	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest_asyncio.fixture(autouse=True)
async def reset_store():
	await reset_memory_state()
	yield
	await community_api.get_notification_router().drain()
	community_api.get_notification_router().dispatcher.pending()
	await reset_memory_state()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep every test on the in-memory store and in-process dispatcher."""
	original = (settings.environment, settings.community_store, settings.dispatcher_backend)
	settings.environment = "test"
	settings.community_store = "memory"
	settings.dispatcher_backend = "queue"
	try:
		yield
	finally:
		settings.environment, settings.community_store, settings.dispatcher_backend = original


@pytest.fixture
def clock():
	return TickingClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


@pytest_asyncio.fixture
async def services(clock):
	"""Service graph over the in-memory store sharing one clock and dispatcher."""
	repository = CommunityRepository(use_postgres=False)
	dispatcher = QueueDispatcher(maxsize=1000)
	router = NotificationRouter(repository, dispatcher, clock=clock)
	reads = ReadTracker(repository)
	threads = ThreadService(repository, clock=clock)
	messages = MessageService(repository, router=router, read_tracker=reads, clock=clock)
	yield SimpleNamespace(
		repo=repository,
		dispatcher=dispatcher,
		router=router,
		reads=reads,
		threads=threads,
		messages=messages,
		notifications=NotificationService(repository, clock=clock),
		classes=ClassThreadService(repository, threads=threads, messages=messages, router=router),
		clock=clock,
	)
	await router.drain()
