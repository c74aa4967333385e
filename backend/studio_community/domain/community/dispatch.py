"""Delivery dispatcher intake.

The routing engine only hands jobs over; sending email/push/sound is the
dispatcher's job. Enqueueing never blocks the caller: a full or unreachable
intake raises DispatchEnqueueFailed and the job is dropped.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol

from redis.exceptions import RedisError

from studio_community.domain.community.exceptions import DispatchEnqueueFailed
from studio_community.domain.community.models import DeliveryJob
from studio_community.infra.redis import redis_client
from studio_community.settings import settings


class DeliveryDispatcher(Protocol):
	async def enqueue(self, job: DeliveryJob) -> None:
		...


class QueueDispatcher:
	"""Bounded in-process intake consumed by a delivery worker."""

	def __init__(self, maxsize: Optional[int] = None) -> None:
		self.queue: asyncio.Queue[DeliveryJob] = asyncio.Queue(
			maxsize=settings.dispatcher_queue_size if maxsize is None else maxsize
		)

	async def enqueue(self, job: DeliveryJob) -> None:
		try:
			self.queue.put_nowait(job)
		except asyncio.QueueFull as exc:
			raise DispatchEnqueueFailed(job.channel, "queue_full") from exc

	async def get(self) -> DeliveryJob:
		return await self.queue.get()

	def pending(self) -> List[DeliveryJob]:
		"""Pop every queued job without waiting."""
		jobs: List[DeliveryJob] = []
		while True:
			try:
				jobs.append(self.queue.get_nowait())
			except asyncio.QueueEmpty:
				return jobs


class RedisStreamDispatcher:
	"""XADD jobs onto a capped Redis stream read by the delivery workers."""

	def __init__(
		self,
		client=None,
		*,
		stream: Optional[str] = None,
		maxlen: Optional[int] = None,
		timeout: Optional[float] = None,
	) -> None:
		self._client = client or redis_client
		self.stream = stream or settings.dispatcher_stream
		self._maxlen = maxlen or settings.dispatcher_stream_maxlen
		self._timeout = timeout if timeout is not None else settings.dispatcher_enqueue_timeout_seconds

	async def enqueue(self, job: DeliveryJob) -> None:
		try:
			await asyncio.wait_for(
				self._client.xadd(self.stream, job.to_fields(), maxlen=self._maxlen, approximate=True),
				timeout=self._timeout,
			)
		except asyncio.TimeoutError as exc:
			raise DispatchEnqueueFailed(job.channel, "timeout") from exc
		except (RedisError, OSError) as exc:
			raise DispatchEnqueueFailed(job.channel, type(exc).__name__) from exc


def build_dispatcher() -> DeliveryDispatcher:
	if settings.dispatcher_backend == "redis":
		return RedisStreamDispatcher()
	return QueueDispatcher()
