"""ASGI entrypoint for the studio community service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from studio_community.api import community, ops
from studio_community.api.errors import install_error_handlers
from studio_community.infra import postgres
from studio_community.obs import init as obs_init
from studio_community.settings import settings

_LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.uses_postgres():
		await postgres.init_pool()
	_LOG.info(
		"service.started",
		extra={"store": settings.community_store, "dispatcher": settings.dispatcher_backend},
	)
	try:
		yield
	finally:
		# Fan-outs already scheduled must finish before the store goes away.
		await community.get_notification_router().drain()
		await postgres.close_pool()


app = FastAPI(title="Studio Community Core", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

app.include_router(ops.router)
app.include_router(community.router)
