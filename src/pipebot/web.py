import logging
from typing import Any, Mapping, Tuple

from sanic import Sanic, response, Request
import aiohttp
import pydantic
from sanic.log import logger
import sanic.log
from slack_sdk.web.async_client import AsyncWebClient
from prometheus_client import core
from prometheus_client.exposition import generate_latest

from pipebot import config
from pipebot.activity.model import ActivityRecord
from pipebot.github import SessionAPI
from pipebot.identity import SlackIdentityResolver
from pipebot.logger import get_log_handlers
from pipebot.metric import activity_counter, error_counter, request_counter
from pipebot.model import load_config
from pipebot.reconcile.errors import ConfigurationError, NotificationFailed
from pipebot.reconcile.orchestrator import NotificationOrchestrator
from pipebot.reconcile.references import (
    DiskReferenceStore,
    MemoryReferenceStore,
    ReferenceStore,
)
from pipebot.slack import SlackMessageSink
from pipebot.storage import ActivityStore


logging.basicConfig(
    format="%(asctime)s %(name)s %(levelname)s - %(message)s", level=logging.INFO
)


def create_reference_store() -> ReferenceStore:
    if config.REFERENCE_CACHE_DIR is None:
        logger.warning("REFERENCE_CACHE_DIR not set, message references are kept in memory")
        return MemoryReferenceStore()
    return DiskReferenceStore(config.REFERENCE_CACHE_DIR)


async def process_activity_event(
    payload: Mapping[str, Any],
    *,
    store: ActivityStore,
    orchestrator: NotificationOrchestrator,
) -> Tuple[int, str]:
    try:
        activity = ActivityRecord.model_validate(payload)
    except pydantic.ValidationError as e:
        activity_counter.labels(result="invalid").inc()
        logger.info("Activity rejected reason=invalid_payload error=%s", e)
        return 400, "invalid activity payload"

    try:
        if not activity.name:
            raise ConfigurationError("PipelineActivity name cannot be empty")
        store.upsert_activity(activity)
        await orchestrator.handle_activity_event(activity)
    except ConfigurationError as e:
        activity_counter.labels(result="rejected").inc()
        logger.warning("Activity rejected activity=%s reason=%s", activity.name, e)
        return 400, str(e)
    except NotificationFailed as e:
        activity_counter.labels(result="failed").inc()
        error_counter.labels(context="notification").inc()
        logger.error("Notification failed for activity=%s: %s", activity.name, e)
        return 200, "ok"

    activity_counter.labels(result="handled").inc()
    return 200, "ok"


def create_app():

    app = Sanic("pipebot")
    app.update_config(config)

    logging.getLogger().setLevel(config.OVERRIDE_LOGGING)

    for handler in get_log_handlers(sanic.log.logger):
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(name)s %(levelname)s - %(message)s")
        )

    @app.listener("before_server_start")
    async def init(app, loop):
        logger.debug("Creating aiohttp session")
        app.ctx.aiohttp_session = aiohttp.ClientSession()

        github = SessionAPI(app.ctx.aiohttp_session)
        # fail at startup on missing GitHub credentials
        await github.api()

        slack = AsyncWebClient(token=config.SLACK_TOKEN)
        bot_config = load_config(config.BOT_CONFIG)
        logger.info(
            "Loaded %s: %d pipeline rule(s), %d pull request rule(s)",
            config.BOT_CONFIG,
            len(bot_config.pipelines),
            len(bot_config.pull_requests),
        )

        app.ctx.activity_store = ActivityStore(
            config.ACTIVITY_DB_PATH, retention_days=config.ACTIVITY_RETENTION_DAYS
        )
        app.ctx.activity_store.initialize()
        app.ctx.references = create_reference_store()

        app.ctx.orchestrator = NotificationOrchestrator(
            config=bot_config,
            sink=SlackMessageSink(slack),
            references=app.ctx.references,
            pull_requests=github,
            activities=app.ctx.activity_store,
            identities=SlackIdentityResolver(
                slack, users=bot_config.users, git_users=github
            ),
            annotator=app.ctx.activity_store,
            provider_timeout=config.PROVIDER_TIMEOUT,
            sink_timeout=config.SINK_TIMEOUT,
            dry_run=config.DRY_RUN,
        )

    @app.listener("after_server_stop")
    async def shutdown(app, loop):
        await app.ctx.aiohttp_session.close()
        if isinstance(app.ctx.references, DiskReferenceStore):
            app.ctx.references.close()

    @app.on_request
    async def on_request(request: Request):
        if request.path == "/metrics":
            return
        request_counter.labels(path=request.path).inc()

    @app.get("/status")
    async def status(request):
        logger.debug("status check")
        return response.text("ok")

    @app.post("/activity")
    async def activity(request):
        logger.debug("Activity received")
        payload = request.json
        if not isinstance(payload, dict):
            activity_counter.labels(result="invalid").inc()
            return response.text("invalid activity payload", status=400)

        code, body = await process_activity_event(
            payload,
            store=app.ctx.activity_store,
            orchestrator=app.ctx.orchestrator,
        )
        return response.text(body, status=code)

    @app.get("/metrics")
    async def metrics(request):
        data = generate_latest(core.REGISTRY)
        return response.raw(data)

    return app
