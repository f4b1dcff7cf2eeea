import asyncio
from enum import Enum
import json
import logging
from pathlib import Path

import typer
from slack_sdk.web.async_client import AsyncWebClient

from pipebot import config
from pipebot.activity.model import ActivityRecord
from pipebot.github import github_client
from pipebot.identity import SlackIdentityResolver
from pipebot.logger import get_log_handlers
from pipebot.model import load_config
from pipebot.reconcile.errors import NotificationFailed
from pipebot.reconcile.orchestrator import NotificationOrchestrator
from pipebot.reconcile.references import DiskReferenceStore
from pipebot.slack import SlackMessageSink
from pipebot.storage import ActivityStore
from pipebot.web import create_app, create_reference_store


logging.basicConfig(
    format="%(asctime)s %(name)s %(levelname)s - %(message)s", level=logging.INFO
)
logger = logging.getLogger("pipebot")


class Flow(str, Enum):
    all = "all"
    pipeline = "pipeline"
    review = "review"


app = typer.Typer()


@app.callback()
def init():
    logging.getLogger().setLevel(config.OVERRIDE_LOGGING)
    logger.setLevel(config.OVERRIDE_LOGGING)
    get_log_handlers(logger)


@app.command()
def serve(host: str = "0.0.0.0", port: int = 8000):
    create_app().run(host=host, port=port, single_process=True)


@app.command()
def notify(
    activity_file: Path = typer.Argument(..., exists=True, dir_okay=False),
    flow: Flow = Flow.all,
    bot_config: Path = typer.Option(config.BOT_CONFIG, "--config"),
    dry_run: bool = config.DRY_RUN,
):
    """Run the notification flows for one activity read from a JSON file."""
    activity = ActivityRecord.model_validate(json.loads(activity_file.read_text()))
    cfg = load_config(bot_config)

    store = ActivityStore(
        config.ACTIVITY_DB_PATH, retention_days=config.ACTIVITY_RETENTION_DAYS
    )
    store.initialize()
    store.upsert_activity(activity)
    references = create_reference_store()

    async def handle():
        async with github_client() as github:
            slack = AsyncWebClient(token=config.SLACK_TOKEN)
            orchestrator = NotificationOrchestrator(
                config=cfg,
                sink=SlackMessageSink(slack),
                references=references,
                pull_requests=github,
                activities=store,
                identities=SlackIdentityResolver(
                    slack, users=cfg.users, git_users=github
                ),
                annotator=store,
                provider_timeout=config.PROVIDER_TIMEOUT,
                sink_timeout=config.SINK_TIMEOUT,
                dry_run=dry_run,
            )
            handler = {
                Flow.all: orchestrator.handle_activity_event,
                Flow.pipeline: orchestrator.handle_pipeline_event,
                Flow.review: orchestrator.handle_review_event,
            }[flow]
            logger.info("Processing %s flow=%s", activity, flow.value)
            await handler(activity)

    try:
        asyncio.run(handle())
    except NotificationFailed as e:
        for error in e.errors:
            logger.error("%s", error)
        raise typer.Exit(code=1)
    finally:
        if isinstance(references, DiskReferenceStore):
            references.close()


@app.command()
def references(
    cache_dir: str = typer.Option(config.REFERENCE_CACHE_DIR, "--cache-dir"),
):
    """List the Slack messages recorded per destination and thread."""
    if cache_dir is None:
        typer.echo("No reference cache configured, set REFERENCE_CACHE_DIR")
        raise typer.Exit(code=1)

    with DiskReferenceStore(cache_dir) as store:
        for (destination, key), ref in sorted(store.items()):
            typer.echo(f"{destination}\t{key}\t{ref.channel_id}/{ref.timestamp}")
