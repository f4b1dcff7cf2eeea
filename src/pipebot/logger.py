import logging

import notifiers.logging

from pipebot import config


def get_log_handlers(logger):
    if config.LOG_SLACK_WEBHOOK is None:
        return []
    handler = notifiers.logging.NotificationHandler(
        "slack",
        defaults={"webhook_url": config.LOG_SLACK_WEBHOOK},
    )
    handler.setLevel(logging.WARNING)
    logger.addHandler(handler)
    return [handler]
