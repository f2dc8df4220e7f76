import asyncio
import os
import logging
from logging.config import dictConfig
import json
from typing import Optional

import sentry_sdk

from social.graze.paymail.config import Settings


def configure_logging(settings: Optional[Settings] = None):
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig()
    debug = settings.debug if settings is not None else False
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)


def configure_sentry(settings: Settings) -> bool:
    if not settings.sentry_dsn:
        return False
    sentry_sdk.init(dsn=settings.sentry_dsn, debug=settings.debug)
    return True


def invoke():
    settings = Settings()
    configure_logging(settings)
    configure_sentry(settings)

    from social.graze.paymail.resolve.__main__ import realMain

    asyncio.run(realMain(settings))


if __name__ == "__main__":
    invoke()
