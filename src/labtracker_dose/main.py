"""Dose prior service entry point."""

import asyncio
import logging

from .config import Config
from .local_priors import LocalPriorStore
from .logging import setup_logging
from .prior_service import start_prior_service


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger = logging.getLogger(__name__)
    store = LocalPriorStore()

    logger.info("Dose prior service starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("Prior dataset: %s (%d entries)", store.version, len(store))

    asyncio.run(_run(config, store))


async def _run(config: Config, store: LocalPriorStore) -> None:
    server = await start_prior_service(
        config.service_host,
        config.service_port,
        store=store,
        db_url=config.database_url,
    )
    try:
        await server.serve_forever()
    finally:
        server.close()
        await server.wait_closed()


if __name__ == "__main__":
    main()
