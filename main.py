"""
posclient entry point.
Opens durable storage, restores the session and runs the background jobs.
"""

import asyncio

from loguru import logger

from posclient.client import PosClient
from posclient.settings import global_settings


async def main() -> None:
    logger.info("Starting POS client...")
    client: PosClient | None = None

    try:
        logger.info(f"Backend: {global_settings.api_base_url}")
        client = await PosClient.create()

        logger.info("Starting background jobs...")
        client.start()
        await client.scheduler.run_all_now()

        logger.info(f"Health: {client.get_health_status()}")
        logger.info("POS client is running. Press Ctrl+C to stop.")
        while True:
            await asyncio.sleep(60)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        if client is not None:
            logger.info("Closing POS client...")
            await client.close()

        logger.info("POS client stopped")


if __name__ == "__main__":
    asyncio.run(main())
