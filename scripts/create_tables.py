import asyncio
import os

import asyncpg

from shapebase.db.postgres import create_tables
from shapebase.logger import logger


async def main():
    pool = await asyncpg.create_pool(os.environ["POSTGRES_URI"])

    logger.info("creating database tables")
    await create_tables(pool)
    logger.info("created all required tables")


if __name__ == "__main__":
    asyncio.run(main())
