from typing import Tuple

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from chat_relay.config import Settings


logger = structlog.get_logger()


async def connect_to_mongo(settings: Settings) -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
    db = client[settings.mongo_db]
    logger.info("Connected to MongoDB", database=settings.mongo_db)
    return client, db


async def close_mongo_connection(client: AsyncIOMotorClient) -> None:
    client.close()
    logger.info("Closed MongoDB connection")
