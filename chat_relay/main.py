from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from chat_relay.config import Settings
from chat_relay.database.connection import close_mongo_connection, connect_to_mongo
from chat_relay.errors import PartialDeliveryError, StorageError, ValidationError
from chat_relay.repositories.message_repository import MessageRepository
from chat_relay.repositories.recent_repository import RecentRepository
from chat_relay.repositories.user_repository import UserRepository
from chat_relay.routers.chat import router as chat_router
from chat_relay.routers.conversations import router as conversations_router
from chat_relay.routers.users import router as users_router
from chat_relay.services.chat_service import ChatService
from chat_relay.services.delivery_service import DeliveryCoordinator
from chat_relay.services.subscription_service import SubscriptionService
from chat_relay.utils.dependencies import AuthProvider, HeaderAuthProvider
from chat_relay.utils.log_config import configure_logging
from chat_relay.utils.realtime_bus import create_bus


logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[AsyncIOMotorDatabase] = None,
    bus=None,
    auth: Optional[AuthProvider] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        db = database
        if db is None:
            client, db = await connect_to_mongo(settings)
        realtime = bus if bus is not None else create_bus(settings)

        message_repo = MessageRepository(db)
        recent_repo = RecentRepository(db)
        user_repo = UserRepository(db)
        await message_repo.ensure_indexes()
        await recent_repo.ensure_indexes()

        app.state.settings = settings
        app.state.db = db
        app.state.bus = realtime
        app.state.auth = auth or HeaderAuthProvider()
        app.state.user_repo = user_repo
        app.state.chat_service = ChatService(message_repo, recent_repo, page_limit=settings.history_page_limit)
        app.state.delivery = DeliveryCoordinator(message_repo, recent_repo, user_repo, realtime, settings)
        app.state.subscriptions = SubscriptionService(message_repo, recent_repo, realtime)
        logger.info("chat-relay started", bus=realtime.name)
        try:
            yield
        finally:
            await realtime.close()
            if client is not None:
                await close_mongo_connection(client)

    app = FastAPI(title="chat-relay", lifespan=lifespan)

    app.include_router(chat_router)
    app.include_router(conversations_router)
    app.include_router(users_router)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=exc.to_dict())

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Storage unavailable", path=request.url.path, error=exc.detail)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=exc.to_dict())

    @app.exception_handler(PartialDeliveryError)
    async def partial_delivery_handler(request: Request, exc: PartialDeliveryError):
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=exc.to_dict())

    @app.get("/")
    async def root():
        return {"status": "ok", "bus": app.state.bus.name}

    return app
