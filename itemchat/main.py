import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from itemchat.core.config import Settings, get_settings
from itemchat.core.exceptions import ChatError
from itemchat.core.logging import configure_logging
from itemchat.database.connection import close_mongo_connection, connect_to_mongo
from itemchat.realtime.bus import Bus, create_bus
from itemchat.routers.chat import router as chat_router
from itemchat.routers.conversations import router as conversations_router
from itemchat.services import build_services


logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[AsyncIOMotorDatabase] = None,
    bus: Optional[Bus] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = db if db is not None else await connect_to_mongo(settings.MONGO_URL, settings.MONGO_DB)
        realtime_bus = bus if bus is not None else create_bus(settings.REDIS_URL)
        chat = build_services(database, settings, realtime_bus)
        await chat.ensure_indexes(database)
        app.state.db = database
        app.state.chat = chat
        sweeper = asyncio.create_task(chat.channel.run_sweeper(settings.SWEEP_INTERVAL))
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
            await chat.channel.close()
            await realtime_bus.close()
            if db is None:
                await close_mongo_connection()

    app = FastAPI(title="Item conversations", lifespan=lifespan)

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    app.include_router(conversations_router)
    app.include_router(chat_router)

    @app.get("/")
    async def root(request: Request):
        database = request.app.state.db
        collections = await database.list_collection_names()
        chat = request.app.state.chat
        return {
            "message": "Connected to MongoDB!",
            "collections": collections,
            "realtime": "redis" if chat.bus.enabled else "local",
            "bus_ok": await chat.bus.ping(),
        }

    return app


def build_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    return create_app(settings)


app = build_app()
