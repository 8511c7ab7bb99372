import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.cors import CORSMiddleware

from coach_chatbot.auth import HeaderIdentityProvider
from coach_chatbot.db import Database
from coach_chatbot.db.crud_helper import CHAT_TABLES
from coach_chatbot.llm.provider import ProviderFactory, build_provider
from coach_chatbot.routes.chatbot.route import CONVERSATION_HEADER, router as chat_router
from coach_chatbot.routes.memories.route import router as memories_router
from coach_chatbot.services.orchestrator import ChatOrchestrator
from coach_chatbot.settings import Config, config
from coach_chatbot.utils.hybrid_search import PgVectorRetriever, Retriever

logging.basicConfig(level=config.log_level)
logger = logging.getLogger(__name__)


def build_lifespan(
    settings: Config,
    database: Optional[Database],
    provider_factory: ProviderFactory,
    retriever: Optional[Retriever],
):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database(settings.db_url)
        if database is None:
            db.create_all(None if db.url.startswith("postgresql") else CHAT_TABLES)
        search = retriever
        if search is None and db.url.startswith("postgresql"):
            search = PgVectorRetriever(db)
        orchestrator = ChatOrchestrator(db, provider_factory, search, settings)

        app.state.database = db
        app.state.orchestrator = orchestrator
        app.state.identity_provider = HeaderIdentityProvider()
        logger.info("Coach Chatbot API started")
        try:
            yield
        finally:
            await orchestrator.drain()
            if database is None:
                db.dispose()
            logger.info("Coach Chatbot API stopped")

    return lifespan


def initialize_app(
    settings: Config = config,
    database: Optional[Database] = None,
    provider_factory: ProviderFactory = build_provider,
    retriever: Optional[Retriever] = None,
) -> FastAPI:
    app = FastAPI(
        title="Coach Chatbot API",
        description="Streaming chat for coaching agents with artifacts, knowledge bases and user memories",
        version="1.0.0",
        docs_url="/chatbot/docs",
        redoc_url="/chatbot/redoc",
        openapi_url="/chatbot/openapi.json",
        lifespan=build_lifespan(settings, database, provider_factory, retriever),
    )

    app.include_router(chat_router, prefix="/api/v1/chat", tags=["chat"])
    app.include_router(memories_router, prefix="/api/v1/memories", tags=["memories"])

    @app.get("/")
    async def root():
        return {"message": "Coach Chatbot API is running"}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


def add_middlewares(app: FastAPI):
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Replace with specific domains in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[CONVERSATION_HEADER],
    )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response


def create_app(**kwargs) -> FastAPI:
    app = initialize_app(**kwargs)
    add_middlewares(app)
    return app


app = create_app()


if __name__ == "__main__":
    logger.info("Starting Coach Chatbot API server...")
    import uvicorn

    uvicorn.run(
        "coach_chatbot.__main__:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
