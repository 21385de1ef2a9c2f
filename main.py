from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import APP_NAME, APP_VERSION, ALLOWED_ORIGINS, DATA_DIR, logger
from endpoints import codes_endpoint, sessions_endpoint, health_endpoint, websocket_routes_endpoint
from repos.change_feed_repo import ChangeFeed
from repos.file_storage_manager_repo import FileStorageManager
from service.code_registry_service import CodeRegistry
from service.connection_manager_service import ConnectionManager
from service.session_service import SessionService


def create_app(data_dir: Optional[str] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        feed = ChangeFeed()
        storage = FileStorageManager(data_dir or DATA_DIR, feed)
        registry = CodeRegistry(storage)
        await registry.start()
        sessions = SessionService(registry, storage, feed)

        app.state.feed = feed
        app.state.storage = storage
        app.state.registry = registry
        app.state.sessions = sessions
        app.state.manager = ConnectionManager(sessions)
        logger.info(f"Using data directory {storage.data_dir}")
        yield
        await sessions.close()

    app = FastAPI(title=APP_NAME, version=APP_VERSION, lifespan=lifespan)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(codes_endpoint.router)
    app.include_router(sessions_endpoint.router)
    app.include_router(websocket_routes_endpoint.router)
    app.include_router(health_endpoint.router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    from config import HOST, PORT, DEBUG

    logger.info(f"Starting server on {HOST}:{PORT} (debug={DEBUG})")
    uvicorn.run("main:app", host=HOST, port=PORT, reload=DEBUG)
