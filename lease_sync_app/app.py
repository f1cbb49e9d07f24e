import logging

import uvicorn
from fastapi import FastAPI

from core.lifespan import lifespan
from core.settings import settings
from routes.sync_routes import router as sync_router
from routes.webhooks_routes import router as webhooks_router

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))


def create_app() -> FastAPI:
    app = FastAPI(
        lifespan=lifespan,
        title=settings.PROJECT_NAME,
        version="2.0.0",
    )
    app.include_router(sync_router, prefix="/v2/sync")
    app.include_router(webhooks_router, prefix="/v2")

    @app.get("/health", tags=["System"])
    async def health_check():
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8001)
