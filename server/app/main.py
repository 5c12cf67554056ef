import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api import generation
from app.services.session import session_manager
from app.services.storage import job_store


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await job_store.initialize()
    logging.getLogger(__name__).info("Storage initialized at %s", job_store.path)
    yield
    await session_manager.close()


app = FastAPI(
    title="Midjourney Variation Upscaler API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(generation.router, tags=["generation"])


@app.get("/api/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


def run() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
