"""eMage HTTP entry point: run history, the shared compression pool and the /api router."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from emage.api.routes import router
from emage.config import CORS_ORIGINS
from emage.compression.engines import tool_status
from emage.compression.service import shutdown_compression_service
from emage.db import init_db

logger = logging.getLogger("emage.main")
logging.getLogger("uvicorn").setLevel(logging.INFO)


def check_tools() -> list[str]:
    """Log which optimizer binaries are missing; steps that need them will fail."""
    missing = sorted(name for name, found in tool_status().items() if found is None)
    if missing:
        logger.warning("Optimizers not found, their steps will fail: %s", ", ".join(missing))
    else:
        logger.info("All optimizers found")
    return missing


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    check_tools()
    logger.info("eMage API ready")
    yield
    # runs still in the pool are not waited for
    shutdown_compression_service(wait=False)
    logger.info("eMage API stopped")


app = FastAPI(
    title="eMage API",
    description="Run one image through an ordered chain of optimizers and follow each step.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from emage.config import HOST, PORT
    uvicorn.run("emage.main:app", host=HOST, port=PORT, reload=True)
