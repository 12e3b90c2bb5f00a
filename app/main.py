from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.deps import get_orchestrator_config, get_provider_registry
from app.api.routes import research, tiers
from app.config import settings
from app.services.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_orchestrator_config()
    providers = get_provider_registry()
    logger.info(
        f"Research service ready: tiers={[t.value for t in config.tiers]} "
        f"providers={sorted(providers)} search_backend={settings.search_provider}"
    )
    yield
    logger.info("Research service shutting down")


app = FastAPI(
    title="Tiered Research",
    description="Adaptive multi-tier research orchestrator",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(research.router)
app.include_router(tiers.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "tiered-research"}
