import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import backend.config as config
from backend.routers import access, admin, core, evacuation, personnel
from backend.services.engine import build_engine

logger = logging.getLogger(__name__)


# -----------------------------
# Startup
# -----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.state.engine = build_engine(config.DB_PATH, config.EXPORTS_DIR)
    logger.info("Access ledger ready at %s", config.DB_PATH)
    yield


app = FastAPI(title="Surpass Access Control API", lifespan=lifespan)


# -----------------------------
# CORS (React dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(core.router)
app.include_router(access.router)
app.include_router(personnel.router)
app.include_router(evacuation.router)
app.include_router(admin.router)
