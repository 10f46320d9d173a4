from contextlib import asynccontextmanager
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import settings
from .db import Base, SessionLocal, engine
from .exceptions import register_exception_handlers
from .middleware import RequestIDMiddleware
from .routers import admin, credits, generate, models, observability, proxy
from .services.catalog import catalog, seed_service_types

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

@asynccontextmanager
async def lifespan(app: FastAPI):
    db = SessionLocal()
    try:
        # Prices edited by administrators survive restarts
        seed_service_types(db, update_existing=False)
        catalog.load(db)
    finally:
        db.close()
    logger.info(f"{settings.app_name} started with provider backend '{settings.provider_backend}'")
    yield

app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)

app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

app.include_router(credits.router, prefix="/credits", tags=["credits"])
app.include_router(generate.router, prefix="/generate", tags=["generate"])
app.include_router(models.router, prefix="/models", tags=["models"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])
app.include_router(proxy.router, tags=["proxy"])

@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# Observability endpoints
app.include_router(observability.router, prefix="/ops", tags=["observability"])
