import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from app import config, database
from app.errors import ServiceError
# ROUTERS
from routes.admin import router as admin_router
from routes.appeals import router as appeals_router
from routes.batches import router as batch_router
from routes.notifications import router as notifications_router
from routes.public import router as public_router
from routes.stages import router as stages_router

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await database.ensure_indexes()
    logger.info("Connected to MongoDB database %s", config.MONGO_DB_NAME)
    yield


app = FastAPI(title="KrishiBarosa Verification API", lifespan=lifespan)

# ================= CORS =================
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ================= ROUTERS =================
app.include_router(batch_router)
app.include_router(stages_router)
app.include_router(appeals_router)
app.include_router(admin_router)
app.include_router(notifications_router)
app.include_router(public_router)


# ================= ERRORS =================

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PyMongoError)
async def persistence_error_handler(request: Request, exc: PyMongoError):
    logger.error("Persistence failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage layer unavailable", "code": "persistence_unavailable"},
    )


# =====================================================
# 🛠️ UTILITIES
# =====================================================

@app.get("/health")
async def health():
    await database.ping()
    return {"status": "ok"}
