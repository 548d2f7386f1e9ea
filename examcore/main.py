import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from examcore.core.config import settings
from examcore.core.database import engine
from examcore.core.errors import ExamcoreAPIException
from examcore.models.orm import Base
from examcore.api.auth import router as auth_router
from examcore.api.tenants import router as tenants_router
from examcore.api.entitlement import router as entitlement_router
from examcore.api.access_codes import router as access_codes_router
from examcore.api.unlocks import router as unlocks_router
from examcore.api.attempts import router as attempts_router
from examcore.api.rank import router as rank_router
from examcore.api.admin import router as admin_router
from examcore.api.admin_status import router as status_router

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
                    format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.ENVIRONMENT.lower() == "development":
        Base.metadata.create_all(bind=engine)
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} starting ({settings.ENVIRONMENT})")
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])


@app.exception_handler(ExamcoreAPIException)
async def examcore_error_handler(request: Request, exc: ExamcoreAPIException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "errorCode": exc.error_code, "extra": exc.extra},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    detail = "An internal error occurred" if settings.is_production() else str(exc)
    return JSONResponse(status_code=500, content={"detail": detail, "errorCode": "internal_error", "extra": {}})


prefix = settings.API_V1_PREFIX
app.include_router(auth_router, prefix=f"{prefix}/auth", tags=["auth"])
app.include_router(tenants_router, prefix=f"{prefix}/tenants", tags=["tenants"])
app.include_router(entitlement_router, prefix=f"{prefix}/entitlement", tags=["entitlement"])
app.include_router(access_codes_router, prefix=f"{prefix}/access-codes", tags=["access-codes"])
app.include_router(unlocks_router, prefix=f"{prefix}/unlocks", tags=["access-codes"])
app.include_router(attempts_router, prefix=f"{prefix}/attempts", tags=["attempts"])
app.include_router(rank_router, prefix=f"{prefix}/rank", tags=["rank"])
app.include_router(admin_router, prefix=f"{prefix}/admin", tags=["admin"])
app.include_router(status_router, prefix=f"{prefix}/admin", tags=["rescore-status"])

@app.get("/health")
def health(): return {"status": "ok"}
