import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
from wacrm.core.config import settings
from wacrm.core.logging import init_logging
from wacrm.api.v1 import router as api_router
from wacrm.core.db import init_db as init_tables, engine
from wacrm.core.exceptions import register_exception_handlers
from wacrm.db.init_db import init_db as seed_db
from wacrm.core.middleware import SecurityMiddleware
from wacrm.services.runtime import WhatsAppRuntime

init_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Create DB tables
    init_tables()
    # Seed initial admin user
    with Session(engine) as session:
        seed_db(session)

    # 测试中可预先注入 runtime
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = WhatsAppRuntime()
        app.state.runtime = runtime
    await runtime.start()
    yield
    await runtime.shutdown()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# 添加安全中间件
app.add_middleware(SecurityMiddleware)

register_exception_handlers(app)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation Error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error_code": "VALIDATION_ERROR",
            "message": "Validation Error",
            "details": {"errors": str(exc.errors())},
        },
    )


@app.get("/api/v1/health")
def health_check():
    return {"status": "ok", "message": "Backend is running"}


app.include_router(api_router, prefix=settings.API_V1_STR)
