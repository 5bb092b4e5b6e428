from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .config import get_settings
from .routers import environments, sessions
from .services.orchestration.context import get_orchestrator_context
from .services.orchestration.errors import OrchestratorError, AuthRejected
from .utils.sanitize import sanitize_message
import logging

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="DevPocket Orchestrator API")

if settings.cors_origin_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {sanitize_message(exc)}", exc_info=exc)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthRejected) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": sanitize_message(exc.message) or type(exc).__name__},
        headers=headers,
    )


@app.on_event("startup")
async def startup():
    get_orchestrator_context().start()
    logger.info("DevPocket orchestrator started")


@app.on_event("shutdown")
async def shutdown():
    await get_orchestrator_context().shutdown()


app.include_router(environments.router, prefix="/api/v1/environments", tags=["environments"])
app.include_router(sessions.router, prefix="/api/v1", tags=["sessions"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "devpocket-orchestrator"}
