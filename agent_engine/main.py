"""FastAPI application entry point."""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_engine.api import router as api_router
from agent_engine.core.config import get_settings
from agent_engine.core.errors import AccessError
from agent_engine.core.logging import get_logger

logger = get_logger(__name__)

app = FastAPI(
    title="Agent Engine",
    description="Streaming LLM orchestration for audit, collaboration and canvas agent workflows",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in get_settings().CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AccessError)
async def access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
    logger.warning(f"Access denied on {request.url.path}: {exc}")
    return JSONResponse(content={"error": str(exc)}, status_code=403)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are reported in the body so browser callers can always read them."""
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in errors
    )
    logger.info(f"Invalid request on {request.url.path}: {message}")
    return JSONResponse(content={"success": False, "error": message or "Invalid request"})


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
