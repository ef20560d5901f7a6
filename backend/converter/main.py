"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from converter.api.routes import ConversionError, router
from converter.batch import shutdown_batch_orchestrator
from converter.cleanup import purge_stale_workspaces
from converter.config import CORS_ORIGINS, WORK_DIR, logger as config_logger
from converter.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    purge_stale_workspaces(WORK_DIR)
    config_logger.info("WebP converter API started (work dir %s)", WORK_DIR)
    yield
    shutdown_batch_orchestrator()
    config_logger.info("WebP converter API shutting down")


app = FastAPI(
    title="WebP Batch Converter API",
    description="Convert uploaded images to WebP with cwebp; several files come back as one zip.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Batch-ID"],
)


@app.exception_handler(ConversionError)
async def conversion_error_handler(request: Request, exc: ConversionError):
    return PlainTextResponse(exc.message, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return PlainTextResponse("Invalid request.\n" + "\n".join(problems), status_code=400)


app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from converter.config import HOST, PORT
    uvicorn.run("converter.main:app", host=HOST, port=PORT, reload=True)
