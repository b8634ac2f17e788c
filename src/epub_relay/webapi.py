import os
from pathlib import Path
from typing import AsyncIterator

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from epub_relay.utils.logging import setup_logger

# LOG_LEVEL and LOG_FILE come from the process environment, not from .env
logger = setup_logger("epub_relay", os.getenv("LOG_FILE") or None, os.getenv("LOG_LEVEL", "INFO").upper())

try:
    load_dotenv()
except OSError as exc:
    # An unreadable .env must not prevent startup; the environment still applies.
    logger.warning("Could not load .env: %s", exc)

from epub_relay.conversion import Broadcaster, ConversionService, PipelineError
from epub_relay.conversion.adapters import (
    EbookConvertConverter,
    LocalDirectoryStorage,
    RequestsFetcher,
    WebDAVStorage,
)
from epub_relay.conversion.events import ChannelClosed, ListenerChannel

# Global configuration defaults
SCRATCH_DIR = Path(os.getenv("SCRATCH_DIR", "./temp")).resolve()
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", "./output")).resolve()
STATIC_DIR = Path(os.getenv("STATIC_DIR", "./public")).resolve()
WEBDAV_URL = os.getenv("WEBDAV_URL", "")
WEBDAV_USERNAME = os.getenv("WEBDAV_USERNAME", "")
WEBDAV_PASSWORD = os.getenv("WEBDAV_PASSWORD", "")
CONVERTER_BIN = os.getenv("CONVERTER_BIN", "ebook-convert")
FETCH_TIMEOUT_SEC = float(os.getenv("FETCH_TIMEOUT_SEC", "120"))
CONVERT_TIMEOUT_SEC = float(os.getenv("CONVERT_TIMEOUT_SEC", "600"))
UPLOAD_TIMEOUT_SEC = float(os.getenv("UPLOAD_TIMEOUT_SEC", "120"))
RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", "3"))
RETRY_WAIT_SEC = float(os.getenv("RETRY_WAIT_SEC", "1.0"))
MAX_ACTIVE_JOBS = int(os.getenv("MAX_ACTIVE_JOBS", "1"))
KEEPALIVE_SEC = float(os.getenv("KEEPALIVE_SEC", "15"))
LISTENER_QUEUE_SIZE = int(os.getenv("LISTENER_QUEUE_SIZE", "64"))

app = FastAPI(
    title="EPUB Relay",
    version=os.getenv("EPUB_RELAY_VERSION", "0.1.0"),
    description=(
        "Downloads an EPUB, converts it to PDF and uploads the result to "
        "WebDAV, streaming progress to every connected client."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

if STATIC_DIR.is_dir():
    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
    logger.info("Configured static file serving from %s", STATIC_DIR)

SERVICE: ConversionService | None = None


class ConvertRequest(BaseModel):
    epub_url: str = Field(alias="epubUrl", min_length=1)


def _build_service() -> ConversionService:
    fetcher = RequestsFetcher(timeout=FETCH_TIMEOUT_SEC, attempts=RETRY_ATTEMPTS, wait=RETRY_WAIT_SEC)
    if WEBDAV_URL:
        logger.info("Initializing WebDAV client: URL=%s, Username=%s", WEBDAV_URL, WEBDAV_USERNAME)
        storage = WebDAVStorage(
            WEBDAV_URL,
            WEBDAV_USERNAME,
            WEBDAV_PASSWORD,
            timeout=UPLOAD_TIMEOUT_SEC,
            attempts=RETRY_ATTEMPTS,
            wait=RETRY_WAIT_SEC,
        )
    else:
        logger.warning("WEBDAV_URL not set, storing results under %s", OUTPUT_DIR)
        storage = LocalDirectoryStorage(str(OUTPUT_DIR))
    return ConversionService(
        fetcher,
        EbookConvertConverter(CONVERTER_BIN),
        storage,
        broadcaster=Broadcaster(queue_size=LISTENER_QUEUE_SIZE),
        scratch_dir=str(SCRATCH_DIR),
        max_active_jobs=MAX_ACTIVE_JOBS,
        fetch_timeout=FETCH_TIMEOUT_SEC,
        convert_timeout=CONVERT_TIMEOUT_SEC,
        upload_timeout=UPLOAD_TIMEOUT_SEC,
    )


def _service() -> ConversionService:
    if SERVICE is None:
        raise HTTPException(status_code=503, detail={"code": "not_ready", "message": "service not started"})
    return SERVICE


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@app.on_event("startup")
async def _startup() -> None:
    global SERVICE
    SERVICE = _build_service()
    # Startup fails loudly if the scratch directory cannot be created
    SERVICE.prepare()


@app.on_event("shutdown")
async def _shutdown() -> None:
    global SERVICE
    if SERVICE is not None:
        await SERVICE.stop()


@app.exception_handler(RequestValidationError)
async def _malformed_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    logger.warning("Failed to parse request from %s: %s", _client_host(request), problems)
    return JSONResponse(
        status_code=400,
        content={"detail": {"code": "request_malformed", "message": problems, "stage": None}},
    )


@app.get("/health")
def health() -> dict[str, object]:
    """Basic health check endpoint."""
    service = _service()
    return {
        "status": "ok",
        "active_jobs": len(service.active_jobs),
        "listeners": len(service.broadcaster),
    }


@app.post("/convert")
async def convert(req: ConvertRequest, request: Request) -> JSONResponse:
    """Run the full download/convert/upload pipeline for `epubUrl`.

    Responds only once the job has finished; progress is streamed
    separately on `/status`. Failures map to the error's HTTP status with
    a `{"code", "message", "stage"}` detail.
    """
    logger.info("Received conversion request from %s", _client_host(request))
    service = _service()
    try:
        result = await service.convert(req.epub_url)
    except PipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return JSONResponse(content=result.to_response())


@app.post("/cancel")
async def cancel() -> dict[str, int]:
    return {"cancelled": _service().cancel()}


async def _event_stream(
    request: Request,
    broadcaster: Broadcaster,
    token: str,
    channel: ListenerChannel,
    keepalive: float,
) -> AsyncIterator[str]:
    try:
        while not await request.is_disconnected():
            try:
                event = await channel.next_event(timeout=keepalive)
            except ChannelClosed:
                break
            if event is None:
                yield ": keepalive\n\n"
                continue
            yield f"event: message\ndata: {event.to_json()}\n\n"
    finally:
        # Runs on normal close, client disconnect and server shutdown alike
        broadcaster.unregister(token)


@app.get("/status")
async def status_stream(request: Request) -> StreamingResponse:
    broadcaster = _service().broadcaster
    token, channel = broadcaster.register()
    logger.info("New SSE client connected: %s", _client_host(request))
    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(
        _event_stream(request, broadcaster, token, channel, KEEPALIVE_SEC),
        media_type="text/event-stream",
        headers=headers,
    )


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:3000). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    reload = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("epub_relay.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
