"""
Librarian Server

FastAPI server streaming grounded answers as server-sent events.

Endpoints:
- POST /librarian: Answer a question (text/event-stream)
- GET /health: Health check

Stream:
1. step events while the pipeline progresses
2. token events carrying answer text increments
3. one sources event with the citation list and run metadata
4. exactly one terminal event: done, or error
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from ..common.config import ServiceConfig, load_config
from ..common.errors import RequestValidationError
from ..common.schemas import LibrarianRequest
from ..common.store_client import StoreClient
from .pipeline import Librarian, create_librarian

logger = logging.getLogger("librarian.retriever.server")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}

# Global state
config: Optional[ServiceConfig] = None
librarian: Optional[Librarian] = None
store: Optional[StoreClient] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup"""
    global config, librarian, store

    logger.info("Starting up...")
    config = load_config()
    if not config.store.url:
        logger.warning("Store URL not configured, requests will fail")

    librarian, store = create_librarian(config)
    logger.info(
        "Ready (chat provider: %s, full-document: %s)",
        config.llm.chat_provider, librarian.full_document_available,
    )

    yield

    logger.info("Shutting down...")
    if store is not None:
        await store.close()
    librarian = None
    store = None


app = FastAPI(
    title="Librarian",
    description="Retrieval-augmented answering over layered document corpora",
    version="0.4.0",
    lifespan=lifespan,
)


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=400)


async def _event_stream(request: LibrarianRequest) -> AsyncIterator[str]:
    events = librarian.run(request)
    try:
        async for event in events:
            yield event.to_sse()
    finally:
        # Client disconnects cancel the in-flight provider stream
        await events.aclose()


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "librarian",
        "initialized": librarian is not None,
        "store_reachable": await store.health_check() if store else False,
        "full_document_available": librarian.full_document_available if librarian else False,
    }


@app.post("/librarian")
async def answer(request: Request):
    """
    Answer one question as a server-sent event stream.

    Malformed bodies and requests missing the query or the user id are
    rejected with a 400 JSON error before any work starts.
    """
    if librarian is None:
        return JSONResponse({"error": "Service not initialized"}, status_code=503)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _bad_request("Invalid JSON")
    if not isinstance(body, dict):
        return _bad_request("Request body must be a JSON object")

    try:
        parsed = LibrarianRequest.model_validate(body)
        Librarian.validate(parsed)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ()))
        return _bad_request(f"Invalid field {field}: {first.get('msg', 'invalid value')}")
    except RequestValidationError as e:
        return _bad_request(str(e))

    return StreamingResponse(
        _event_stream(parsed),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the Librarian server"""
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    server = load_config().server
    logger.info("Starting server on %s:%d", server.host, server.port)
    uvicorn.run(
        "librarian.retriever.server:app",
        host=server.host,
        port=server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
