"""FastAPI application for streaming multi-agent chat."""

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chorus.auth import Session, get_session
from chorus.config import settings
from chorus.db import ChatStore, InMemoryStore, db
from chorus.errors import AuthenticationError, AuthorizationError, ChorusError
from chorus.models import ChatRequest, StopResponse, ThreadResponse
from chorus.services.orchestrator import ChatOrchestrator
from chorus.sse import chat_event_stream, create_sse_response, stop_registry

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Chorus API",
    description="Multi-agent streaming chat orchestrator",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Open the store and build the orchestrator."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store: ChatStore
    if settings.store_backend == "postgres":
        await db.connect()
        await db.ensure_tables_exist()
        store = db
    else:
        logger.warning("Using the in-memory store; threads are lost on restart")
        store = InMemoryStore()
    app.state.store = store
    app.state.orchestrator = ChatOrchestrator(store)


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    await db.disconnect()


def get_store(request: Request) -> ChatStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def require_session(session: Session | None = Depends(get_session)) -> Session:
    if session is None:
        raise AuthenticationError("Unauthorized")
    return session


@app.exception_handler(ChorusError)
async def chorus_error_handler(request: Request, exc: ChorusError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


def _describe_validation_error(error: dict) -> str:
    field = ".".join(str(part) for part in error["loc"] if part != "body") or "body"
    return f"{field}: {error['msg']}"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = [_describe_validation_error(error) for error in exc.errors()]
    logger.info(f"Rejected malformed request to {request.url.path}: {problems}")
    return JSONResponse(status_code=400, content={"message": "Invalid request: " + "; ".join(problems)})


# ============= Health & Info =============


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Chorus API", "version": "0.1.0"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "store": settings.store_backend}


# ============= Chat =============


@app.post("/api/chat")
async def chat(
    request: ChatRequest,
    session: Session = Depends(require_session),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Run one chat turn and stream its events as SSE."""
    try:
        plan = await orchestrator.prepare(request, session)
    except ChorusError:
        raise
    except Exception as e:
        logger.error(f"Chat intake failed for thread {request.id}: {e}")
        return JSONResponse(status_code=500, content={"message": str(e)})

    cancel = await stop_registry.register(request.id)
    events = orchestrator.stream(plan, cancel)
    return create_sse_response(chat_event_stream(events, request.id, cancel))


@app.post("/api/chat/{thread_id}/stop", response_model=StopResponse)
async def stop_chat(
    thread_id: str,
    session: Session = Depends(require_session),
    store: ChatStore = Depends(get_store),
):
    """Abort every turn streaming on the thread."""
    thread = await store.get_thread(thread_id)
    if thread and thread.user_id != session.user_id:
        raise AuthorizationError("Forbidden")
    stopped = await stop_registry.stop(thread_id)
    return StopResponse(thread_id=thread_id, stopped=stopped)


@app.get("/api/threads/{thread_id}")
async def get_thread(
    thread_id: str,
    session: Session = Depends(require_session),
    store: ChatStore = Depends(get_store),
):
    """Get a thread with its messages."""
    thread = await store.get_thread(thread_id)
    if not thread:
        return JSONResponse(status_code=404, content={"message": "Thread not found"})
    if thread.user_id != session.user_id:
        raise AuthorizationError("Forbidden")

    messages = await store.get_messages(thread_id)
    return ThreadResponse(thread=thread, messages=messages).to_wire()
