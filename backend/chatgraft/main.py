"""chatgraft FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from anthropic import AsyncAnthropic
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatgraft.bookmarks.router import get_bookmark_store
from chatgraft.bookmarks.router import router as bookmarks_router
from chatgraft.bookmarks.store import BookmarkStore
from chatgraft.codecs.router import get_export_service, get_import_service
from chatgraft.codecs.router import router as codecs_router
from chatgraft.codecs.service import ExportService, ImportService
from chatgraft.config import Settings, load_settings
from chatgraft.db.connection import Database
from chatgraft.fork.router import get_fork_service
from chatgraft.fork.router import router as fork_router
from chatgraft.fork.service import ForkService
from chatgraft.host.client import HostClient
from chatgraft.phantom.overlay import PhantomOverlay
from chatgraft.phantom.router import get_host_client, get_phantom_store
from chatgraft.phantom.router import router as conversations_router
from chatgraft.phantom.store import PhantomStore
from chatgraft.summarize.oracle import AnthropicOracle, HostConversationOracle, SummaryOracle
from chatgraft.summarize.service import SummaryService
from chatgraft.sync.router import get_search_service, get_sync_service
from chatgraft.sync.router import router as search_router
from chatgraft.sync.service import SearchService, SyncService

logger = logging.getLogger(__name__)


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """HTTP client for the host, authenticated with the session cookie."""
    return httpx.AsyncClient(
        base_url=settings.host_url,
        cookies={"sessionKey": settings.session_key},
        timeout=httpx.Timeout(60.0, connect=10.0),
    )


def wire_services(app: FastAPI, settings: Settings, db: Database, http: httpx.AsyncClient) -> None:
    """Create every service and install it in place of its dependency placeholder."""
    store = PhantomStore(db)
    overlay = PhantomOverlay(store, timeout=settings.phantom_timeout, uuid_markers=settings.uuid_markers)
    client = HostClient(http, settings.org_id, interceptors=[overlay])

    # Without a dedicated key, summaries run as throwaway host conversations
    summary_client = AsyncAnthropic(api_key=settings.summary_api_key) if settings.summary_api_key else None

    def oracle_factory() -> SummaryOracle:
        if summary_client is not None:
            return AnthropicOracle(summary_client, model=settings.fast_model)
        return HostConversationOracle(
            client,
            model=settings.fast_model,
            poll_attempts=settings.poll_attempts,
            poll_interval=settings.poll_interval,
        )

    polling = {"poll_attempts": settings.poll_attempts, "poll_interval": settings.poll_interval}
    fork_service = ForkService(
        client, store, SummaryService(oracle_factory), phantom_timeout=settings.phantom_timeout, **polling
    )
    export_service = ExportService(client, settings.default_model)
    import_service = ImportService(client, store, **polling)
    sync_service = SyncService(client, db, export_threshold=settings.sync_export_threshold)
    search_service = SearchService(db)
    bookmark_store = BookmarkStore(db)

    app.dependency_overrides[get_host_client] = lambda: client
    app.dependency_overrides[get_phantom_store] = lambda: store
    app.dependency_overrides[get_fork_service] = lambda: fork_service
    app.dependency_overrides[get_export_service] = lambda: export_service
    app.dependency_overrides[get_import_service] = lambda: import_service
    app.dependency_overrides[get_sync_service] = lambda: sync_service
    app.dependency_overrides[get_search_service] = lambda: search_service
    app.dependency_overrides[get_bookmark_store] = lambda: bookmark_store


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database and HTTP client lifecycle and service wiring."""
    settings = load_settings()
    if not settings.org_id or not settings.session_key:
        logger.warning("CHATGRAFT_ORG_ID or CHATGRAFT_SESSION_KEY is not set; host calls will fail")

    db = await Database.connect(settings.database_path)
    http = build_http_client(settings)
    wire_services(app, settings, db, http)

    app.state.db = db
    app.state.settings = settings
    yield

    await http.aclose()
    await db.close()


app = FastAPI(
    title="chatgraft",
    description="Fork, summarize, import and export branching chat conversations",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=load_settings().cors_origin_list,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations_router)
app.include_router(bookmarks_router)
app.include_router(codecs_router)
app.include_router(fork_router)
app.include_router(search_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}
