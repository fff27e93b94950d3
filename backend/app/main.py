"""Chatline Backend Application.

This is the main entry point for the Chatline backend service. Chatline is
a conversational assistant backend: it accepts a user turn, streams the
model's reply back token by token, and persists the exchange.

Modules:
    - chat: stream orchestrator and conversation endpoints
    - attachments: attachment lifecycle (upload, activation, deletion, sweeps)
    - ai_provider: model stream providers and the model registry
    - storage: DuckDB persistence store
    - blobs: S3 / local-disk blob stores
    - auth: request -> user id resolution
"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from app.ai_provider.resolver import ProviderResolver, set_resolver
from app.attachments.maintenance import AttachmentSweeper
from app.attachments.router import router as files_router
from app.attachments.service import AttachmentLifecycleManager, set_attachment_manager
from app.auth import TrustedHeaderAuthProvider, set_auth_provider
from app.blobs import BlobStore, LocalBlobStore, S3BlobStore
from app.chat.orchestrator import StreamOrchestrator, set_orchestrator
from app.chat.router import router as chat_router
from app.config import ChatlineConfig, get_config
from app.storage import DuckDBStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# botocore.auth logs the full SigV4 canonical request, including
# x-amz-security-token, which leaks credentials into the console.
# urllib3/httpx/httpcore log every TCP connection and TLS handshake.
for _noisy in (
    "botocore",
    "boto3",
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "openai",
    "anthropic",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_blob_store(config: ChatlineConfig) -> BlobStore:
    """Create the blob store selected by ``blob_store.backend``."""
    settings = config.blob_store
    if settings.backend == "s3":
        if not settings.bucket:
            raise ValueError("blob_store.bucket is required for the s3 backend")
        return S3BlobStore(
            bucket=settings.bucket,
            region_name=settings.region,
            endpoint_url=settings.endpoint_url,
            aws_access_key_id=config.secrets.s3.access_key_id,
            aws_secret_access_key=config.secrets.s3.secret_access_key,
        )
    return LocalBlobStore(
        root_dir=settings.local_dir,
        secret_key=config.secrets.signing.secret_key,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatline.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = DuckDBStore(config.database.path)
    blob_store = build_blob_store(config)
    logger.info("Blob store ready: backend=%s", blob_store.name)

    resolver = ProviderResolver.from_config(config)
    set_resolver(resolver)

    manager = AttachmentLifecycleManager(
        store,
        blob_store,
        max_size_bytes=config.attachments.max_size_bytes,
        key_prefix=config.blob_store.key_prefix,
        url_expiry_seconds=config.blob_store.url_expiry_seconds,
    )
    set_attachment_manager(manager)

    set_orchestrator(
        StreamOrchestrator(
            store,
            resolver,
            manager,
            system_prompt=config.chat.system_prompt,
            title_timeout_seconds=config.chat.title_timeout_seconds,
        )
    )
    set_auth_provider(TrustedHeaderAuthProvider(config.auth.user_header))

    sweeper = None
    if config.attachments.sweep_interval_seconds > 0:
        sweeper = AttachmentSweeper(
            manager,
            interval_seconds=config.attachments.sweep_interval_seconds,
            reclaim_after=timedelta(hours=config.attachments.reclaim_after_hours),
            purge_after=timedelta(days=config.attachments.purge_after_days),
        )
        sweeper.start()
    else:
        logger.info("Attachment sweeper disabled")

    logger.info(
        "Chatline ready on http://%s:%s (default model=%s)",
        config.server.host, config.server.port, config.chat.default_model_id,
    )

    yield  # Application runs here

    # Shutdown
    if sweeper is not None:
        await sweeper.stop()
    set_orchestrator(None)
    set_attachment_manager(None)
    set_resolver(None)
    await store.close()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chatline API",
    description="Backend service for Chatline - streaming conversational assistant",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(chat_router)
app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
