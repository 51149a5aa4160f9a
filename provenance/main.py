import os
import structlog
import time
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, UploadFile, File, Form, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from provenance import __version__, config
from provenance.core.errors import (
    AlreadyRegisteredError,
    InputError,
    LedgerRejected,
    LedgerUnavailable,
)
from provenance.core.index import SimilarityIndex
from provenance.core.storage import JsonRecordStore, MemoryRecordStore, RecordStore
from provenance.models.records import RegistrationRecord
from provenance.models.verification import ErrorResponse, HealthResponse, VerificationOutcome
from provenance.services.ledger import HttpLedgerClient, InMemoryLedger, Ledger
from provenance.services.oracle import BedrockOracle, Oracle
from provenance.services.registration import RegistrationGate
from provenance.services.verification import VerificationPipeline

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

def build_record_store() -> RecordStore:
    if config.INDEX_BACKEND == "postgres":
        from provenance.core.database import PostgresRecordStore
        store = PostgresRecordStore(config.DATABASE_DSN)
        store.ensure_schema()
        return store
    if config.INDEX_BACKEND == "memory":
        return MemoryRecordStore()
    return JsonRecordStore(config.INDEX_PATH)

def build_ledger() -> Ledger:
    if config.LEDGER_ENDPOINT:
        return HttpLedgerClient()
    logger.warning("LEDGER_ENDPOINT not set, using in-memory ledger")
    return InMemoryLedger()

def build_oracle() -> Optional[Oracle]:
    if config.ORACLE_BACKEND == "bedrock":
        return BedrockOracle()
    logger.warning("Oracle disabled, unmatched images will be unverified")
    return None

def init_services(app: FastAPI, index: SimilarityIndex, ledger: Ledger, oracle: Optional[Oracle]):
    """Wire the pipeline and gate onto ``app.state``."""
    app.state.index = index
    app.state.ledger = ledger
    app.state.pipeline = VerificationPipeline(index, ledger, oracle)
    app.state.gate = RegistrationGate(index, ledger)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting Image Provenance API")
    if not getattr(app.state, "pipeline", None):
        try:
            index = SimilarityIndex.load(build_record_store())
            init_services(app, index, build_ledger(), build_oracle())
        except Exception as e:
            logger.error("Failed to initialize application", error=str(e))
            raise

        try:
            added = await run_in_threadpool(app.state.gate.reconcile)
            logger.info("Startup reconciliation finished", added=added)
        except Exception as e:
            logger.error("Startup reconciliation failed", error=str(e))

    yield

    logger.info("Shutting down Image Provenance API")
    app.state.pipeline.close()

# Create FastAPI application
app = FastAPI(
    title="Image Provenance API",
    description="Exact, perceptual and oracle-backed provenance verification for images",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    responses={
        422: {"model": ErrorResponse, "description": "Validation Error"},
        500: {"model": ErrorResponse, "description": "Internal Server Error"},
    }
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

async def read_upload(file: UploadFile) -> bytes:
    """Read an uploaded image, enforcing the size limit."""
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")
    if len(data) > config.MAX_FILE_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size exceeds maximum allowed size of {config.MAX_FILE_SIZE} bytes"
        )
    return data

@app.post("/verify", response_model=VerificationOutcome)
async def verify_image(file: UploadFile = File(..., description="Image to verify")):
    """Run the verification cascade for an uploaded image."""
    data = await read_upload(file)
    start_time = time.time()
    try:
        outcome = await run_in_threadpool(app.state.pipeline.verify, data, file.content_type)
    except InputError as e:
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=str(e))

    logger.info("Verification completed",
                filename=file.filename,
                status=outcome.status.value,
                processing_time_ms=(time.time() - start_time) * 1000)
    return outcome

@app.post("/register", response_model=RegistrationRecord, status_code=status.HTTP_201_CREATED)
async def register_image(
    file: UploadFile = File(..., description="Image to register"),
    owner: Optional[str] = Form(default=None),
    classifier_score: Optional[float] = Form(default=None, ge=0.0, le=1.0),
):
    """Register an image on the ledger and index it for similarity lookups."""
    data = await read_upload(file)
    try:
        return await run_in_threadpool(app.state.gate.register, data, owner, classifier_score)
    except InputError as e:
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=str(e))
    except AlreadyRegisteredError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except LedgerRejected as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Ledger rejected write: {e.reason}")
    except LedgerUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

@app.get("/records/{content_fingerprint}", response_model=RegistrationRecord)
async def get_record(content_fingerprint: str):
    """Look up an indexed registration by content fingerprint."""
    record = app.state.index.lookup_exact(content_fingerprint)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    return record

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint with component status."""
    store_health = app.state.index.store.health_check()
    components = {
        "index": "healthy" if store_health.get("available") else "unhealthy",
        "oracle": "healthy" if app.state.pipeline.oracle is not None else "disabled",
        "index_failures": app.state.gate.index_failures,
    }
    overall_status = "healthy" if components["index"] == "healthy" and not app.state.gate.index_failures else "degraded"
    return HealthResponse(
        status=overall_status,
        version=__version__,
        components={**components, "store": store_health},
    )

@app.get("/stats", response_model=dict)
async def get_system_stats():
    """Get index statistics."""
    return {
        "records": len(app.state.index),
        "similarity_threshold": app.state.pipeline.threshold,
        "hash_algorithm": app.state.pipeline.hash_algorithm,
        "index_failures": app.state.gate.index_failures,
        "api_version": __version__,
        "timestamp": time.time(),
    }

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error("Unhandled exception",
                 url=str(request.url), method=request.method, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_server_error", "message": "An unexpected error occurred"}
    )

if __name__ == "__main__":
    uvicorn.run(
        "provenance.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", 8000)),
        reload=os.getenv("DEBUG", "false").lower() == "true",
        log_config=None,  # We handle logging with structlog
    )
