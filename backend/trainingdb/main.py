# backend/trainingdb/main.py
import logging
import os
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import DocumentBase, document_engine
from .errors import EnrollmentError

from .apps.audit.router import router as audit_router
from .apps.modules.router import router as modules_router
from .apps.programs.router import (
    module_enrollment_router,
    registrations_router,
    router as cycle_programs_router,
    sync_jobs_router,
)

logger = logging.getLogger(__name__)


def _allowed_origins() -> List[str]:
    """
    Parse CORS_ALLOWED_ORIGINS from env.

    Accepts comma-separated origins. If unset, defaults to local dev ports.
    """
    raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if raw:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
        if origins:
            return origins
    return [
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]


app = FastAPI(title="Training Enrollment API", version="1.0.0")
cors_origins = _allowed_origins()
allow_credentials = "*" not in cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _create_document_tables() -> None:
    # Relational tables are owned by Alembic; the document store is not.
    DocumentBase.metadata.create_all(bind=document_engine)


@app.exception_handler(EnrollmentError)
def _enrollment_error_handler(request: Request, exc: EnrollmentError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed", extra={"path": request.url.path, "code": exc.code})
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/", tags=["health"])
def read_root():
    return {"status": "ok", "message": "Training enrollment backend is running"}


@app.get("/health", tags=["health"])
def health():
    return {"status": "ok"}


app.include_router(modules_router)
app.include_router(cycle_programs_router)
app.include_router(registrations_router)
app.include_router(module_enrollment_router)
app.include_router(sync_jobs_router)
app.include_router(audit_router)
