import io
import logging
import os
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, validator

from merge_engine import (
    EmptyKeyPolicy,
    InvalidKey,
    MergeError,
    ResultSet,
    SessionNotReady,
    TabularDataset,
    default_key,
    intersect_columns,
    merge_datasets,
)
from table_io import EXPORTERS, parse_table

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Table Merge API",
    description="Left-join two CSV/Excel tables on a shared key and export merged and unmatched rows",
    version="1.0.0"
)

# Create API router for all API endpoints
api_router = APIRouter(prefix="/api")

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configuration
MAX_FILE_SIZE = int(os.environ.get("TABLE_MERGE_MAX_FILE_SIZE", 10 * 1024 * 1024))  # 10MB
MAX_ROWS = int(os.environ.get("TABLE_MERGE_MAX_ROWS", 100000))
SESSION_TTL_HOURS = float(os.environ.get("TABLE_MERGE_SESSION_TTL_HOURS", 6))
PREVIEW_ROWS = 10
MAX_PREVIEW_ROWS = 1000

RESULT_KINDS = ("merged", "unmatched")
DEFAULT_EXPORT = {
    "merged": ("merged_data", "csv"),
    "unmatched": ("unmatched_rows", "xlsx"),
}


# Pydantic models
class MergeRequest(BaseModel):
    key: Optional[str] = Field(None, description="Shared column to join on; defaults to the session's selected key")
    empty_key_policy: Literal["match", "never"] = Field(
        "match", description="Whether rows with a blank key may match each other"
    )


class KeySelection(BaseModel):
    key: str = Field(description="Column from the common columns of both files")

    @validator('key')
    def validate_key(cls, v):
        if not v or not v.strip():
            raise ValueError('key must not be empty')
        return v


class MergeSession:
    """
    State for one user: the two loaded tables, the chosen key and the last result.

    Loading either table recomputes the common columns and drops any previous
    result, since it no longer describes the loaded data.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.created_at = datetime.now()
        self.last_access = self.created_at
        self.primary: Optional[TabularDataset] = None
        self.secondary: Optional[TabularDataset] = None
        self.common_columns: List[str] = []
        self.selected_key: Optional[str] = None
        self.result: Optional[ResultSet] = None
        self.last_merge: Optional[Dict[str, Any]] = None

    def touch(self):
        self.last_access = datetime.now()

    @property
    def ready(self) -> bool:
        return self.primary is not None and self.secondary is not None

    def _refresh_columns(self):
        if self.ready:
            self.common_columns = intersect_columns(self.primary, self.secondary)
        else:
            self.common_columns = []
        if self.selected_key not in self.common_columns:
            self.selected_key = default_key(self.common_columns)
        self.result = None
        self.last_merge = None

    def load_primary(self, dataset: TabularDataset):
        self.primary = dataset
        self._refresh_columns()

    def load_secondary(self, dataset: TabularDataset):
        self.secondary = dataset
        self._refresh_columns()

    def select_key(self, key: str):
        if key not in self.common_columns:
            raise InvalidKey(f"Column '{key}' is not shared by both files")
        self.selected_key = key

    def merge(self, key: Optional[str] = None, empty_key_policy: str = "match") -> ResultSet:
        if not self.ready:
            raise SessionNotReady("Upload both primary and secondary files before merging")

        if key is None:
            if self.selected_key is None:
                raise InvalidKey("No common columns to merge on")
            key = self.selected_key
        if not key:
            raise InvalidKey("A merge key is required")
        if key not in self.common_columns:
            raise InvalidKey(f"Column '{key}' is not shared by both files")

        start_time = time.time()
        result = merge_datasets(self.primary, self.secondary, key, EmptyKeyPolicy(empty_key_policy))
        duration_ms = int((time.time() - start_time) * 1000)

        self.selected_key = key
        self.result = result
        self.last_merge = {
            'timestamp': datetime.now().isoformat(),
            **result.summary(),
            'rows_b': len(self.secondary),
            'duration_ms': duration_ms,
        }
        logger.info(
            "Session %s merged on %r: %d matched, %d unmatched in %d ms",
            self.session_id, key, result.merged_count, result.unmatched_count, duration_ms,
        )
        return result

    def reset(self):
        self.primary = None
        self.secondary = None
        self.common_columns = []
        self.selected_key = None
        self.result = None
        self.last_merge = None

    def require_result(self) -> ResultSet:
        if self.result is None:
            raise SessionNotReady("No merge result yet. Run /merge first.")
        return self.result

    def state(self) -> Dict[str, Any]:
        def describe(dataset: Optional[TabularDataset]) -> Dict[str, Any]:
            if dataset is None:
                return {"loaded": False, "filename": None, "rows": 0, "columns": []}
            return {"loaded": True, "filename": dataset.name, "rows": len(dataset), "columns": dataset.fields}

        return {
            "session_id": self.session_id,
            "primary": describe(self.primary),
            "secondary": describe(self.secondary),
            "common_columns": self.common_columns,
            "selected_key": self.selected_key,
            "ready_to_merge": self.ready and self.selected_key is not None,
            "has_result": self.result is not None,
            "last_merge": self.last_merge,
        }


class SessionStore:
    """In-memory sessions keyed by id, expired after a period of inactivity"""

    def __init__(self, ttl_hours: float = SESSION_TTL_HOURS):
        self.ttl = timedelta(hours=ttl_hours)
        self._sessions: Dict[str, MergeSession] = {}

    def create(self) -> MergeSession:
        self.cleanup_expired()
        session = MergeSession(str(uuid.uuid4()))
        self._sessions[session.session_id] = session
        logger.info("Created session %s", session.session_id)
        return session

    def get(self, session_id: str) -> MergeSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        session.touch()
        return session

    def find(self, session_id: str) -> Optional[MergeSession]:
        return self._sessions.get(session_id)

    def cleanup_expired(self):
        """Remove sessions idle longer than the TTL"""
        cutoff_time = datetime.now() - self.ttl
        for session_id, session in list(self._sessions.items()):
            if session.last_access < cutoff_time:
                del self._sessions[session_id]
                logger.info("Cleaned up idle session: %s", session_id)

    def clear(self):
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


sessions = SessionStore()


def http_error(e: MergeError) -> HTTPException:
    if isinstance(e, SessionNotReady):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


async def load_upload(session: MergeSession, file: UploadFile, role: str) -> Dict[str, Any]:
    """Parse an uploaded file and store it as the session's primary or secondary table"""
    too_large = HTTPException(
        status_code=400,
        detail=f"Files must be smaller than {MAX_FILE_SIZE / (1024*1024):.0f}MB"
    )
    try:
        # Check file size before reading when the client sent it
        if file.size is not None and file.size > MAX_FILE_SIZE:
            raise too_large
        content = await file.read()
        if len(content) > MAX_FILE_SIZE:
            raise too_large

        # a failed parse leaves the previously loaded table in place
        dataset = parse_table(content, file.filename, max_rows=MAX_ROWS)
        if role == "primary":
            session.load_primary(dataset)
        else:
            session.load_secondary(dataset)

        logger.info("Session %s loaded %s file %s (%d rows)", session.session_id, role, file.filename, len(dataset))
        return {
            "filename": file.filename,
            "columns": dataset.fields,
            "rows": len(dataset),
            "sample_rows": dataset.head(PREVIEW_ROWS),
            "state": session.state(),
        }

    except MergeError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Upload failed: {str(e)}")


# Startup event
@app.on_event("startup")
async def startup_event():
    """Drop idle sessions on startup"""
    sessions.cleanup_expired()


# Endpoints
@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"ok": True}


@api_router.post("/sessions")
async def create_session():
    """Start a new merge session"""
    session = sessions.create()
    return session.state()


@api_router.get("/sessions/{session_id}")
async def get_session(session_id: str):
    """Loaded files, common columns, selected key and last merge summary"""
    return sessions.get(session_id).state()


@api_router.post("/sessions/{session_id}/primary")
async def upload_primary(session_id: str, file: UploadFile = File(...)):
    """Load the primary (left) table"""
    return await load_upload(sessions.get(session_id), file, "primary")


@api_router.post("/sessions/{session_id}/secondary")
async def upload_secondary(session_id: str, file: UploadFile = File(...)):
    """Load the secondary (right) table"""
    return await load_upload(sessions.get(session_id), file, "secondary")


@api_router.put("/sessions/{session_id}/key")
async def select_key(session_id: str, selection: KeySelection):
    session = sessions.get(session_id)
    try:
        session.select_key(selection.key)
    except MergeError as e:
        raise http_error(e)
    return session.state()


@api_router.post("/sessions/{session_id}/merge")
async def merge_files(session_id: str, request: MergeRequest):
    """Left join primary to secondary on the requested or selected key"""
    session = sessions.get(session_id)

    try:
        result = session.merge(request.key, request.empty_key_policy)
        return {
            "ready_for_download": True,
            **session.last_merge,
            "warnings": result.warnings(),
            "preview": result.preview(PREVIEW_ROWS),
        }

    except MergeError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Merge failed: {str(e)}")


@api_router.get("/sessions/{session_id}/preview")
async def preview_result(session_id: str, kind: str = Query(default="merged"), n: int = Query(default=PREVIEW_ROWS)):
    """Preview the first N merged or unmatched rows"""
    if kind not in RESULT_KINDS:
        raise HTTPException(status_code=400, detail="kind must be one of: merged, unmatched")
    if n < 1:
        raise HTTPException(status_code=400, detail="n must be positive")

    session = sessions.get(session_id)
    try:
        result = session.require_result()
    except MergeError as e:
        raise http_error(e)

    # Limit preview rows
    preview_n = min(n, MAX_PREVIEW_ROWS)
    rows = result.preview(preview_n) if kind == "merged" else result.preview_unmatched(preview_n)
    total = result.merged_count if kind == "merged" else result.unmatched_count
    return {
        "kind": kind,
        "columns": list(rows[0].keys()) if rows else [],
        "rows": rows,
        "total_rows": total,
    }


@api_router.get("/sessions/{session_id}/download/{kind}")
async def download_result(session_id: str, kind: str, format: Optional[str] = Query(default=None)):
    """Download merged rows (CSV by default) or unmatched rows (Excel by default)"""
    if kind not in RESULT_KINDS:
        raise HTTPException(status_code=400, detail="kind must be one of: merged, unmatched")

    stem, default_format = DEFAULT_EXPORT[kind]
    export_format = (format or default_format).lower()
    if export_format not in EXPORTERS:
        raise HTTPException(status_code=400, detail="format must be one of: csv, xlsx")

    session = sessions.get(session_id)
    try:
        result = session.require_result()
    except MergeError as e:
        raise http_error(e)

    rows = result.merged_rows if kind == "merged" else result.unmatched_rows
    serialize, media_type = EXPORTERS[export_format]
    try:
        payload = serialize(rows)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Export failed: {str(e)}")

    filename = f"{stem}.{export_format}"
    return StreamingResponse(
        io.BytesIO(payload),
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )


@api_router.post("/sessions/{session_id}/reset")
async def reset_session(session_id: str):
    """Clear loaded files, key and result; safe to call any number of times"""
    session = sessions.find(session_id)
    if session is not None:
        session.reset()
        session.touch()
        logger.info("Reset session %s", session_id)
    return {"session_id": session_id, "reset": True}


@app.get("/")
async def root():
    """API info"""
    return {
        "name": app.title,
        "version": app.version,
        "endpoints": [
            "GET /api/health",
            "POST /api/sessions",
            "GET /api/sessions/{session_id}",
            "POST /api/sessions/{session_id}/primary",
            "POST /api/sessions/{session_id}/secondary",
            "PUT /api/sessions/{session_id}/key",
            "POST /api/sessions/{session_id}/merge",
            "GET /api/sessions/{session_id}/preview",
            "GET /api/sessions/{session_id}/download/{kind}",
            "POST /api/sessions/{session_id}/reset",
        ],
    }


# Include API router
app.include_router(api_router)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
