import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from site_assets.config import get_settings
from site_assets.errors import (
    AssetError,
    InvalidInput,
    JobNotFound,
    ResourceExhausted,
    TooManyFiles,
    UnsafeTarget,
)
from site_assets.service import AssetService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    service = AssetService.from_settings(settings)
    service.start()
    app.state.service = service
    logger.info(f"[server] Ready, downloads in {settings.downloads_dir}")
    yield
    # Shutdown: stop background tasks, close browsers and HTTP clients
    await service.shutdown()


app = FastAPI(title="Site Asset Downloader", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service(request: Request) -> AssetService:
    return request.app.state.service


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

def status_for(error: AssetError) -> int:
    if isinstance(error, (InvalidInput, UnsafeTarget, TooManyFiles)):
        return 400
    if isinstance(error, JobNotFound):
        return 404
    if isinstance(error, ResourceExhausted):
        return 429
    return 500


@app.exception_handler(AssetError)
async def asset_error_handler(request: Request, exc: AssetError):
    return JSONResponse(
        status_code=status_for(exc),
        content={"error": exc.kind, "message": exc.message},
    )


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ExtractRequest(BaseModel):
    url: str
    filters: dict = Field(default_factory=dict)


class BulkDownloadRequest(BaseModel):
    jobId: str
    mediaUrls: list[str]


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/extract")
async def extract(request: ExtractRequest, service: AssetService = Depends(get_service)):
    job_id = service.start_extraction(request.url, request.filters)
    return {
        "jobId": job_id,
        "status": "started",
        "message": "Media extraction started",
    }


@app.get("/api/status/{job_id}")
async def job_status(job_id: str, service: AssetService = Depends(get_service)):
    return service.get_job_status(job_id)


@app.post("/api/download-bulk")
async def download_bulk(request: BulkDownloadRequest, service: AssetService = Depends(get_service)):
    download_job_id = service.start_bulk_download(request.jobId, request.mediaUrls)
    return {
        "downloadJobId": download_job_id,
        "status": "started",
        "message": f"Downloading {len(request.mediaUrls)} files",
    }


@app.get("/api/download/{item_id}")
async def download_item(item_id: str, service: AssetService = Depends(get_service)):
    item = service.get_download(item_id)
    return FileResponse(
        item.path,
        media_type=item.content_type or "application/octet-stream",
        filename=item.filename,
    )


@app.get("/api/download-zip/{job_id}")
async def download_zip(job_id: str, service: AssetService = Depends(get_service)):
    path = service.get_archive(job_id)
    return FileResponse(path, media_type="application/zip", filename=path.name)


@app.delete("/api/cleanup/{job_id}")
async def cleanup(job_id: str, service: AssetService = Depends(get_service)):
    result = service.cleanup(job_id)
    return {"message": "Cleanup completed", **result}


@app.get("/api/jobs")
async def list_jobs(service: AssetService = Depends(get_service)):
    return {"jobs": service.list_jobs()}


@app.get("/api/stats")
async def stats(service: AssetService = Depends(get_service)):
    return service.stats()
