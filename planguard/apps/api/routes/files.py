from __future__ import annotations

import logging

from fastapi import APIRouter, File, Request, UploadFile, status
from pydantic import BaseModel

from planguard.apps.api.deps import protected_route
from planguard.apps.api.openapi import UPLOAD_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, success_response


logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"], responses=UPLOAD_ERROR_RESPONSES)


class UploadResponse(BaseModel):
    filename: str | None
    content_type: str | None
    size_bytes: int
    size_mb: float


@router.post(
    "/files",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[UploadResponse] | UploadResponse,
    dependencies=protected_route(upload_field="file"),
)
async def upload_file(request: Request, file: UploadFile = File(...)) -> dict:
    # Content is handed to external storage; this service only tracks how much was accepted.
    size_bytes = file.size if file.size is not None else len(await file.read())
    size_mb = getattr(request.state, "upload_size_mb", size_bytes / (1024 * 1024))
    logger.info(
        "file_accepted filename=%s size_mb=%.2f tenant_id=%s",
        file.filename,
        size_mb,
        getattr(request.state, "upload_tenant_id", None),
    )
    data = UploadResponse(
        filename=file.filename,
        content_type=file.content_type,
        size_bytes=size_bytes,
        size_mb=round(size_mb, 4),
    )
    return success_response(request=request, data=data)
