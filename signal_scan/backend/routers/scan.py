from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from signal_scan.backend.agents.orchestrator import process_submission
from signal_scan.backend.agents.schemas import ScanInputs, format_validation_errors
from signal_scan.database import crud
from signal_scan.database.db import get_db

log = structlog.get_logger()

router = APIRouter(prefix="/api/public", tags=["scan"])


class CreateScanResponse(BaseModel):
    public_id: str


class PublicScanResult(BaseModel):
    """Everything an untrusted client may see; internal report and diagnostics stay server-side."""

    status: str
    public_id: str
    company: str
    customer_report: str
    metadata: Optional[Dict[str, Any]]


@router.post("/scans", status_code=status.HTTP_201_CREATED, response_model=CreateScanResponse)
async def create_scan(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"errors": [{"path": "", "message": "Body must be JSON."}]})

    try:
        form = ScanInputs.model_validate(body if isinstance(body, dict) else {})
    except ValidationError as ve:
        return JSONResponse(status_code=400, content={"errors": format_validation_errors(ve.errors())})

    record = crud.create_submission(db, inputs=form.model_dump())
    background_tasks.add_task(process_submission, record.id)
    log.info("scan_submitted", id=record.id, public_id=record.public_id)
    return CreateScanResponse(public_id=record.public_id)


@router.get("/scans/{public_id}")
async def get_scan(public_id: str, db: Session = Depends(get_db)):
    record = crud.get_submission_by_public_id(db, public_id=public_id)
    if not record:
        return JSONResponse(status_code=404, content={"status": "not_found"})
    if record.status == "pending":
        return JSONResponse(status_code=202, content={"status": "pending"})
    if record.status == "failed":
        return JSONResponse(status_code=500, content={"status": "failed"})

    outputs = record.outputs or {}
    return PublicScanResult(
        status="complete",
        public_id=record.public_id,
        company=outputs.get("company") or "",
        customer_report=outputs.get("customer_report") or "",
        metadata=outputs.get("metadata"),
    )
