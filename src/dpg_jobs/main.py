from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Dict, List

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .configuration import log_config, make_runtime_config
from .errors import NotFoundError, PersistenceError, UnitStateError
from .models import (
    ArchiveCopyRequest,
    ComponentHealth,
    DeaccessionRequest,
    JobEventView,
    JobStatusView,
    MasterFileListRequest,
    OcrCallback,
    OcrRequest,
)
from .services import Services, build_services

logger = logging.getLogger(__name__)

config = make_runtime_config()
services = build_services(config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"start service v{config.version}")
    log_config(config)
    yield
    services.shutdown()


app = FastAPI(title="DPG Jobs", version=str(config.version), lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services() -> Services:
    return services


def _job_id(job_id: int) -> PlainTextResponse:
    return PlainTextResponse(str(job_id))


@app.get("/")
@app.get("/version")
def version() -> Dict[str, str]:
    return {"version": str(config.version), "build": str(config.build)}


@app.get("/healthcheck", response_model=Dict[str, ComponentHealth], response_model_exclude_none=True)
def healthcheck(svc: Services = Depends(get_services)) -> Dict[str, ComponentHealth]:
    return svc.health()


@app.get("/jobs/{job_id}", response_model=JobStatusView, response_model_by_alias=True)
def get_job(job_id: int, svc: Services = Depends(get_services)) -> JobStatusView:
    try:
        job = svc.jobs.get(job_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return job.to_view()


@app.get("/jobs/{job_id}/events", response_model=List[JobEventView])
def get_job_events(job_id: int, svc: Services = Depends(get_services)) -> List[JobEventView]:
    try:
        events = svc.jobs.events(job_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [JobEventView(level=event.level.name, text=event.text, created_at=event.created_at) for event in events]


@app.post("/units/{unit_id}/finalize", response_class=PlainTextResponse)
def finalize_unit(unit_id: int, svc: Services = Depends(get_services)) -> PlainTextResponse:
    try:
        job = svc.start_finalization(unit_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UnitStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"unable to create FinalizeUnit job status: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _job_id(job.id)


@app.post("/ocr", response_class=PlainTextResponse)
def request_ocr(req: OcrRequest, svc: Services = Depends(get_services)) -> PlainTextResponse:
    try:
        job = svc.start_ocr(req.type, req.id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"unable to create OCR job status: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _job_id(job.id)


@app.post("/callbacks/{job_id}/ocr", response_class=PlainTextResponse)
def ocr_done(job_id: int, payload: OcrCallback, svc: Services = Depends(get_services)) -> PlainTextResponse:
    svc.ocr_callback(job_id, payload.status, payload.message)
    return PlainTextResponse("ok")


@app.post("/metadata/{metadata_id}/publish", response_class=PlainTextResponse)
def publish_metadata(metadata_id: int, svc: Services = Depends(get_services)) -> PlainTextResponse:
    try:
        job = svc.start_publish(metadata_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"unable to create PublishToVirgo job status: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _job_id(job.id)


@app.post("/orders/{order_id}/check", response_class=PlainTextResponse)
def check_order(order_id: int, svc: Services = Depends(get_services)) -> PlainTextResponse:
    try:
        job = svc.check_order(order_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"unable to create check order job status: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _job_id(job.id)


@app.post("/units/{unit_id}/copy", response_class=PlainTextResponse)
def copy_from_archive(
    unit_id: int,
    req: ArchiveCopyRequest,
    svc: Services = Depends(get_services),
) -> PlainTextResponse:
    try:
        job = svc.copy_from_archive(unit_id, req.compute_id, filename=req.filename, files=req.files)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"unable to create CopyArchivedFilesToProduction job status: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _job_id(job.id)


@app.post("/units/{unit_id}/deliverables", response_class=PlainTextResponse)
def create_patron_deliverables(unit_id: int, svc: Services = Depends(get_services)) -> PlainTextResponse:
    try:
        job = svc.start_deliverables(unit_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"unable to create CreatePatronDeliverables job status: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _job_id(job.id)


@app.post("/units/{unit_id}/masterfiles/delete", response_class=PlainTextResponse)
def delete_master_files(
    unit_id: int,
    req: MasterFileListRequest,
    svc: Services = Depends(get_services),
) -> PlainTextResponse:
    try:
        job = svc.start_delete_master_files(unit_id, req.filenames)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (ValueError, UnitStateError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"unable to create DeleteMasterFiles job status: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _job_id(job.id)


@app.post("/units/{unit_id}/masterfiles/renumber", response_class=PlainTextResponse)
def renumber_master_files(
    unit_id: int,
    req: MasterFileListRequest,
    svc: Services = Depends(get_services),
) -> PlainTextResponse:
    try:
        job = svc.start_renumber_master_files(unit_id, req.filenames, req.start_num)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"unable to create RenumberMasterFiles job status: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _job_id(job.id)


@app.post("/masterfiles/{master_file_id}/deaccession", response_class=PlainTextResponse)
def deaccession_master_file(
    master_file_id: int,
    req: DeaccessionRequest,
    svc: Services = Depends(get_services),
) -> PlainTextResponse:
    try:
        job = svc.start_deaccession(master_file_id, req.compute_id, req.note)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (ValueError, UnitStateError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error(f"unable to create DeaccessionMasterFile job status: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _job_id(job.id)
