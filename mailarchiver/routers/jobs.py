"""Jobs router - Submit, inspect and cancel background jobs of every family."""

import logging
from fastapi import APIRouter, HTTPException, Query, Request

from mailarchiver.models.schemas import (
    AccountDeletionJobCreate,
    CancelJobResponse,
    DeletionJobCreate,
    EmlImportJobCreate,
    ImportJobCreate,
    JobListResponse,
    JobResponse,
    RestoreJobCreate,
    SyncJobCreate,
)
from mailarchiver.workers.account_deletion_worker import AccountDeletionJobRequest, AccountInUseError
from mailarchiver.workers.deletion_worker import DeletionJobRequest
from mailarchiver.workers.eml_import_worker import EmlImportJobRequest
from mailarchiver.workers.host import JobHost
from mailarchiver.workers.import_worker import ImportJobRequest
from mailarchiver.workers.jobs import Job, JobAlreadyRunningError, JobFamily, JobSetupError
from mailarchiver.workers.restore_worker import RestoreJobRequest
from mailarchiver.workers.sync_worker import SyncJobRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_host(request: Request) -> JobHost:
    host = getattr(request.app.state, "job_host", None)
    if host is None:
        raise HTTPException(status_code=503, detail="Job host not running")
    return host


def _to_response(job: Job) -> JobResponse:
    return JobResponse(**job.to_dict())


def _submit(request: Request, family: JobFamily, payload, account_id=None) -> JobResponse:
    host = _get_host(request)
    try:
        job = host.submit(family, payload, account_id=account_id)
    except (JobAlreadyRunningError, AccountInUseError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except JobSetupError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _to_response(job)


# ============== Submit ==============

@router.post("/sync", response_model=JobResponse, status_code=202)
async def start_sync(request: Request, body: SyncJobCreate):
    """Queue a sync of one account. 409 while another sync of it is active."""
    payload = SyncJobRequest(account_id=body.account_id, force_full=body.force_full)
    return _submit(request, JobFamily.SYNC, payload, account_id=body.account_id)


@router.post("/restore", response_model=JobResponse, status_code=202)
async def start_restore(request: Request, body: RestoreJobCreate):
    payload = RestoreJobRequest(
        target_account_id=body.target_account_id,
        target_folder=body.target_folder,
        email_ids=body.email_ids,
    )
    return _submit(request, JobFamily.RESTORE, payload, account_id=body.target_account_id)


@router.post("/deletion", response_model=JobResponse, status_code=202)
async def start_deletion(request: Request, body: DeletionJobCreate):
    payload = DeletionJobRequest(email_ids=body.email_ids, account_id=body.account_id)
    return _submit(request, JobFamily.DELETION, payload, account_id=body.account_id)


@router.post("/import", response_model=JobResponse, status_code=202)
async def start_import(request: Request, body: ImportJobCreate):
    payload = ImportJobRequest(
        file_path=body.file_path,
        account_id=body.account_id,
        folder_name=body.folder_name,
    )
    return _submit(request, JobFamily.IMPORT, payload, account_id=body.account_id)


@router.post("/eml-import", response_model=JobResponse, status_code=202)
async def start_eml_import(request: Request, body: EmlImportJobCreate):
    payload = EmlImportJobRequest(
        file_path=body.file_path,
        account_id=body.account_id,
        folder_name=body.folder_name,
    )
    return _submit(request, JobFamily.EML_IMPORT, payload, account_id=body.account_id)


@router.post("/account-deletion", response_model=JobResponse, status_code=202)
async def start_account_deletion(request: Request, body: AccountDeletionJobCreate):
    """Queue deletion of an account and its archive. 409 while other jobs still use the account."""
    payload = AccountDeletionJobRequest(account_id=body.account_id)
    return _submit(request, JobFamily.ACCOUNT_DELETION, payload, account_id=body.account_id)


# ============== Inspect ==============

@router.get("/{family}", response_model=JobListResponse)
async def list_jobs(
    request: Request,
    family: JobFamily,
    include_finished: bool = Query(False, description="Include completed, failed and cancelled jobs"),
):
    registry = _get_host(request).registry(family)
    jobs = registry.list_all() if include_finished else registry.list_active()
    return JobListResponse(
        family=family.value,
        jobs=[_to_response(job) for job in jobs],
        total=len(jobs),
    )


@router.get("/{family}/{job_id}", response_model=JobResponse)
async def get_job(request: Request, family: JobFamily, job_id: str):
    job = _get_host(request).registry(family).get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _to_response(job)


@router.post("/{family}/{job_id}/cancel", response_model=CancelJobResponse)
async def cancel_job(request: Request, family: JobFamily, job_id: str):
    """
    Cancel a job.

    Queued jobs are cancelled immediately; running jobs stop at their next
    checkpoint, so the returned status may still be "running".
    """
    registry = _get_host(request).registry(family)
    job = registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    cancelled = registry.cancel(job_id)
    return CancelJobResponse(job_id=job_id, cancelled=cancelled, status=job.status.value)
