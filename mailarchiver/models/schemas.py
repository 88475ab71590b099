"""Pydantic models for API requests and responses."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


# ============== Job Requests ==============

class SyncJobCreate(BaseModel):
    """Start a sync of one account."""
    account_id: str = Field(..., description="Account to synchronize", min_length=1)
    force_full: bool = Field(default=False, description="Ignore the checkpoint and rescan every folder")


class RestoreJobCreate(BaseModel):
    """Copy archived emails back into a mailbox folder."""
    email_ids: List[str] = Field(..., description="Archived email ids", min_length=1)
    target_account_id: str = Field(..., description="Account receiving the emails")
    target_folder: str = Field(..., description="Folder id or path in the target mailbox")


class DeletionJobCreate(BaseModel):
    """Delete emails from the local archive."""
    email_ids: List[str] = Field(..., description="Archived email ids", min_length=1)
    account_id: Optional[str] = Field(None, description="Only delete emails of this account")


class ImportJobCreate(BaseModel):
    """Import an mbox file into an account's archive."""
    file_path: str = Field(..., description="Server side path of the mbox file")
    account_id: str = Field(..., description="Account owning the imported emails")
    folder_name: str = Field(default="Imported", description="Folder name stored on imported emails")


class EmlImportJobCreate(BaseModel):
    """Import an .eml file or a zip archive of .eml files."""
    file_path: str = Field(..., description="Server side path of the .eml or .zip file")
    account_id: str = Field(..., description="Account owning the imported emails")
    folder_name: Optional[str] = Field(
        default=None,
        description="Single folder for every message instead of the folders in the archive",
    )


class AccountDeletionJobCreate(BaseModel):
    """Delete an account and its archive."""
    account_id: str = Field(...)


# ============== Job Responses ==============

class JobProgressResponse(BaseModel):
    """Progress counters of a job."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    phase: str = "queued"


class JobResponse(BaseModel):
    """Snapshot of a job."""
    job_id: str
    family: str
    status: str
    account_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: JobProgressResponse
    error: Optional[str] = None
    retry_count: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)


class JobListResponse(BaseModel):
    """Jobs of one family, newest first."""
    family: str
    jobs: List[JobResponse]
    total: int


class CancelJobResponse(BaseModel):
    """Result of a cancel request."""
    job_id: str
    cancelled: bool
    status: str
