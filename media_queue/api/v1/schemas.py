from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from media_queue.domain.states import JobType, LeaseStatus, ProxyStatus, SourceProtocol


class CamelModel(BaseModel):
    # Wire format is camelCase (workerId, batchId); Python side stays snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def envelope(data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, mode="json")
    return {"data": data}


# --- Requests ---

class WorkerRequest(CamelModel):
    worker_id: str = Field(min_length=1)


class ProgressRequest(WorkerRequest):
    stage: Optional[str] = None


class ProxyJobResult(CamelModel):
    # Extra keys are stored on the job as-is
    model_config = ConfigDict(extra="allow")

    thumbnail_path: Optional[str] = None
    proxy_path: Optional[str] = None
    proxy_status: Optional[ProxyStatus] = None
    metadata: Optional[dict[str, Any]] = None

    def as_result(self) -> dict[str, Any]:
        """Only the keys the worker sent, in wire format."""
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")


class CompleteJobRequest(WorkerRequest):
    result: ProxyJobResult = Field(default_factory=ProxyJobResult)


class FailRequest(WorkerRequest):
    error: str = "Unknown error"


class StorageEventIn(CamelModel):
    event_type: Literal["storage", "system", "file_audit"]
    event_action: Optional[str] = None
    timestamp: Optional[str] = None
    source_host: Optional[str] = None
    username: Optional[str] = None
    space_name: Optional[str] = None
    pool_name: Optional[str] = None
    storage_node_group: Optional[str] = None
    file_path: Optional[str] = None
    bytes_transferred: Optional[int] = None
    client_ip: Optional[str] = None
    details_json: Optional[str] = None
    severity: str = "info"


class CompleteBatchRequest(WorkerRequest):
    events: list[StorageEventIn]


class JobCreate(CamelModel):
    asset_id: int
    space_name: str
    primary_file_path: str
    asset_type: str
    job_type: JobType = JobType.FULL


# --- Responses ---

class LeaseFields(CamelModel):
    status: LeaseStatus
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class ProxyJobDTO(LeaseFields):
    id: int
    asset_id: int
    space_name: str
    primary_file_path: str
    asset_type: str
    job_type: JobType
    stage: Optional[str] = None
    result: Optional[dict[str, Any]] = None


class JobClaim(CamelModel):
    job: ProxyJobDTO
    catalog_data_path: str


class EventBatchClaim(CamelModel):
    batch_id: str
    raw_payload: str
    source_protocol: SourceProtocol
    event_count_estimate: int


class EventBatchDTO(LeaseFields):
    batch_id: str
    source_protocol: SourceProtocol
    event_count_estimate: int
    events_processed: Optional[int] = None
