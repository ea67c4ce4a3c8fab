from pydantic import BaseModel, Field
from typing import Optional, Dict, List, Any
from typing_extensions import Annotated


class StartJobRequest(BaseModel):
    # Hex address or a resolvable name such as vitalik.eth
    address: Annotated[str, Field(min_length=1, max_length=255)]
    fid: Optional[int] = None


class ProgressModel(BaseModel):
    current: int
    total: int


class JobStatusResponse(BaseModel):
    status: str
    step: int
    totalSteps: int
    progress: Optional[ProgressModel] = None
    result: Optional[Dict[str, List[Any]]] = None
    error: Optional[str] = None
    lastUpdated: Optional[str] = None


class StartJobResponse(BaseModel):
    jobId: str
    outcome: str
    status: str
    progress: Optional[JobStatusResponse] = None
    result: Optional[Dict[str, List[Any]]] = None


class NotificationDetailsRequest(BaseModel):
    fid: int
    url: Annotated[str, Field(min_length=1)]
    token: Annotated[str, Field(min_length=1)]


class HealthResponse(BaseModel):
    status: str
    version: str
