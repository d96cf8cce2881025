"""
Request and response models for the generation API.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

from ..core.records import Record


def _timestamp(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class GenerateRequest(BaseModel):
    materials: str

    @field_validator('materials')
    @classmethod
    def materials_must_be_text(cls, v):
        # Emptiness is reported by the orchestrator as bad input (400)
        return v.strip()


class RankRequest(BaseModel):
    value: int

    @field_validator('value')
    @classmethod
    def value_must_be_in_range(cls, v):
        if not 1 <= v <= 5:
            raise ValueError('value must be between 1 and 5')
        return v


class ProjectMaterial(BaseModel):
    name: str
    quantity: str = ""


class ProjectStep(BaseModel):
    title: str
    action: str = ""
    details: str = ""
    purpose: str = ""
    tools: List[str] = []
    warnings: List[str] = []


class ProjectResponse(BaseModel):
    id: str
    name: str
    status: str
    description: str = ""
    materials: List[ProjectMaterial] = []
    steps: List[ProjectStep] = []
    reference_media: Optional[str] = None
    status_message: Optional[str] = None
    normalized_materials: List[str] = []
    user_rating: float = 0.0
    rank_score: float = 0.0
    votes: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Record) -> "ProjectResponse":
        return cls(
            id=record.id,
            name=record.name,
            status=record.status,
            description=record.description,
            materials=record.materials,
            steps=record.steps,
            reference_media=record.reference_media,
            status_message=record.status_message,
            normalized_materials=record.normalized_materials,
            user_rating=record.user_rating,
            rank_score=record.rank_score,
            votes=len(record.rank_votes),
            created_at=_timestamp(record.created_at),
            updated_at=_timestamp(record.updated_at),
        )


class GenerateResponse(BaseModel):
    projects: List[ProjectResponse]
    cached: bool
    source: str


class ProjectEnvelope(BaseModel):
    project: ProjectResponse
    message: Optional[str] = None


class StatusResponse(BaseModel):
    id: str
    name: str
    status: str
    status_message: Optional[str] = None


class RetryAcceptedResponse(BaseModel):
    id: str
    status: str


class FailedListResponse(BaseModel):
    page: int
    limit: int
    total: int
    projects: List[ProjectResponse]


class HistoryEntryResponse(BaseModel):
    id: int
    prompt: str
    updated_at: datetime


class HistoryResponse(BaseModel):
    prompts: List[HistoryEntryResponse]


class SuccessResponse(BaseModel):
    success: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    index_size: int
    backend: Dict[str, Any]
