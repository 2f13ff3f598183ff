"""
API Schemas for the negotiation analysis service
"""
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# REST API - Request/Response Models
# ============================================================================

class ClientProfile(BaseModel):
    """Free-text client context used only inside prompts"""
    model_config = ConfigDict(extra="allow")

    company: Optional[str] = None
    negotiator: Optional[str] = None
    sector: Optional[str] = None
    criteria: Optional[str] = None
    constraints: Optional[str] = None
    user_goals: Optional[str] = None
    client_goals: Optional[str] = None
    weekly_hours: Optional[Union[int, str]] = None
    offered_services: Optional[str] = None
    deadlines: Optional[str] = None
    notes: Optional[str] = None


class AnalyzeRequest(BaseModel):
    """JSON body for POST /api/analyze"""
    client_id: str = Field(..., min_length=1)
    text: str
    method: Literal["text"] = "text"
    profile: Optional[ClientProfile] = None
    participants: Optional[List[str]] = None


class ParticipantsRequest(BaseModel):
    text: str


class ParticipantsResponse(BaseModel):
    participants: List[str]
    total: int


class UsageResponse(BaseModel):
    """Today's token consumption"""
    day: date
    used_tokens: int
    total_tokens: int
    percentage: float = Field(..., ge=0.0)
    locked_until: Optional[datetime] = None


# ============================================================================
# Health & Metadata
# ============================================================================

class HealthResponse(BaseModel):
    """API health check"""
    status: str = "healthy"
    timestamp: datetime
    version: str
    services: Dict[str, Any] = Field(..., description="Status of each service component")
