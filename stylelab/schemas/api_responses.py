"""
API response schemas for the optimization endpoints.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class BestParameters(BaseModel):
    copywriting_style: str
    writing_style: str
    tone: str
    personality: str
    conversion_rate: float = 0.0
    click_rate: float = 0.0


class StartProcessResponse(BaseModel):
    process_id: str
    status: str


class ProcessStatusResponse(BaseModel):
    status: str
    completed_rounds: int
    total_rounds: int
    best_parameters: Optional[BestParameters] = None


class SegmentMetrics(BaseModel):
    total_sent: int = 0
    total_opens: int = 0
    total_clicks: int = 0
    total_conversions: int = 0
    total_revenue: float = 0.0
    click_rate: float = 0.0
    conversion_rate: float = 0.0


class SegmentNode(BaseModel):
    id: str
    segment_number: int
    status: str
    subscriber_count: int
    assigned_parameters: dict
    is_control_group: bool
    is_exploration_group: bool
    metrics: SegmentMetrics
    error: Optional[str] = None


class RoundNode(BaseModel):
    id: str
    round_number: int
    status: str
    start_date: datetime
    metrics_analysis_time: Optional[datetime] = None
    end_date: Optional[datetime] = None
    subscriber_count: int
    best_performing_parameters: Optional[BestParameters] = None
    model_performance: Optional[dict] = None
    metrics: SegmentMetrics
    error: Optional[str] = None
    segments: list[SegmentNode]


class ProcessTreeResponse(BaseModel):
    id: str
    status: str
    configuration: dict
    result: Optional[dict] = None
    error: Optional[str] = None
    created_at: datetime
    rounds: list[RoundNode]


class TrackingEventRequest(BaseModel):
    email_id: str
    event_type: str  # opened, clicked, converted
    revenue: Optional[float] = None
