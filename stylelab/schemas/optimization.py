"""
Optimization request configuration.
Stored verbatim on the process row so the scheduler can resume rounds after a restart.
"""
from typing import Optional
from pydantic import BaseModel, Field

from stylelab.config import get_settings


def _default_wait_minutes() -> int:
    return get_settings().default_wait_time_for_metrics_minutes


class SegmentationConfig(BaseModel):
    number_of_segments: int = Field(default=4, ge=1, le=100)
    include_control_group: bool = False
    control_group_size: int = Field(default=0, ge=0)
    exploration_rate: float = Field(default=0.2, ge=0.0, le=1.0)


class OfferBrief(BaseModel):
    """What the message generator needs to know about an offer."""

    id: Optional[str] = None
    name: str = "our latest offer"
    description: str = ""
    url: Optional[str] = None


class OptimizationConfig(BaseModel):
    user_id: str
    user_email: Optional[str] = None
    subscriber_list_id: str
    offer_ids: list[str] = Field(default_factory=list)
    # Offer details keyed by id; ids without a brief get a generic one
    offers: list[OfferBrief] = Field(default_factory=list)
    selection_percentage: float = Field(default=1.0, gt=0.0, le=1.0)
    number_of_rounds: int = Field(default=3, ge=1, le=50)
    segmentation: SegmentationConfig = Field(default_factory=SegmentationConfig)
    sender_name: str = "StyleLab"
    sender_email: str = "campaigns@stylelab.io"
    audience_description: str = "general newsletter subscribers"
    round_interval_minutes: int = Field(default=1440, ge=0)
    wait_time_for_metrics_minutes: int = Field(default_factory=_default_wait_minutes, ge=0)

    def offer_for(self, offer_id: Optional[str]) -> OfferBrief:
        for offer in self.offers:
            if offer.id == offer_id:
                return offer
        if offer_id is None and self.offers:
            return self.offers[0]
        return OfferBrief(id=offer_id)
