"""
Pydantic schemas for dispute tickets raised against invoices and line items.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class DisputeStatus(str, Enum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class DisputePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class DisputeCategory(str, Enum):
    PRICING = "pricing"
    DUPLICATE = "duplicate"
    INVALID_CPT = "invalid_cpt"
    PATIENT_INFO = "patient_info"
    COVERAGE = "coverage"
    OTHER = "other"


CLOSING_STATUSES = (DisputeStatus.RESOLVED, DisputeStatus.REJECTED)


class Dispute(BaseModel):
    """A dispute ticket row."""
    id: Optional[str] = None
    organization_id: Optional[str] = None
    invoice_id: Optional[str] = None
    invoice_item_id: Optional[str] = None
    client_id: Optional[str] = None
    dispute_number: Optional[str] = None
    disputed_amount: Decimal = Decimal("0")
    reason_category: DisputeCategory = DisputeCategory.OTHER
    reason_details: str = ""
    status: DisputeStatus = DisputeStatus.OPEN
    priority: DisputePriority = DisputePriority.NORMAL
    source: str = "portal"
    resolution_type: Optional[str] = None
    resolution_details: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    created_by: Optional[str] = None
    assigned_to: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DisputeCreate(BaseModel):
    """Schema for opening a dispute ticket."""
    invoice_id: Optional[str] = None
    invoice_item_id: Optional[str] = None
    client_id: Optional[str] = None
    disputed_amount: Decimal = Field(Decimal("0"), ge=0)
    reason_category: DisputeCategory = DisputeCategory.OTHER
    reason_details: str = Field(..., min_length=1, description="Why the charge is disputed")
    status: Optional[DisputeStatus] = None
    priority: Optional[DisputePriority] = None
    source: Optional[str] = None
    created_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "invoice_id": "b7d1c1e6-0000-4000-8000-000000000001",
                "invoice_item_id": "b7d1c1e6-0000-4000-8000-000000000002",
                "disputed_amount": "125.00",
                "reason_category": "pricing",
                "reason_details": "Billed above contracted rate",
            }
        }


class DisputeStatusUpdate(BaseModel):
    status: DisputeStatus
    resolution: Optional[str] = None


class DisputeAssignment(BaseModel):
    user_id: str


class DisputeMessage(BaseModel):
    id: Optional[str] = None
    dispute_id: str
    user_id: Optional[str] = None
    message: str
    attachments: Optional[List[str]] = None
    created_at: Optional[datetime] = None


class DisputeMessageCreate(BaseModel):
    user_id: str
    message: str = Field(..., min_length=1)
    attachments: Optional[List[str]] = None


class DisputeFilters(BaseModel):
    status: Optional[DisputeStatus] = None
    priority: Optional[DisputePriority] = None
    client_id: Optional[str] = None
    assigned_to: Optional[str] = None
    page: int = Field(1, ge=1)
    page_size: int = Field(50, ge=1, le=500)
    sort_by: str = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class DisputePage(BaseModel):
    data: List[Dispute]
    total: int
    page: int
    page_size: int


class BulkDisputeRequest(BaseModel):
    invoice_item_ids: List[str] = Field(..., min_length=1)
    category: DisputeCategory
    reason: str = Field(..., min_length=1)


class BulkDisputeResult(BaseModel):
    created: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class DisputeStats(BaseModel):
    total: int = 0
    open: int = 0
    in_review: int = 0
    resolved: int = 0
    rejected: int = 0
    total_disputed_amount: Decimal = Decimal("0")
    avg_resolution_time: int = Field(0, description="Average days from creation to resolution")
    by_category: Dict[str, int] = Field(default_factory=dict)
    by_priority: Dict[str, int] = Field(default_factory=dict)
