"""Activity, report and financial transaction schemas."""

from datetime import date as date_type
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from orgscope.db.enums import ActivityStatus, TransactionType


# =============================================================================
# Activities
# =============================================================================

class ActivityCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    date: datetime
    thematic: str | None = Field(default=None, max_length=255)
    site_id: UUID | None = None
    small_group_id: UUID | None = None


class ActivityStatusUpdate(BaseModel):
    status: ActivityStatus


class ActivityRead(BaseModel):
    id: UUID
    title: str
    thematic: str | None
    date: datetime
    status: str
    level: str
    site_id: UUID | None
    small_group_id: UUID | None
    created_by_id: str
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Reports
# =============================================================================

class ReportCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    content: str | None = None
    activity_id: UUID | None = None
    site_id: UUID | None = None
    small_group_id: UUID | None = None


class ReportRead(BaseModel):
    id: UUID
    title: str
    content: str | None
    status: str
    activity_id: UUID | None
    site_id: UUID | None
    small_group_id: UUID | None
    submitted_by_id: str
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Financial transactions
# =============================================================================

class TransactionCreate(BaseModel):
    type: TransactionType
    category: str = Field(min_length=1, max_length=100)
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    date: date_type
    description: str | None = None
    site_id: UUID | None = None
    small_group_id: UUID | None = None


class TransactionRead(BaseModel):
    id: UUID
    type: str
    category: str
    amount: Decimal
    date: date_type
    description: str | None
    status: str
    site_id: UUID | None
    small_group_id: UUID | None
    recorded_by_id: str
    created_at: datetime

    model_config = {"from_attributes": True}
