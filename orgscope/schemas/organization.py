"""Site and small group schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class SiteCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    city: str | None = Field(default=None, max_length=255)
    country: str | None = Field(default=None, max_length=100)
    coordinator_id: str | None = None


class SiteUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    city: str | None = Field(default=None, max_length=255)
    country: str | None = Field(default=None, max_length=100)
    coordinator_id: str | None = None


class SiteRead(BaseModel):
    id: UUID
    name: str
    city: str | None
    country: str | None
    coordinator_id: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class SmallGroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    site_id: UUID | None = None
    meeting_day: str | None = Field(default=None, max_length=20)
    leader_id: str | None = None


class SmallGroupUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    meeting_day: str | None = Field(default=None, max_length=20)
    leader_id: str | None = None


class SmallGroupRead(BaseModel):
    id: UUID
    site_id: UUID
    name: str
    meeting_day: str | None
    leader_id: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
