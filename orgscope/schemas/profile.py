"""Profile-related Pydantic schemas."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field

from orgscope.db.enums import ProfileStatus, Role


class ProfileRead(BaseModel):
    """Response schema for reading a profile."""

    id: str
    email: str
    name: str
    role: str
    status: str
    site_id: UUID | None
    small_group_id: UUID | None
    mandate_start_date: date | None
    mandate_end_date: date | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MeResponse(BaseModel):
    """Current principal and their profile."""

    profile: ProfileRead
    is_active: bool


class ProfileUpdate(BaseModel):
    """
    Request schema for updating a user.

    Omitted fields are left unchanged; site_id / small_group_id / mandate
    dates sent as null are cleared.
    """

    name: str | None = Field(default=None, min_length=1, max_length=255)
    role: Role | None = None
    site_id: UUID | None = None
    small_group_id: UUID | None = None
    status: ProfileStatus | None = None
    mandate_start_date: date | None = None
    mandate_end_date: date | None = None


class DeletionEligibilityRead(BaseModel):
    can_delete: bool
    reason: str | None = None
    blocking: list[str] = []
