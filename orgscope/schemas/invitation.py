"""Invitation-related Pydantic schemas."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from orgscope.db.enums import Role


class InvitationCreate(BaseModel):
    """
    Request schema for creating an invitation.

    Validates:
    - Email format
    - Role is valid enum value
    - Email is normalized to lowercase
    """

    email: EmailStr
    role: Role
    site_id: UUID | None = None
    small_group_id: UUID | None = None
    mandate_start_date: date | None = None
    mandate_end_date: date | None = None

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        """Normalize email to lowercase."""
        return v.lower()


class InvitationRead(BaseModel):
    """Response schema for reading an invitation (token excluded)."""

    id: UUID
    email: str
    role: str
    status: str
    site_id: UUID | None
    small_group_id: UUID | None
    invited_by_id: str | None
    expires_at: datetime
    accepted_at: datetime | None
    created_at: datetime


class InvitationCreated(InvitationRead):
    """Returned once to the inviter; carries the token for the invitation link."""

    token: str


class InvitationAccept(BaseModel):
    token: str = Field(min_length=1, max_length=64)


class InvitationAcceptResult(BaseModel):
    status: str
    role: str
    site_id: UUID | None
    small_group_id: UUID | None
