from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from packages.access import Role

from .models import AccountStatus, InvitationStatus


class ORMResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class SignupRequest(BaseModel):
    account_name: str = Field(min_length=1, max_length=255)


class AccountResponse(ORMResponse):
    id: uuid.UUID
    name: str
    status: AccountStatus
    pricing_plan_id: uuid.UUID | None = None
    created_at: datetime


class UserResponse(ORMResponse):
    id: uuid.UUID
    email: str
    account_id: uuid.UUID
    role: Role
    invited_by: uuid.UUID | None = None
    created_at: datetime


class MembershipResponse(BaseModel):
    account: AccountResponse
    user: UserResponse


class RoleChangeRequest(BaseModel):
    role: str = Field(min_length=1, max_length=32)


class AccountStatusChangeRequest(BaseModel):
    status: AccountStatus
    reason: str | None = Field(default=None, max_length=1000)


class FeatureFlagsResponse(BaseModel):
    account_id: uuid.UUID
    features: dict[str, bool]


class InvitationCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    role: str = Field(default=Role.VIEWER.value, min_length=1, max_length=32)


class InvitationResponse(ORMResponse):
    id: uuid.UUID
    account_id: uuid.UUID
    email: str
    role: Role
    status: InvitationStatus
    expires_at: datetime
    invited_by: uuid.UUID
    created_at: datetime


class InvitationCreatedResponse(InvitationResponse):
    token: str
    invitation_url: str


class TagCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class TagRenameRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class TagResponse(ORMResponse):
    id: uuid.UUID
    account_id: uuid.UUID
    user_id: uuid.UUID
    name: str
    created_at: datetime


class TagCascadeResponse(BaseModel):
    tag_id: uuid.UUID
    name: str | None
    links_updated: int


class UtmLinkCreateRequest(BaseModel):
    campaign_name: str = Field(min_length=1, max_length=255)
    target_url: str = Field(min_length=1, max_length=2000)
    full_utm_link: str = Field(min_length=1, max_length=4000)
    tags: list[str] = Field(default_factory=list)


class UtmLinkDraftRequest(BaseModel):
    target_url: str = Field(min_length=1, max_length=2000)
    full_utm_link: str = Field(min_length=1, max_length=4000)
    tags: list[str] = Field(default_factory=list)


class CampaignReplaceRequest(BaseModel):
    links: list[UtmLinkDraftRequest] = Field(min_length=1)
    landing_pages: list[str] = Field(default_factory=list)


class UtmLinkResponse(ORMResponse):
    id: uuid.UUID
    account_id: uuid.UUID
    user_id: uuid.UUID
    campaign_name: str
    target_url: str
    full_utm_link: str
    tags: list[str]
    is_archived: bool
    created_at: datetime


class CampaignCascadeResponse(BaseModel):
    campaign_name: str
    links: int
    landing_pages: int


class AuditLogResponse(ORMResponse):
    id: uuid.UUID
    account_id: uuid.UUID
    actor_user_id: uuid.UUID | None
    action: str
    target_type: str
    target_id: str
    metadata_json: dict[str, object]
    created_at: datetime
