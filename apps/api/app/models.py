from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, String, Text, UniqueConstraint, func
from sqlalchemy import JSON as JsonType
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import Uuid

from packages.access import Role


class Base(DeclarativeBase):
    pass


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class InvitationStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class IdMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class SoftDeleteMixin:
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PricingPlan(Base, IdMixin, TimestampMixin):
    __tablename__ = "pricing_plans"
    __table_args__ = (UniqueConstraint("plan_name", name="uq_pricing_plans_plan_name"),)

    plan_name: Mapped[str] = mapped_column(String(100), nullable=False)
    features: Mapped[dict[str, bool]] = mapped_column(JsonType, nullable=False, default=dict)


class Account(Base, IdMixin, TimestampMixin):
    __tablename__ = "accounts"
    __table_args__ = (Index("ix_accounts_created_at", "created_at"),)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus, name="account_status_enum"), nullable=False, default=AccountStatus.ACTIVE
    )
    pricing_plan_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("pricing_plans.id"), nullable=True)


class AccountStatusHistory(Base, IdMixin, TimestampMixin):
    __tablename__ = "account_status_history"
    __table_args__ = (Index("ix_account_status_history_account_id", "account_id"),)

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    old_status: Mapped[AccountStatus | None] = mapped_column(
        Enum(AccountStatus, name="account_status_enum"), nullable=True
    )
    new_status: Mapped[AccountStatus] = mapped_column(Enum(AccountStatus, name="account_status_enum"), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)


class User(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("external_auth_id", name="uq_users_external_auth_id"),
        Index("ix_users_account_id", "account_id"),
        Index("ix_users_email", "email"),
    )

    external_auth_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role, name="role_enum"), nullable=False, default=Role.VIEWER)
    invited_by: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)


class Invitation(Base, IdMixin, TimestampMixin):
    __tablename__ = "invitations"
    __table_args__ = (
        UniqueConstraint("token", name="uq_invitations_token"),
        Index("ix_invitations_account_id", "account_id"),
        Index("ix_invitations_email", "email"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role, name="role_enum"), nullable=False, default=Role.VIEWER)
    token: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[InvitationStatus] = mapped_column(
        Enum(InvitationStatus, name="invitation_status_enum"), nullable=False, default=InvitationStatus.PENDING
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    invited_by: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)


class Tag(Base, IdMixin, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("account_id", "name", name="uq_tags_account_name"),
        Index("ix_tags_account_id", "account_id"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class UtmLink(Base, IdMixin, TimestampMixin):
    __tablename__ = "utm_links"
    __table_args__ = (
        Index("ix_utm_links_account_id", "account_id"),
        Index("ix_utm_links_account_campaign", "account_id", "campaign_name"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    full_utm_link: Mapped[str] = mapped_column(Text, nullable=False)
    # Tag names by value, not by id; renames and deletes must cascade here.
    tags: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class CampaignLandingPage(Base, IdMixin, TimestampMixin):
    __tablename__ = "campaign_landing_pages"
    __table_args__ = (
        Index("ix_campaign_landing_pages_account_id", "account_id"),
        Index("ix_campaign_landing_pages_account_campaign", "account_id", "campaign_name"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AuditLog(Base, IdMixin, TimestampMixin):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_account_id", "account_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    target_type: Mapped[str] = mapped_column(String(100), nullable=False)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    metadata_json: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)
