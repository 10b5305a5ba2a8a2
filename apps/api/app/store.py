"""Account-scoped persistence.

Every tenant read and write goes through :class:`SqlAccountScopeStore`, and
every tenant query is parameterized by the owning account id via
``account_scoped``. Multi-row cascades are exposed as single store calls that
must run inside :meth:`SqlAccountScopeStore.with_transaction`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from typing import Protocol, TypeVar

from fastapi import Depends
from sqlalchemy import delete, func, select, text, update
from sqlalchemy.orm import Session

from packages.access import Role

from .db import get_db
from .models import (
    Account,
    CampaignLandingPage,
    Invitation,
    InvitationStatus,
    Tag,
    User,
    UtmLink,
)
from .settings import settings
from .tenancy import account_scoped

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AccountScopeStore(Protocol):
    def with_transaction(self, fn: Callable[["AccountScopeStore"], T], timeout_ms: int | None = None) -> T: ...

    def get_user(self, user_id: uuid.UUID) -> User | None: ...

    def get_account(self, account_id: uuid.UUID) -> Account | None: ...

    def list_users_by_account(self, account_id: uuid.UUID) -> Sequence[User]: ...

    def get_tag_by_name(self, account_id: uuid.UUID, name: str) -> Tag | None: ...

    def rename_tag_and_cascade(self, tag: Tag, new_name: str) -> int: ...

    def delete_tag_and_cascade(self, tag: Tag) -> int: ...

    def set_archived_for_campaign(
        self,
        account_id: uuid.UUID,
        campaign_name: str,
        archived: bool,
        owner_user_id: uuid.UUID | None = None,
    ) -> tuple[int, int]: ...


class SqlAccountScopeStore:
    def __init__(self, session: Session, default_timeout_ms: int | None = None) -> None:
        self.session = session
        self.default_timeout_ms = settings.store_timeout_ms if default_timeout_ms is None else default_timeout_ms
        self._depth = 0

    # -- transactions -------------------------------------------------

    def with_transaction(self, fn: Callable[[SqlAccountScopeStore], T], timeout_ms: int | None = None) -> T:
        """Run ``fn`` as one atomic unit: a single commit, or a full rollback.

        Nested calls join the outer transaction.
        """
        if self._depth:
            return fn(self)
        self._depth += 1
        try:
            self._apply_timeout(timeout_ms)
            result = fn(self)
            self.session.commit()
        except BaseException:
            self.session.rollback()
            logger.warning("store.transaction_rolled_back", exc_info=True)
            raise
        finally:
            self._depth -= 1
        return result

    def _apply_timeout(self, timeout_ms: int | None) -> None:
        timeout = self.default_timeout_ms if timeout_ms is None else timeout_ms
        if not timeout or self.session.get_bind().dialect.name != "postgresql":
            return
        self.session.execute(text(f"SET LOCAL statement_timeout = {int(timeout)}"))

    def add(self, row: object) -> None:
        self.session.add(row)
        self.session.flush()

    def delete(self, row: object) -> None:
        self.session.delete(row)
        self.session.flush()

    # -- accounts & users ---------------------------------------------

    def get_account(self, account_id: uuid.UUID) -> Account | None:
        return self.session.get(Account, account_id)

    def get_user(self, user_id: uuid.UUID) -> User | None:
        user = self.session.get(User, user_id)
        if user is None or user.deleted_at is not None:
            return None
        return user

    def get_user_by_subject(self, subject: str, for_update: bool = False) -> User | None:
        stmt = select(User).where(User.external_auth_id == subject)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def get_account_user(self, account_id: uuid.UUID, user_id: uuid.UUID, for_update: bool = False) -> User | None:
        stmt = account_scoped(select(User).where(User.id == user_id, User.deleted_at.is_(None)), account_id, User)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def get_account_user_by_email(self, account_id: uuid.UUID, email: str) -> User | None:
        return self.session.scalar(
            account_scoped(
                select(User).where(func.lower(User.email) == email.lower(), User.deleted_at.is_(None)),
                account_id,
                User,
            )
        )

    def list_users_by_account(self, account_id: uuid.UUID) -> Sequence[User]:
        return self.session.scalars(
            account_scoped(
                select(User).where(User.deleted_at.is_(None)).order_by(User.created_at, User.email), account_id, User
            )
        ).all()

    def count_super_admins(self, account_id: uuid.UUID) -> int:
        # Lock the SuperAdmin rows so concurrent demotions serialize.
        stmt = account_scoped(
            select(User.id).where(User.role == Role.SUPER_ADMIN, User.deleted_at.is_(None)), account_id, User
        )
        rows = self.session.scalars(stmt.with_for_update()).all()
        return len(rows)

    def count_users(self, account_id: uuid.UUID) -> int:
        stmt = account_scoped(select(func.count(User.id)).where(User.deleted_at.is_(None)), account_id, User)
        return int(self.session.scalar(stmt) or 0)

    # -- invitations --------------------------------------------------

    def get_invitation_by_token(self, token: str, for_update: bool = False) -> Invitation | None:
        stmt = select(Invitation).where(Invitation.token == token).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def get_pending_invitation(self, account_id: uuid.UUID, email: str) -> Invitation | None:
        return self.session.scalar(
            account_scoped(
                select(Invitation).where(
                    func.lower(Invitation.email) == email.lower(),
                    Invitation.status == InvitationStatus.PENDING,
                ),
                account_id,
                Invitation,
            )
        )

    def list_invitations(self, account_id: uuid.UUID) -> Sequence[Invitation]:
        return self.session.scalars(
            account_scoped(select(Invitation).order_by(Invitation.created_at.desc()), account_id, Invitation)
        ).all()

    def transition_invitation(
        self,
        invitation_id: uuid.UUID,
        from_status: InvitationStatus,
        to_status: InvitationStatus,
    ) -> bool:
        """Compare-and-set on status; False when another writer got there first."""
        result = self.session.execute(
            update(Invitation)
            .where(Invitation.id == invitation_id, Invitation.status == from_status)
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        self.session.flush()
        return result.rowcount == 1

    # -- tags ---------------------------------------------------------

    def get_tag(self, account_id: uuid.UUID, tag_id: uuid.UUID, for_update: bool = False) -> Tag | None:
        stmt = account_scoped(select(Tag).where(Tag.id == tag_id), account_id, Tag)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def get_tag_by_name(self, account_id: uuid.UUID, name: str) -> Tag | None:
        return self.session.scalar(account_scoped(select(Tag).where(Tag.name == name), account_id, Tag))

    def list_tags(self, account_id: uuid.UUID) -> Sequence[Tag]:
        return self.session.scalars(account_scoped(select(Tag).order_by(Tag.name), account_id, Tag)).all()

    def tag_names(self, account_id: uuid.UUID) -> set[str]:
        return set(self.session.scalars(account_scoped(select(Tag.name), account_id, Tag)).all())

    def _links_for_update(self, account_id: uuid.UUID) -> Sequence[UtmLink]:
        return self.session.scalars(
            account_scoped(select(UtmLink).order_by(UtmLink.id), account_id, UtmLink).with_for_update()
        ).all()

    def rename_tag_and_cascade(self, tag: Tag, new_name: str) -> int:
        old_name = tag.name
        touched = 0
        for link in self._links_for_update(tag.account_id):
            if old_name in (link.tags or []):
                # Reassign so the JSON column is flagged dirty.
                link.tags = [new_name if name == old_name else name for name in link.tags]
                touched += 1
        tag.name = new_name
        self.session.flush()
        return touched

    def delete_tag_and_cascade(self, tag: Tag) -> int:
        touched = 0
        for link in self._links_for_update(tag.account_id):
            if tag.name in (link.tags or []):
                link.tags = [name for name in link.tags if name != tag.name]
                touched += 1
        self.session.delete(tag)
        self.session.flush()
        return touched

    # -- campaigns ----------------------------------------------------

    def list_links(
        self,
        account_id: uuid.UUID,
        include_archived: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[UtmLink]:
        stmt = select(UtmLink)
        if not include_archived:
            stmt = stmt.where(UtmLink.is_archived.is_(False))
        stmt = stmt.order_by(UtmLink.created_at.desc(), UtmLink.id).limit(limit).offset(offset)
        return self.session.scalars(account_scoped(stmt, account_id, UtmLink)).all()

    def campaign_links(self, account_id: uuid.UUID, campaign_name: str, for_update: bool = False) -> Sequence[UtmLink]:
        stmt = account_scoped(
            select(UtmLink).where(UtmLink.campaign_name == campaign_name).order_by(UtmLink.id), account_id, UtmLink
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).all()

    def campaign_landing_pages(self, account_id: uuid.UUID, campaign_name: str) -> Sequence[CampaignLandingPage]:
        return self.session.scalars(
            account_scoped(
                select(CampaignLandingPage)
                .where(CampaignLandingPage.campaign_name == campaign_name)
                .order_by(CampaignLandingPage.id),
                account_id,
                CampaignLandingPage,
            )
        ).all()

    def campaign_owner_ids(
        self, account_id: uuid.UUID, campaign_name: str, for_update: bool = False
    ) -> set[uuid.UUID]:
        link_stmt = account_scoped(
            select(UtmLink.user_id).where(UtmLink.campaign_name == campaign_name), account_id, UtmLink
        )
        page_stmt = account_scoped(
            select(CampaignLandingPage.user_id).where(CampaignLandingPage.campaign_name == campaign_name),
            account_id,
            CampaignLandingPage,
        )
        if for_update:
            link_stmt = link_stmt.with_for_update()
            page_stmt = page_stmt.with_for_update()
        return set(self.session.scalars(link_stmt).all()) | set(self.session.scalars(page_stmt).all())

    def campaign_row_counts(self, account_id: uuid.UUID, campaign_name: str) -> tuple[int, int]:
        links = self.session.scalar(
            account_scoped(
                select(func.count(UtmLink.id)).where(UtmLink.campaign_name == campaign_name), account_id, UtmLink
            )
        )
        pages = self.session.scalar(
            account_scoped(
                select(func.count(CampaignLandingPage.id)).where(CampaignLandingPage.campaign_name == campaign_name),
                account_id,
                CampaignLandingPage,
            )
        )
        return int(links or 0), int(pages or 0)

    def set_archived_for_campaign(
        self,
        account_id: uuid.UUID,
        campaign_name: str,
        archived: bool,
        owner_user_id: uuid.UUID | None = None,
    ) -> tuple[int, int]:
        link_stmt = account_scoped(
            update(UtmLink).where(UtmLink.campaign_name == campaign_name), account_id, UtmLink
        )
        page_stmt = account_scoped(
            update(CampaignLandingPage).where(CampaignLandingPage.campaign_name == campaign_name),
            account_id,
            CampaignLandingPage,
        )
        if owner_user_id is not None:
            link_stmt = link_stmt.where(UtmLink.user_id == owner_user_id)
            page_stmt = page_stmt.where(CampaignLandingPage.user_id == owner_user_id)
        links = self.session.execute(
            link_stmt.values(is_archived=archived).execution_options(synchronize_session="fetch")
        ).rowcount
        pages = self.session.execute(
            page_stmt.values(is_archived=archived).execution_options(synchronize_session="fetch")
        ).rowcount
        self.session.flush()
        return links, pages

    def delete_campaign_rows(
        self,
        account_id: uuid.UUID,
        campaign_name: str,
        owner_user_id: uuid.UUID | None = None,
    ) -> tuple[int, int]:
        link_stmt = account_scoped(
            delete(UtmLink).where(UtmLink.campaign_name == campaign_name), account_id, UtmLink
        )
        page_stmt = account_scoped(
            delete(CampaignLandingPage).where(CampaignLandingPage.campaign_name == campaign_name),
            account_id,
            CampaignLandingPage,
        )
        if owner_user_id is not None:
            link_stmt = link_stmt.where(UtmLink.user_id == owner_user_id)
            page_stmt = page_stmt.where(CampaignLandingPage.user_id == owner_user_id)
        links = self.session.execute(link_stmt.execution_options(synchronize_session="fetch")).rowcount
        pages = self.session.execute(page_stmt.execution_options(synchronize_session="fetch")).rowcount
        self.session.flush()
        return links, pages


def get_store(db: Session = Depends(get_db)) -> SqlAccountScopeStore:
    return SqlAccountScopeStore(db)
