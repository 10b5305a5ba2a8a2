"""Cascading updates that keep denormalized tenant data consistent.

Tag names are stored by value on every link, and a campaign is nothing more
than the links and landing pages that share a name. Each operation below runs
as one store transaction so a failure part way through leaves the account
exactly as it was.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from fastapi import Depends
from sqlalchemy.exc import IntegrityError

from packages.access import Permission, Principal, check_modify_campaign, has_permission

from ..errors import ConflictError, NotFoundError, ValidationError, raise_if_denied
from ..models import CampaignLandingPage, Tag, UtmLink
from ..settings import settings
from ..store import SqlAccountScopeStore, get_store
from ..tenancy import RequestContext, get_request_context
from .accounts import ensure_account_active, load_account
from .audit import write_account_audit_log

logger = logging.getLogger(__name__)

T = TypeVar("T")

TAG_NAME_CONSTRAINT = "uq_tags_account_name"


@dataclass(frozen=True)
class LinkDraft:
    target_url: str
    full_utm_link: str
    tags: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TagCascadeResult:
    tag_id: uuid.UUID
    name: str | None
    links_updated: int


@dataclass(frozen=True)
class CampaignCascadeResult:
    campaign_name: str
    links: int
    landing_pages: int


def authorize_campaign_change(
    store: SqlAccountScopeStore,
    actor: Principal,
    account_id: uuid.UUID,
    campaign_name: str,
    any_campaign_permission: Permission = Permission.EDIT_ANY_CAMPAIGN,
) -> uuid.UUID | None:
    """Return the owner scope for a campaign change, or ``None`` for account-wide.

    Callers without the account-wide permission must own every row of the
    campaign, so the owner-scoped update still covers the whole campaign.
    The campaign rows are locked, so call this inside the transaction that
    applies the change.
    """
    ensure_account_active(load_account(store, actor, account_id))
    owners = store.campaign_owner_ids(account_id, campaign_name, for_update=True)
    if not owners:
        raise NotFoundError("campaign not found")
    if has_permission(actor, any_campaign_permission):
        return None
    for owner_id in sorted(owners, key=str):
        raise_if_denied(check_modify_campaign(actor, owner_id), detail="cannot modify this campaign")
    return actor.id


def _is_duplicate_tag_name(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    constraint = getattr(getattr(orig, "diag", None), "constraint_name", None)
    if constraint is not None:
        return constraint == TAG_NAME_CONSTRAINT
    message = str(orig or exc).lower()
    return TAG_NAME_CONSTRAINT in message or "tags.account_id, tags.name" in message


class ConsistencyCoordinator:
    def __init__(
        self,
        store: SqlAccountScopeStore,
        actor_user_id: uuid.UUID,
        tag_name_max_length: int | None = None,
    ) -> None:
        self.store = store
        self.actor_user_id = actor_user_id
        self.tag_name_max_length = tag_name_max_length or settings.tag_name_max_length

    # -- tags ---------------------------------------------------------

    def create_tag(self, account_id: uuid.UUID, name: str, timeout_ms: int | None = None) -> Tag:
        """Idempotent: an existing tag with the same name is returned as-is."""
        clean = self._validate_tag_name(name)
        existing = self.store.get_tag_by_name(account_id, clean)
        if existing is not None:
            return existing

        def _create(tx: SqlAccountScopeStore) -> Tag:
            tag = Tag(account_id=account_id, user_id=self.actor_user_id, name=clean)
            tx.add(tag)
            self._audit(tx, account_id, "tag.created", "tag", str(tag.id), {"name": clean})
            return tag

        return self._run(_create, timeout_ms)

    def rename_tag(
        self,
        account_id: uuid.UUID,
        tag_id: uuid.UUID,
        new_name: str,
        timeout_ms: int | None = None,
    ) -> TagCascadeResult:
        clean = self._validate_tag_name(new_name)

        def _rename(tx: SqlAccountScopeStore) -> TagCascadeResult:
            tag = tx.get_tag(account_id, tag_id, for_update=True)
            if tag is None:
                raise NotFoundError("tag not found")
            old_name = tag.name
            if old_name == clean:
                return TagCascadeResult(tag_id=tag.id, name=clean, links_updated=0)
            other = tx.get_tag_by_name(account_id, clean)
            if other is not None and other.id != tag.id:
                raise ConflictError("tag name already exists", rule="duplicate_tag_name")
            updated = tx.rename_tag_and_cascade(tag, clean)
            self._audit(
                tx,
                account_id,
                "tag.renamed",
                "tag",
                str(tag.id),
                {"old_name": old_name, "new_name": clean, "links_updated": updated},
            )
            return TagCascadeResult(tag_id=tag.id, name=clean, links_updated=updated)

        result = self._run(_rename, timeout_ms)
        logger.info(
            "tag.renamed",
            extra={"account_id": str(account_id), "tag_id": str(tag_id), "links_updated": result.links_updated},
        )
        return result

    def delete_tag(self, account_id: uuid.UUID, tag_id: uuid.UUID, timeout_ms: int | None = None) -> TagCascadeResult:
        def _delete(tx: SqlAccountScopeStore) -> TagCascadeResult:
            tag = tx.get_tag(account_id, tag_id, for_update=True)
            if tag is None:
                raise NotFoundError("tag not found")
            name = tag.name
            updated = tx.delete_tag_and_cascade(tag)
            self._audit(tx, account_id, "tag.deleted", "tag", str(tag_id), {"name": name, "links_updated": updated})
            return TagCascadeResult(tag_id=tag_id, name=None, links_updated=updated)

        result = self.store.with_transaction(_delete, timeout_ms=timeout_ms)
        logger.info(
            "tag.deleted",
            extra={"account_id": str(account_id), "tag_id": str(tag_id), "links_updated": result.links_updated},
        )
        return result

    # -- campaigns ----------------------------------------------------
    #
    # With ``actor`` set, authorization happens inside the transaction against
    # locked rows. An owner-scoped change must still reach every row of the
    # campaign; a row added by someone else in the meantime aborts it.

    def set_campaign_archived(
        self,
        account_id: uuid.UUID,
        campaign_name: str,
        archived: bool,
        owner_user_id: uuid.UUID | None = None,
        actor: Principal | None = None,
        timeout_ms: int | None = None,
    ) -> CampaignCascadeResult:
        def _apply(tx: SqlAccountScopeStore) -> CampaignCascadeResult:
            owner = self._campaign_scope(
                tx, actor, account_id, campaign_name, Permission.EDIT_ANY_CAMPAIGN, owner_user_id
            )
            links, pages = tx.set_archived_for_campaign(account_id, campaign_name, archived, owner)
            if owner is not None:
                self._ensure_campaign_rows(tx, account_id, campaign_name, (links, pages))
            action = "campaign.archived" if archived else "campaign.unarchived"
            self._audit(
                tx,
                account_id,
                action,
                "campaign",
                campaign_name,
                {"links": links, "landing_pages": pages},
            )
            return CampaignCascadeResult(campaign_name=campaign_name, links=links, landing_pages=pages)

        result = self.store.with_transaction(_apply, timeout_ms=timeout_ms)
        logger.info(
            "campaign.archive_state_changed",
            extra={"account_id": str(account_id), "campaign": campaign_name, "archived": archived},
        )
        return result

    def delete_campaign_links(
        self,
        account_id: uuid.UUID,
        campaign_name: str,
        owner_user_id: uuid.UUID | None = None,
        actor: Principal | None = None,
        timeout_ms: int | None = None,
    ) -> CampaignCascadeResult:
        def _apply(tx: SqlAccountScopeStore) -> CampaignCascadeResult:
            owner = self._campaign_scope(
                tx, actor, account_id, campaign_name, Permission.DELETE_ANY_CAMPAIGN, owner_user_id
            )
            links, pages = tx.delete_campaign_rows(account_id, campaign_name, owner)
            if owner is not None:
                self._ensure_campaign_rows(tx, account_id, campaign_name, (0, 0))
            self._audit(
                tx,
                account_id,
                "campaign.deleted",
                "campaign",
                campaign_name,
                {"links": links, "landing_pages": pages},
            )
            return CampaignCascadeResult(campaign_name=campaign_name, links=links, landing_pages=pages)

        result = self.store.with_transaction(_apply, timeout_ms=timeout_ms)
        logger.info("campaign.deleted", extra={"account_id": str(account_id), "campaign": campaign_name})
        return result

    def replace_campaign_links(
        self,
        account_id: uuid.UUID,
        campaign_name: str,
        created_by: uuid.UUID,
        links: Sequence[LinkDraft],
        landing_pages: Sequence[str] = (),
        owner_user_id: uuid.UUID | None = None,
        actor: Principal | None = None,
        timeout_ms: int | None = None,
    ) -> list[UtmLink]:
        """Swap a campaign's rows for a new set; readers see the old set or the new one."""
        if not links:
            raise ValidationError("a campaign needs at least one link", rule="campaign_links_required")

        def _apply(tx: SqlAccountScopeStore) -> list[UtmLink]:
            owner = self._campaign_scope(
                tx, actor, account_id, campaign_name, Permission.EDIT_ANY_CAMPAIGN, owner_user_id
            )
            archived = self._campaign_archived(tx, account_id, campaign_name)
            known = tx.tag_names(account_id)
            for draft in links:
                self._check_tags(draft.tags, known)
            removed_links, removed_pages = tx.delete_campaign_rows(account_id, campaign_name, owner)
            if owner is not None:
                self._ensure_campaign_rows(tx, account_id, campaign_name, (0, 0))
            rows = [self._link_row(account_id, created_by, campaign_name, draft, archived) for draft in links]
            for row in rows:
                tx.add(row)
            for url in landing_pages:
                tx.add(
                    CampaignLandingPage(
                        account_id=account_id,
                        user_id=created_by,
                        campaign_name=campaign_name,
                        url=url,
                        is_archived=archived,
                    )
                )
            self._audit(
                tx,
                account_id,
                "campaign.replaced",
                "campaign",
                campaign_name,
                {
                    "removed_links": removed_links,
                    "removed_landing_pages": removed_pages,
                    "links": len(rows),
                    "landing_pages": len(landing_pages),
                },
            )
            return rows

        return self.store.with_transaction(_apply, timeout_ms=timeout_ms)

    def create_link(
        self,
        account_id: uuid.UUID,
        created_by: uuid.UUID,
        campaign_name: str,
        draft: LinkDraft,
        actor: Principal | None = None,
        timeout_ms: int | None = None,
    ) -> UtmLink:
        name = campaign_name.strip()
        if not name:
            raise ValidationError("campaign name is required", rule="campaign_name_required")

        def _create(tx: SqlAccountScopeStore) -> UtmLink:
            # Adding to an existing campaign is an edit of that campaign.
            if actor is not None and tx.campaign_owner_ids(account_id, name, for_update=True):
                authorize_campaign_change(tx, actor, account_id, name)
            self._check_tags(draft.tags, tx.tag_names(account_id))
            row = self._link_row(account_id, created_by, name, draft, self._campaign_archived(tx, account_id, name))
            tx.add(row)
            self._audit(tx, account_id, "utm_link.created", "utm_link", str(row.id), {"campaign_name": name})
            return row

        return self.store.with_transaction(_create, timeout_ms=timeout_ms)

    # -- helpers ------------------------------------------------------

    def _run(self, fn: Callable[[SqlAccountScopeStore], T], timeout_ms: int | None) -> T:
        try:
            return self.store.with_transaction(fn, timeout_ms=timeout_ms)
        except IntegrityError as exc:
            if _is_duplicate_tag_name(exc):
                raise ConflictError("tag name already exists", rule="duplicate_tag_name") from exc
            raise

    @staticmethod
    def _campaign_scope(
        tx: SqlAccountScopeStore,
        actor: Principal | None,
        account_id: uuid.UUID,
        campaign_name: str,
        any_campaign_permission: Permission,
        owner_user_id: uuid.UUID | None,
    ) -> uuid.UUID | None:
        if actor is None:
            return owner_user_id
        return authorize_campaign_change(tx, actor, account_id, campaign_name, any_campaign_permission)

    @staticmethod
    def _ensure_campaign_rows(
        tx: SqlAccountScopeStore,
        account_id: uuid.UUID,
        campaign_name: str,
        expected: tuple[int, int],
    ) -> None:
        actual = tx.campaign_row_counts(account_id, campaign_name)
        if actual != expected:
            logger.warning(
                "campaign.concurrent_change",
                extra={
                    "account_id": str(account_id),
                    "campaign": campaign_name,
                    "expected": expected,
                    "actual": actual,
                },
            )
            raise ConflictError("campaign changed while it was being updated", rule="campaign_changed")

    def _validate_tag_name(self, name: str) -> str:
        clean = (name or "").strip()
        if not clean:
            raise ValidationError("tag name is required", rule="tag_name_required")
        if len(clean) > self.tag_name_max_length:
            raise ValidationError(
                f"tag name must be {self.tag_name_max_length} characters or less", rule="tag_name_too_long"
            )
        return clean

    @staticmethod
    def _check_tags(tags: Sequence[str], known: set[str]) -> None:
        unknown = sorted(set(tags) - known)
        if unknown:
            raise ValidationError(f"unknown tags: {', '.join(unknown)}", rule="unknown_tags")

    @staticmethod
    def _campaign_archived(tx: SqlAccountScopeStore, account_id: uuid.UUID, campaign_name: str) -> bool:
        # New rows follow the campaign's current state so it stays uniform.
        existing = tx.campaign_links(account_id, campaign_name, for_update=True)
        return bool(existing) and all(row.is_archived for row in existing)

    @staticmethod
    def _link_row(
        account_id: uuid.UUID,
        created_by: uuid.UUID,
        campaign_name: str,
        draft: LinkDraft,
        archived: bool,
    ) -> UtmLink:
        return UtmLink(
            account_id=account_id,
            user_id=created_by,
            campaign_name=campaign_name,
            target_url=draft.target_url,
            full_utm_link=draft.full_utm_link,
            tags=list(dict.fromkeys(draft.tags)),
            is_archived=archived,
        )

    def _audit(
        self,
        tx: SqlAccountScopeStore,
        account_id: uuid.UUID,
        action: str,
        target_type: str,
        target_id: str,
        metadata: dict[str, object],
    ) -> None:
        write_account_audit_log(
            db=tx.session,
            account_id=account_id,
            actor_user_id=self.actor_user_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            metadata_json=metadata,
        )


def get_consistency_coordinator(
    store: SqlAccountScopeStore = Depends(get_store),
    context: RequestContext = Depends(get_request_context),
) -> ConsistencyCoordinator:
    return ConsistencyCoordinator(store, actor_user_id=context.current_user_id)
