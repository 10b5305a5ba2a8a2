from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status

from packages.access import Permission

from ..schemas import TagCascadeResponse, TagCreateRequest, TagRenameRequest, TagResponse
from ..services.accounts import ensure_account_active, load_account
from ..services.consistency import ConsistencyCoordinator, TagCascadeResult, get_consistency_coordinator
from ..store import SqlAccountScopeStore, get_store
from ..tenancy import RequestContext, get_request_context, require_permission

router = APIRouter(prefix="/tags", tags=["tags"])


def _require_tag_manager(store: SqlAccountScopeStore, context: RequestContext) -> None:
    ensure_account_active(load_account(store, context, context.current_account_id))
    require_permission(context, Permission.MANAGE_TAGS)


def _cascade_response(result: TagCascadeResult) -> TagCascadeResponse:
    return TagCascadeResponse(tag_id=result.tag_id, name=result.name, links_updated=result.links_updated)


@router.get("", response_model=list[TagResponse])
def list_tags(
    store: SqlAccountScopeStore = Depends(get_store),
    context: RequestContext = Depends(get_request_context),
) -> list[TagResponse]:
    require_permission(context, Permission.READ_CAMPAIGNS)
    return [TagResponse.model_validate(tag) for tag in store.list_tags(context.current_account_id)]


@router.post("", response_model=TagResponse, status_code=status.HTTP_201_CREATED)
def create_tag(
    payload: TagCreateRequest,
    store: SqlAccountScopeStore = Depends(get_store),
    coordinator: ConsistencyCoordinator = Depends(get_consistency_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> TagResponse:
    _require_tag_manager(store, context)
    tag = coordinator.create_tag(context.current_account_id, payload.name)
    return TagResponse.model_validate(tag)


@router.patch("/{tag_id}", response_model=TagCascadeResponse)
def rename_tag(
    tag_id: uuid.UUID,
    payload: TagRenameRequest,
    store: SqlAccountScopeStore = Depends(get_store),
    coordinator: ConsistencyCoordinator = Depends(get_consistency_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> TagCascadeResponse:
    _require_tag_manager(store, context)
    return _cascade_response(coordinator.rename_tag(context.current_account_id, tag_id, payload.name))


@router.delete("/{tag_id}", response_model=TagCascadeResponse)
def delete_tag(
    tag_id: uuid.UUID,
    store: SqlAccountScopeStore = Depends(get_store),
    coordinator: ConsistencyCoordinator = Depends(get_consistency_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> TagCascadeResponse:
    _require_tag_manager(store, context)
    return _cascade_response(coordinator.delete_tag(context.current_account_id, tag_id))
