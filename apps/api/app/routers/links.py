from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from packages.access import Permission

from ..schemas import UtmLinkCreateRequest, UtmLinkResponse
from ..services.accounts import ensure_account_active, load_account
from ..services.consistency import ConsistencyCoordinator, LinkDraft, get_consistency_coordinator
from ..store import SqlAccountScopeStore, get_store
from ..tenancy import RequestContext, get_request_context, require_permission

router = APIRouter(prefix="/utm-links", tags=["utm-links"])


@router.get("", response_model=list[UtmLinkResponse])
def list_links(
    include_archived: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store: SqlAccountScopeStore = Depends(get_store),
    context: RequestContext = Depends(get_request_context),
) -> list[UtmLinkResponse]:
    require_permission(context, Permission.READ_CAMPAIGNS)
    rows = store.list_links(context.current_account_id, include_archived=include_archived, limit=limit, offset=offset)
    return [UtmLinkResponse.model_validate(row) for row in rows]


@router.post("", response_model=UtmLinkResponse, status_code=status.HTTP_201_CREATED)
def create_link(
    payload: UtmLinkCreateRequest,
    store: SqlAccountScopeStore = Depends(get_store),
    coordinator: ConsistencyCoordinator = Depends(get_consistency_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> UtmLinkResponse:
    account_id = context.current_account_id
    ensure_account_active(load_account(store, context, account_id))
    require_permission(context, Permission.CREATE_CAMPAIGNS)
    row = coordinator.create_link(
        account_id,
        context.current_user_id,
        payload.campaign_name,
        LinkDraft(target_url=payload.target_url, full_utm_link=payload.full_utm_link, tags=payload.tags),
        actor=context,
    )
    return UtmLinkResponse.model_validate(row)
