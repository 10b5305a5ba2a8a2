from __future__ import annotations

from fastapi import APIRouter, Depends

from ..schemas import CampaignCascadeResponse, CampaignReplaceRequest, UtmLinkResponse
from ..services.consistency import (
    CampaignCascadeResult,
    ConsistencyCoordinator,
    LinkDraft,
    get_consistency_coordinator,
)
from ..tenancy import RequestContext, get_request_context

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _cascade_response(result: CampaignCascadeResult) -> CampaignCascadeResponse:
    return CampaignCascadeResponse(
        campaign_name=result.campaign_name, links=result.links, landing_pages=result.landing_pages
    )


@router.post("/{campaign_name}/archive", response_model=CampaignCascadeResponse)
def archive_campaign(
    campaign_name: str,
    coordinator: ConsistencyCoordinator = Depends(get_consistency_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> CampaignCascadeResponse:
    result = coordinator.set_campaign_archived(context.current_account_id, campaign_name, True, actor=context)
    return _cascade_response(result)


@router.post("/{campaign_name}/unarchive", response_model=CampaignCascadeResponse)
def unarchive_campaign(
    campaign_name: str,
    coordinator: ConsistencyCoordinator = Depends(get_consistency_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> CampaignCascadeResponse:
    result = coordinator.set_campaign_archived(context.current_account_id, campaign_name, False, actor=context)
    return _cascade_response(result)


@router.delete("/{campaign_name}/links", response_model=CampaignCascadeResponse)
def delete_campaign(
    campaign_name: str,
    coordinator: ConsistencyCoordinator = Depends(get_consistency_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> CampaignCascadeResponse:
    result = coordinator.delete_campaign_links(context.current_account_id, campaign_name, actor=context)
    return _cascade_response(result)


@router.put("/{campaign_name}/links", response_model=list[UtmLinkResponse])
def replace_campaign(
    campaign_name: str,
    payload: CampaignReplaceRequest,
    coordinator: ConsistencyCoordinator = Depends(get_consistency_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> list[UtmLinkResponse]:
    rows = coordinator.replace_campaign_links(
        context.current_account_id,
        campaign_name,
        context.current_user_id,
        [
            LinkDraft(target_url=item.target_url, full_utm_link=item.full_utm_link, tags=item.tags)
            for item in payload.links
        ],
        landing_pages=payload.landing_pages,
        actor=context,
    )
    return [UtmLinkResponse.model_validate(row) for row in rows]
