from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, status

from ..models import Invitation
from ..schemas import (
    AccountResponse,
    InvitationCreateRequest,
    InvitationCreatedResponse,
    InvitationResponse,
    MembershipResponse,
    UserResponse,
)
from ..services.invitations import InvitationLifecycle, get_invitation_lifecycle
from ..services.rate_limit import enforce_rate_limit
from ..settings import settings
from ..tenancy import (
    RequestContext,
    VerifiedIdentity,
    get_request_context,
    get_verified_identity,
    role_from_request,
)

router = APIRouter(tags=["invitations"])


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _serialize(invitation: Invitation) -> InvitationResponse:
    return InvitationResponse.model_validate(invitation)


@router.post(
    "/accounts/{account_id}/invite",
    response_model=InvitationCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_invitation(
    account_id: uuid.UUID,
    payload: InvitationCreateRequest,
    lifecycle: InvitationLifecycle = Depends(get_invitation_lifecycle),
    context: RequestContext = Depends(get_request_context),
) -> InvitationCreatedResponse:
    enforce_rate_limit(
        "invitations_create",
        settings.invitation_rate_limit_per_minute,
        context.current_account_id,
        context.current_user_id,
    )
    invitation = lifecycle.create(context, account_id, payload.email, role_from_request(payload.role))
    return InvitationCreatedResponse(
        **_serialize(invitation).model_dump(),
        token=invitation.token,
        invitation_url=settings.invitation_url(invitation.token),
    )


@router.get("/accounts/{account_id}/invitations", response_model=list[InvitationResponse])
def list_invitations(
    account_id: uuid.UUID,
    lifecycle: InvitationLifecycle = Depends(get_invitation_lifecycle),
    context: RequestContext = Depends(get_request_context),
) -> list[InvitationResponse]:
    return [_serialize(invitation) for invitation in lifecycle.list_for_account(context, account_id)]


@router.get("/invitations/{token}", response_model=InvitationResponse)
def resolve_invitation(
    token: str,
    request: Request,
    lifecycle: InvitationLifecycle = Depends(get_invitation_lifecycle),
) -> InvitationResponse:
    enforce_rate_limit("invitations_resolve", settings.invitation_rate_limit_per_minute, _client_host(request))
    enforce_rate_limit("invitations_resolve_token", settings.invitation_rate_limit_per_minute, token)
    return _serialize(lifecycle.resolve(token))


@router.post("/invitations/{token}/accept", response_model=MembershipResponse)
def accept_invitation(
    token: str,
    request: Request,
    lifecycle: InvitationLifecycle = Depends(get_invitation_lifecycle),
    identity: VerifiedIdentity = Depends(get_verified_identity),
) -> MembershipResponse:
    enforce_rate_limit(
        "invitations_accept",
        settings.invitation_rate_limit_per_minute,
        _client_host(request),
        identity.subject,
    )
    membership = lifecycle.accept(token, identity)
    return MembershipResponse(
        account=AccountResponse.model_validate(membership.account),
        user=UserResponse.model_validate(membership.user),
    )
