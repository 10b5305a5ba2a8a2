from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response, status

from ..schemas import (
    AccountResponse,
    AccountStatusChangeRequest,
    FeatureFlagsResponse,
    MembershipResponse,
    RoleChangeRequest,
    SignupRequest,
    UserResponse,
)
from ..services.accounts import account_features, load_account, set_account_status
from ..services.memberships import change_user_role, list_members, remove_user, signup
from ..store import SqlAccountScopeStore, get_store
from ..tenancy import (
    RequestContext,
    VerifiedIdentity,
    get_request_context,
    get_verified_identity,
    role_from_request,
)

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post("", response_model=MembershipResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: SignupRequest,
    store: SqlAccountScopeStore = Depends(get_store),
    identity: VerifiedIdentity = Depends(get_verified_identity),
) -> MembershipResponse:
    result = signup(store, identity, payload.account_name)
    return MembershipResponse(
        account=AccountResponse.model_validate(result.account),
        user=UserResponse.model_validate(result.user),
    )


@router.get("/{account_id}/users", response_model=list[UserResponse])
def list_account_users(
    account_id: uuid.UUID,
    store: SqlAccountScopeStore = Depends(get_store),
    context: RequestContext = Depends(get_request_context),
) -> list[UserResponse]:
    return [UserResponse.model_validate(user) for user in list_members(store, context, account_id)]


@router.patch("/{account_id}/users/{user_id}/role", response_model=UserResponse)
def update_user_role(
    account_id: uuid.UUID,
    user_id: uuid.UUID,
    payload: RoleChangeRequest,
    store: SqlAccountScopeStore = Depends(get_store),
    context: RequestContext = Depends(get_request_context),
) -> UserResponse:
    user = change_user_role(store, context, account_id, user_id, role_from_request(payload.role))
    return UserResponse.model_validate(user)


@router.delete("/{account_id}/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account_user(
    account_id: uuid.UUID,
    user_id: uuid.UUID,
    store: SqlAccountScopeStore = Depends(get_store),
    context: RequestContext = Depends(get_request_context),
) -> Response:
    remove_user(store, context, account_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/{account_id}/status", response_model=AccountResponse)
def update_account_status(
    account_id: uuid.UUID,
    payload: AccountStatusChangeRequest,
    store: SqlAccountScopeStore = Depends(get_store),
    context: RequestContext = Depends(get_request_context),
) -> AccountResponse:
    account = set_account_status(store, context, account_id, payload.status, payload.reason)
    return AccountResponse.model_validate(account)


@router.get("/{account_id}/features", response_model=FeatureFlagsResponse)
def get_account_features(
    account_id: uuid.UUID,
    store: SqlAccountScopeStore = Depends(get_store),
    context: RequestContext = Depends(get_request_context),
) -> FeatureFlagsResponse:
    account = load_account(store, context, account_id)
    return FeatureFlagsResponse(account_id=account.id, features=account_features(store, account))
