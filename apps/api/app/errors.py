"""Error taxonomy shared by the services and mapped to HTTP in ``main``."""

from __future__ import annotations

import logging

from fastapi import status

from packages.access import AccessDecision

logger = logging.getLogger(__name__)


class AccessError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    kind: str = "error"

    def __init__(self, detail: str, rule: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.rule = rule

    def to_payload(self) -> dict[str, str | None]:
        return {"detail": self.detail, "kind": self.kind, "rule": self.rule}


class UnauthorizedError(AccessError):
    status_code = status.HTTP_401_UNAUTHORIZED
    kind = "unauthorized"


class ForbiddenError(AccessError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "forbidden"


class NotFoundError(AccessError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "not_found"


class ConflictError(AccessError):
    status_code = status.HTTP_409_CONFLICT
    kind = "conflict"


class ExpiredError(ConflictError):
    status_code = status.HTTP_410_GONE
    kind = "expired"


class ValidationError(AccessError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    kind = "validation"


def raise_if_denied(decision: AccessDecision, detail: str = "access denied") -> None:
    if not decision.allowed:
        logger.info("access.denied", extra={"rule": decision.rule})
        raise ForbiddenError(detail, rule=decision.rule)
