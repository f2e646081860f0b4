# provisioning/api/deps.py
"""
Shared API dependencies.

Services live on app.state (wired once in create_app) so tests can build an
app around in-memory stores and a fake clock without touching globals.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from provisioning.core.security import get_current_user_id
from provisioning.core.verification import VERIFICATION_REQUIRED_MESSAGE, VerificationKind
from provisioning.domain import RequestMetadata
from provisioning.services.invitation_service import InvitationService
from provisioning.services.verification_service import VerificationService


def get_verification_service(request: Request) -> VerificationService:
    return request.app.state.verification_service


def get_invitation_service(request: Request) -> InvitationService:
    return request.app.state.invitation_service


def client_ip(request: Request) -> str:
    # Prefer X-Forwarded-For if present (proxies), fall back to client.host.
    xff = request.headers.get("x-forwarded-for")
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def get_request_metadata(request: Request) -> RequestMetadata:
    ua = request.headers.get("user-agent")
    return RequestMetadata(ip=client_ip(request), user_agent=ua[:512] if ua else None)


async def require_verified_identity(
    user_id: str = Depends(get_current_user_id),
    service: VerificationService = Depends(get_verification_service),
) -> str:
    """
    Gate for actions covered by REQUIRE_VERIFIED_EMAIL / REQUIRE_VERIFIED_PHONE.
    Returns the caller's user id when the policy is satisfied.
    """
    missing = await service.missing_requirements(user_id)
    if missing:
        kind = VerificationKind.PHONE if VerificationKind.PHONE in missing else VerificationKind.EMAIL
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": f"verification_required_{kind.value}",
                "message": VERIFICATION_REQUIRED_MESSAGE,
                "missing": [k.value for k in missing],
            },
        )
    return user_id
