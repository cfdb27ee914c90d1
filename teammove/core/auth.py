"""
Auth utilities for the TeamMove billing API.

Validates Clerk JWTs and extracts the active organization from the token.
Outside production the X-Organization-Id header is accepted instead (tests,
local tooling).
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from teammove.core.config import settings
from teammove.core.logging import bind_organization


logger = logging.getLogger(__name__)


def _organization_from_claims(payload: dict) -> Optional[str]:
    # Clerk session tokens v1 carry org_id; v2 nests it under "o"
    org_id = payload.get("org_id")
    if not org_id and isinstance(payload.get("o"), dict):
        org_id = payload["o"].get("id")
    return org_id


def verify_clerk_jwt(token: str) -> Optional[str]:
    """
    Verify Clerk JWT and extract the active organization id.

    Returns:
        organization_id, or None when JWT validation is not configured

    Raises:
        HTTPException 401: Invalid or expired token, or no active organization
    """
    if not settings.CLERK_SECRET_KEY:
        logger.debug("No CLERK_SECRET_KEY configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.CLERK_SECRET_KEY,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    org_id = _organization_from_claims(payload)
    if not org_id:
        raise HTTPException(status_code=401, detail="No active organization in token")
    return org_id


async def get_current_organization_id(
    request: Request,
    x_organization_id: Optional[str] = Header(None, description="Non-production: organization ID"),
) -> str:
    """
    Resolve the organization the request acts for.

    Priority:
    1. Clerk JWT from Authorization header
    2. X-Organization-Id header (non-production only)
    3. Raise 401 Unauthorized
    """
    org_id = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        org_id = verify_clerk_jwt(auth_header[7:])

    if not org_id and x_organization_id and settings.ENV != "production":
        org_id = x_organization_id

    if org_id:
        request.state.organization_id = org_id
        bind_organization(org_id)
        return org_id

    raise HTTPException(
        status_code=401,
        detail={
            "error": "unauthorized",
            "message": "Missing Authorization (Bearer JWT) or X-Organization-Id header",
        },
    )
