"""Organization-scoped auth dependency for API routes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings
from app.core.logging import logger


security = HTTPBearer(auto_error=False)

SUPPORTED_ROLES = {"dispatcher", "reviewer", "admin"}


@dataclass
class OrganizationContext:
    organization_id: str
    authenticated: bool
    actor: str
    role: str


@dataclass(frozen=True)
class TokenGrant:
    """What a bearer token unlocks: one organization, optionally one role."""

    organization_id: str
    role: Optional[str] = None


def _resolve_role(header_role: str | None, pinned: str | None = None) -> str:
    requested = (header_role or "").strip().lower()
    if pinned:
        if requested and requested != pinned:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Token is limited to role '{pinned}'",
            )
        return pinned
    if not requested:
        return "admin"
    if requested not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{header_role}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return requested


def parse_token_grants(raw: str) -> Dict[str, TokenGrant]:
    """
    Parse ``ORGANIZATION_TOKENS``.

    Comma-separated ``token:organization`` or ``token:organization:role``
    entries. Malformed entries and unknown roles are skipped with a warning.
    """
    grants: Dict[str, TokenGrant] = {}
    for segment in (raw or "").split(","):
        item = segment.strip()
        if not item:
            continue
        parts = [part.strip() for part in item.split(":")]
        if len(parts) not in (2, 3) or not all(parts):
            logger.warning("Ignoring malformed organization token entry", entry=item)
            continue
        role = parts[2].lower() if len(parts) == 3 else None
        if role is not None and role not in SUPPORTED_ROLES:
            logger.warning("Ignoring organization token with unknown role", role=role)
            continue
        grants[parts[0]] = TokenGrant(organization_id=parts[1], role=role)
    return grants


def get_organization_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_organization_id: str | None = Header(default=None, alias="X-Organization-ID"),
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> OrganizationContext:
    """Resolve organization, actor and role from a bearer token or headers."""
    settings = get_settings()
    header_org = (x_organization_id or "").strip()
    actor = (x_user_id or "").strip()

    if not settings.auth_enabled:
        return OrganizationContext(
            organization_id=header_org or settings.default_organization_id or "demo",
            authenticated=False,
            actor=actor or "anonymous",
            role=_resolve_role(x_actor_role),
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )
    grant = parse_token_grants(settings.organization_tokens).get(credentials.credentials.strip())
    if grant is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )
    if header_org and header_org != grant.organization_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token organization mismatch",
        )
    return OrganizationContext(
        organization_id=grant.organization_id,
        authenticated=True,
        actor=actor or "token",
        role=_resolve_role(x_actor_role, grant.role),
    )


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: OrganizationContext = Depends(get_organization_context)) -> OrganizationContext:
        if context.role not in allowed:
            logger.warning("Role not permitted", role=context.role, allowed=sorted(allowed))
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
