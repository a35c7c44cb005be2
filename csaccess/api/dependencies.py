from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header

from csaccess.service.guard import ADMIN_ROLE
from csaccess.service.runtime import get_runtime
from csaccess.service.tokens import IdentityClaims


async def get_identity(authorization: Optional[str] = Header(None)) -> IdentityClaims:
    """Mandatory guard: a valid, unrevoked bearer token or an error response."""
    runtime = get_runtime()
    return await runtime.guard.authenticate(authorization, mandatory=True)


async def get_optional_identity(
    authorization: Optional[str] = Header(None),
) -> Optional[IdentityClaims]:
    """Optional guard: identity when the token checks out, otherwise anonymous."""
    runtime = get_runtime()
    return await runtime.guard.authenticate(authorization, mandatory=False)


def require_role(role: str) -> Callable[..., IdentityClaims]:
    async def _check(identity: IdentityClaims = Depends(get_identity)) -> IdentityClaims:
        return get_runtime().guard.require_role(identity, role)

    return _check


get_admin_identity = require_role(ADMIN_ROLE)


__all__ = [
    "get_admin_identity",
    "get_identity",
    "get_optional_identity",
    "require_role",
]
