"""
Identity provider package.

The lifecycle API only needs a caller id and an admin claim. The local
provider issues database-backed session tokens; an external provider can be
dropped in behind the same interface.

Usage:
    from app.services.auth.dependencies import get_current_user, require_admin

    @router.get("/protected")
    async def protected_route(user: User = Depends(get_current_user)):
        ...
"""
from app.services.auth.base import CallerIdentity, IdentityProvider
from app.services.auth.local_provider import local_identity_provider


def get_identity_provider() -> IdentityProvider:
    """Return the configured identity provider."""
    return local_identity_provider


__all__ = [
    "CallerIdentity",
    "IdentityProvider",
    "get_identity_provider",
    "local_identity_provider",
]
