"""API v1 router aggregator.

URL structure with /api/v1 prefix. All v1 endpoint routers are included
here.
"""

from fastapi import APIRouter

from barfly.api.v1 import auth, two_factor, verify

router = APIRouter()

# =============================================================================
# Authentication
# =============================================================================

_AUTH_PREFIX = "/auth"

router.include_router(auth.router, prefix=_AUTH_PREFIX, tags=["auth"])
router.include_router(verify.router, prefix=_AUTH_PREFIX, tags=["auth"])
router.include_router(two_factor.router, prefix=_AUTH_PREFIX, tags=["two-factor"])
