"""Versioned API (v1).

The aggregated router lives in the routers subpackage:

    from passkeys.api.v1.routers import router as api_v1_router
"""

# Note: avoid `routers = ...` here to prevent shadowing the `routers` package.

__all__ = []
