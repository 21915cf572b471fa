"""API routers."""

from billing_core.routers.billing import router as billing_router

__all__ = ["billing_router"]
