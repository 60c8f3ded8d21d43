"""HTTP routers for the admission service."""

from admission.app.api.admin import router as admin_router

__all__ = ["admin_router"]
