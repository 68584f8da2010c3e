"""returnflow API routers.

- cases: Return case commands and queries under /api
- admin: Operational endpoints under /api/admin
"""

from returnflow.api.routers.admin import router as admin_router
from returnflow.api.routers.cases import router as cases_router

__all__ = ["admin_router", "cases_router"]
