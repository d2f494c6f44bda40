"""Dashboard API routes.

Job, history and system endpoints live under /api; WebSocket streams
under /ws.
"""

from fastapi import APIRouter

from rsyncweb.dashboard.routes.jobs import router as jobs_router
from rsyncweb.dashboard.routes.stream import router as stream_router
from rsyncweb.dashboard.routes.stream import ws_router
from rsyncweb.dashboard.routes.system import router as system_router

router = APIRouter()
router.include_router(system_router)
router.include_router(jobs_router)
router.include_router(stream_router)
router.include_router(ws_router)

__all__ = ["router"]
