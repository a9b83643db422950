from fastapi import APIRouter, Depends

from piclib.api.deps import get_coordinator
from piclib.api.v1 import files, folders, libraries
from piclib.core.metrics import snapshot as metrics_snapshot
from piclib.schemas.library import StatisticsRead
from piclib.services.ingestion import IngestionCoordinator

api_router = APIRouter()

api_router.include_router(libraries.router)
api_router.include_router(folders.router)
api_router.include_router(files.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()


@api_router.get("/statistics", response_model=StatisticsRead, tags=["health"])
async def statistics(coordinator: IngestionCoordinator = Depends(get_coordinator)) -> StatisticsRead:
    return await coordinator.get_statistics()
