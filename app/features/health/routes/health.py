from fastapi import APIRouter, Depends, status

from app.features.analysis.services.job_store import SqlAlchemyJobStore
from app.platform.config import settings
from app.platform.db.session import get_session_factory
from app.platform.response import api_response
from app.platform.utils.clock import isoformat_utc, utc_now

router = APIRouter()


def get_job_store() -> SqlAlchemyJobStore:
    return SqlAlchemyJobStore(get_session_factory())


@router.get("/health", tags=["health"])
def health_check(store: SqlAlchemyJobStore = Depends(get_job_store)):
    database_ok = store.ping()
    return api_response(
        data={
            "status": "healthy" if database_ok else "degraded",
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "timestamp": isoformat_utc(utc_now()),
            "checks": {"database": "ok" if database_ok else "unavailable"},
        },
        message="Service is healthy" if database_ok else "Service is degraded",
        status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
    )
