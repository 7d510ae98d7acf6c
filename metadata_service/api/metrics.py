"""
Prometheus scrape endpoint.
"""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from metadata_service.core.metrics import metrics

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
def get_metrics() -> str:
    return metrics.to_prometheus()
