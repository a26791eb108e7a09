from fastapi import APIRouter, Response

from trialmeter.core.metrics import METRICS


router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics_endpoint():
    """Prometheus text exposition of the in-process registry."""
    payload = METRICS.export_prometheus()
    return Response(content=payload, media_type="text/plain; version=0.0.4")
