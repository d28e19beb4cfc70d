from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

HEALTH_PROBE_KEY = "health:probe"


def build_monitoring_router(service: str) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health_view(request: Request):
        store_ok = False
        try:
            await request.app.state.store.get(HEALTH_PROBE_KEY)
            store_ok = True
        except Exception:
            store_ok = False

        code = 200 if store_ok else 503
        return JSONResponse(
            {"status": "healthy" if store_ok else "unhealthy", "service": service, "components": {"store": {"ok": store_ok}}},
            status_code=code,
        )

    @router.get("/metrics")
    async def metrics_view(request: Request):
        body, content_type = request.app.state.metrics.render()
        return Response(content=body, media_type=content_type)

    return router
