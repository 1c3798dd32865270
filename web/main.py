from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.env import env_str
from core.logging import setup_logging
from web import routers

setup_logging()

app = FastAPI(
    title="Billing Engine API",
    description="Subscription reconciliation, entitlements and metered usage for multi-tenant tools.",
    version="0.1.0",
)

origins = [origin.strip() for origin in (env_str("BILLING_CORS_ORIGINS", "http://localhost:3000") or "").split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def tag_organization(request: Request, call_next):
    """Echo the acting organization so proxies can correlate billing calls."""
    response = await call_next(request)
    organization_id = request.headers.get("x-organization-id")
    if organization_id:
        response.headers.setdefault("X-Organization-Id", organization_id)
    return response


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    """Basic liveness check."""
    return {"status": "ok", "message": "Billing Engine API is running."}


@app.get("/healthz", include_in_schema=False)
def readiness_check():
    """Readiness probe that also checks the database."""
    db_ok, db_error = routers.health.ping_database()
    payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=payload)


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics():
    """Expose Prometheus metrics."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


for router in routers.iter_routers():
    app.include_router(router, prefix="/api/v1")
