from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app.routers import admin, auth, geo, mop, notifications, operators, realtime, requests
from app.services.distance_estimator import distance_estimator
from app.services.mop_notifier import mop_notifier
from app.services.request_store import request_store
from app.settings import parse_csv_env

app = FastAPI(title="Gruas Dispatch API", version="0.1.0")

cors_origins = parse_csv_env("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = parse_csv_env("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(auth.router)
app.include_router(requests.router)
app.include_router(operators.router)
app.include_router(geo.router)
app.include_router(admin.router)
app.include_router(mop.router)
app.include_router(realtime.router)
app.include_router(notifications.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    maps_configured = distance_estimator.provider_configured
    return {
        "status": "ready",
        "maps_configured": maps_configured,
        "distance_mode": "provider" if maps_configured else "fallback",
        "mop_whatsapp_configured": mop_notifier.enabled,
        "active_pricing_rule": bool(request_store.get_active_pricing_rule()),
    }
