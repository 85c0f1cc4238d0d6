import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import jwt
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from config import Config
from database import get_repository
from errors import Forbidden, ReliefError, Unauthorized
from gazetteer import Gazetteer
from ledger import AllocationLedger
from schemas import (
    AdminAuthRequest,
    DonationCreate,
    GeoPoint,
    Hub,
    HubCreate,
    InventoryUpdate,
    NearbyHub,
    PredictRequest,
    RequestStatusUpdate,
    TrackingUpdate,
    VictimRequestCreate,
)
from stats import compute_stats

logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Shared admin key, kept only as a hash
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
ADMIN_KEY_HASH = pwd_context.hash(Config.ADMIN_KEY)
security = HTTPBearer(auto_error=False)

app = FastAPI(title="Disaster Relief Matching API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger = AllocationLedger(get_repository(), Gazetteer())


def get_ledger() -> AllocationLedger:
    return ledger


def nearby_payload(pairs: List[Tuple[Hub, float]]) -> List[NearbyHub]:
    return [
        NearbyHub(id=hub.id, name=hub.name, location_name=hub.location_name,
                  lat=hub.lat, lon=hub.lon, distance_km=dist)
        for hub, dist in pairs
    ]


# ------------------ Errors ------------------

@app.exception_handler(ReliefError)
async def relief_error_handler(request: Request, exc: ReliefError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # without the rejected input, which may be inf or nan
    errors = [{k: v for k, v in error.items() if k != "input"} for error in exc.errors()]
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "Invalid request",
            "message": "Invalid request",
            "code": "ValidationError",
            "detail": {"errors": jsonable_encoder(errors)},
        },
    )


# ------------------ Auth ------------------

def create_token(actor: str = "admin") -> str:
    payload = {
        "sub": actor,
        "role": "admin",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=Config.TOKEN_EXPIRE_MIN),
    }
    return jwt.encode(payload, Config.JWT_SECRET, algorithm=Config.JWT_ALGO)


def require_admin(
    x_admin_key: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    if x_admin_key is not None:
        if pwd_context.verify(x_admin_key, ADMIN_KEY_HASH):
            return "admin"
        logger.warning("Rejected request with an invalid admin key")
        raise Unauthorized("Invalid admin key")
    if credentials is None:
        raise Unauthorized("Admin credentials required")
    try:
        payload = jwt.decode(credentials.credentials, Config.JWT_SECRET, algorithms=[Config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")
    if payload.get("role") != "admin":
        raise Forbidden("Forbidden")
    return payload.get("sub") or "admin"


@app.post("/api/admin/auth")
def admin_auth(payload: AdminAuthRequest):
    if not pwd_context.verify(payload.key, ADMIN_KEY_HASH):
        logger.warning("Failed admin login")
        raise Unauthorized("Invalid admin key")
    return {"success": True, "access_token": create_token(), "token_type": "bearer"}


# ------------------ Disaster reports ------------------

@app.post("/api/predict-location")
def predict_location(payload: PredictRequest, limit: int = Query(Config.NEARBY_MAX_RESULTS, gt=0),
                     ledger: AllocationLedger = Depends(get_ledger)):
    event, hubs = ledger.predict_location(payload.text, max_hubs=limit)
    return {
        "success": True,
        "event_id": event.id,
        "location_name": event.location_name,
        "lat": event.lat,
        "lon": event.lon,
        "disaster_type": event.disaster_type.value,
        "severity": event.severity.value,
        "nearby_hubs": nearby_payload(hubs),
    }


@app.get("/api/events")
def list_events(ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "events": ledger.list_events()}


# ------------------ Donations ------------------

@app.post("/api/donations")
def create_donation(payload: DonationCreate, ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "donation": ledger.create_donation(payload)}


@app.get("/api/donations")
def list_donations(ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "donations": ledger.list_donations()}


@app.get("/api/donations/{donation_id}")
def get_donation(donation_id: str, ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "donation": ledger.get_donation(donation_id)}


@app.put("/api/admin/donations/{donation_id}/tracking")
def update_donation_tracking(donation_id: str, payload: TrackingUpdate, actor: str = Depends(require_admin),
                             ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "donation": ledger.update_donation_tracking(donation_id, payload, actor)}


# ------------------ Victim requests ------------------

@app.post("/api/victim-requests")
def create_victim_request(payload: VictimRequestCreate, ledger: AllocationLedger = Depends(get_ledger)):
    request = ledger.create_victim_request(payload)
    return {
        "success": True,
        "request": request,
        "matched_hub": ledger.matched_hub(request),
        "match_score": request.match_score,
    }


@app.get("/api/victim-requests")
def list_victim_requests(ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "requests": ledger.list_victim_requests()}


@app.get("/api/victim-requests/{request_id}")
def get_victim_request(request_id: str, ledger: AllocationLedger = Depends(get_ledger)):
    request = ledger.get_victim_request(request_id)
    return {"success": True, "request": request, "matched_hub": ledger.matched_hub(request)}


@app.put("/api/admin/victim-requests/{request_id}/status")
def update_victim_request_status(request_id: str, payload: RequestStatusUpdate,
                                 actor: str = Depends(require_admin),
                                 ledger: AllocationLedger = Depends(get_ledger)):
    request = ledger.update_request_status(request_id, payload.fulfilled_status, actor, payload.note)
    return {"success": True, "request": request}


# ------------------ Hubs ------------------

@app.get("/api/hubs")
@app.get("/api/admin/hubs")
def list_hubs(ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "hubs": ledger.list_hubs()}


@app.get("/api/hubs/nearby")
def hubs_nearby(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(Config.MATCH_CUTOFF_KM, ge=0),
    limit: int = Query(Config.NEARBY_MAX_RESULTS, gt=0),
    ledger: AllocationLedger = Depends(get_ledger),
):
    pairs = ledger.nearby_hubs(GeoPoint(lat=lat, lon=lon), radius_km, limit)
    return {"success": True, "hubs": nearby_payload(pairs)}


@app.post("/api/admin/hubs")
def add_hub(payload: HubCreate, actor: str = Depends(require_admin),
            ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "hub": ledger.add_hub(payload, actor)}


@app.put("/api/admin/hubs/{hub_id}/inventory")
def update_hub_inventory(hub_id: str, payload: InventoryUpdate, actor: str = Depends(require_admin),
                         ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "hub": ledger.update_hub_inventory(hub_id, payload.inventory, actor)}


@app.delete("/api/admin/hubs/{hub_id}")
def delete_hub(hub_id: str, actor: str = Depends(require_admin),
               ledger: AllocationLedger = Depends(get_ledger)):
    ledger.delete_hub(hub_id, actor)
    return {"success": True, "message": "Hub deleted"}


# ------------------ Dashboard ------------------

@app.get("/api/dashboard/stats")
def dashboard_stats(ledger: AllocationLedger = Depends(get_ledger)):
    return {"success": True, "stats": compute_stats(ledger.repository)}


# ------------------ Seed relief hubs ------------------

SEED_HUBS = [
    {
        "name": "Shinjuku Relief Center",
        "location_name": "Tokyo",
        "contact": "+81-3-0000-0001",
        "lat": 35.6938,
        "lon": 139.7034,
        "inventory": {"Water Bottles": 500, "Food Packets": 300, "Blankets": 200, "First Aid Kits": 80},
    },
    {
        "name": "Yokohama Port Warehouse",
        "location_name": "Yokohama",
        "contact": "+81-45-000-0002",
        "lat": 35.4437,
        "lon": 139.6380,
        "inventory": {"Water Bottles": 1200, "Tents": 60, "Medical Supplies": 150},
    },
    {
        "name": "Bengaluru Relief Depot",
        "location_name": "Bengaluru",
        "contact": "+91-80-0000-0003",
        "lat": 12.9716,
        "lon": 77.5946,
        "inventory": {"Food Packets": 800, "Clothing": 400, "Flashlights": 120, "Batteries": 500},
    },
]


@app.post("/api/seed-hubs")
def seed_hubs(actor: str = Depends(require_admin), ledger: AllocationLedger = Depends(get_ledger)):
    existing = {hub.name for hub in ledger.list_hubs()}
    created = []
    for seed in SEED_HUBS:
        if seed["name"] not in existing:
            ledger.add_hub(HubCreate(**seed), actor)
            created.append(seed["name"])
    return {"success": True, "created": created}


# ------------------ Health ------------------

@app.get("/")
def read_root():
    return {"message": "Disaster Relief Backend Running", "cutoff_km": Config.MATCH_CUTOFF_KM}


@app.get("/api/health")
def health(ledger: AllocationLedger = Depends(get_ledger)):
    response = {
        "backend": "running",
        "database": "unavailable",
        "store": ledger.repository.name,
        "collections": [],
    }
    try:
        info = ledger.repository.ping()
        response["database"] = "connected"
        response["collections"] = info.get("collections", [])
    except Exception as e:
        logger.error("Store health check failed: %s", e)
        response["database"] = f"error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
