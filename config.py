import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    """
    Settings for the relief engine. Values come from the environment (or a
    .env file) and fall back to development defaults.
    """

    # Admin credential shared by the relief coordinators
    ADMIN_KEY = os.getenv("ADMIN_KEY", "admin123")

    # Tokens issued by /api/admin/auth
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
    JWT_ALGO = "HS256"
    TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", str(60 * 24)))

    # MongoDB; the in-memory store is used when DATABASE_URL is not set
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_NAME = os.getenv("DATABASE_NAME", "relief")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    PORT = int(os.getenv("PORT", "8000"))

    # Spherical Earth; haversine error against WGS84 stays around 0.5%
    EARTH_RADIUS_KM = 6371.0
    # Decimal places used for every reported distance_km
    DISTANCE_PRECISION = 1

    # Hubs further than this get no proximity credit and are never matched
    MATCH_CUTOFF_KM = 100.0
    NEARBY_MAX_RESULTS = 10

    # score = round(100 * (COVERAGE_WEIGHT * coverage + PROXIMITY_WEIGHT * proximity))
    COVERAGE_WEIGHT = 0.6
    PROXIMITY_WEIGHT = 0.4
