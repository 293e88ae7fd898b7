import logging
import os
import re

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection

from app.api.v2.api import api_router
from app.core.config import settings
from app.db.base import Base
from app.db.session import sync_engine

# --- Configuration du logging ---
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Learning Progress API V2",
    openapi_url="/api/v2/openapi.json",
)


CORS_ALLOWED_HEADERS = ["Authorization", "Content-Type", "X-Access-Token"]


def _normalize_origin(origin: str | None) -> str | None:
    value = (origin or "").strip().rstrip("/")
    if not value:
        return None
    return value if value.startswith("http") else f"https://{value}"


def build_cors_options(origins, regexes, vercel_url: str | None = None) -> dict[str, object]:
    """Options du middleware CORS : origines exactes + regex valides regroupées en une seule."""
    allow_origins = sorted({o for o in map(_normalize_origin, [*origins, vercel_url]) if o})

    patterns = []
    for pattern in (p.strip() for p in regexes if p and p.strip()):
        try:
            re.compile(pattern)
        except re.error as exc:
            logger.warning("Regex CORS ignorée (invalide): %s (%s)", pattern, exc)
            continue
        patterns.append(f"(?:{pattern})")

    options: dict[str, object] = {
        "allow_origins": allow_origins,
        "allow_credentials": True,
        "allow_methods": ["*"],
        "allow_headers": CORS_ALLOWED_HEADERS,
    }
    if patterns:
        options["allow_origin_regex"] = "|".join(patterns)
    logger.info("CORS origins configurés: %s", allow_origins)
    return options


app.add_middleware(
    CORSMiddleware,
    **build_cors_options(
        settings.BACKEND_CORS_ORIGINS,
        settings.BACKEND_CORS_ORIGIN_REGEXES,
        os.getenv("VERCEL_URL"),
    ),
)
app.include_router(api_router, prefix="/api/v2")


def _ensure_user_courses_last_accessed_column(connection: Connection) -> None:
    """Ajoute ``user_courses.last_accessed`` aux bases créées avant son introduction."""
    inspector = inspect(connection)
    if not inspector.has_table("user_courses"):
        return

    columns = {column["name"] for column in inspector.get_columns("user_courses")}
    if "last_accessed" in columns:
        return

    logger.warning("Colonne last_accessed absente de user_courses : ajout.")
    connection.execute(text("ALTER TABLE user_courses ADD COLUMN last_accessed TIMESTAMP"))


@app.on_event("startup")
def startup() -> None:
    logger.info("Vérification et création des tables de la base de données...")
    with sync_engine.begin() as connection:
        Base.metadata.create_all(bind=connection)
        _ensure_user_courses_last_accessed_column(connection)
    logger.info("✅ Les tables de la base de données sont prêtes.")


@app.get("/")
def read_root():
    return {"message": "Welcome to the Learning Progress API V2!"}
