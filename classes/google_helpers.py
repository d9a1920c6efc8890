import logging
import os
from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("headstone_backend")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# --- Configuration ---
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")

DATABASE_URL        = os.environ.get("DATABASE_URL", "")
DB_HOST             = os.environ.get("DB_HOST", "localhost")
DB_PORT             = int(os.environ.get("DB_PORT", "5432"))
DB_NAME             = os.environ.get("DB_NAME", "headstone")
DB_USER             = os.environ.get("DB_USER", "postgres")
DB_PASSWORD         = os.environ.get("DB_PASSWORD")
DB_SECRET_ID        = os.environ.get("DB_SECRET_ID")

IS_LOCAL_DB = (DB_HOST == "localhost")

# --- Relative-link sync ---
ECHO_SUPPRESSION_SECONDS = float(os.getenv("ECHO_SUPPRESSION_SECONDS", "10"))
STRICT_CURATOR_IDENTITY = _env_flag("STRICT_CURATOR_IDENTITY", True)
APPROVAL_RECIPROCAL_LABELS = _env_flag("APPROVAL_RECIPROCAL_LABELS", False)
RECONCILE_ON_DELETE = _env_flag("RECONCILE_ON_DELETE", True)

# --- Trigger queue ---
TRIGGER_RECEIVER_ID = os.getenv("TRIGGER_RECEIVER_ID", "memorial_triggers")
MAX_TRIGGER_ATTEMPTS = int(os.getenv("MAX_TRIGGER_ATTEMPTS", "5"))
# A claimed message whose worker died becomes claimable again after this.
TRIGGER_LEASE_SECONDS = float(os.getenv("TRIGGER_LEASE_SECONDS", "300"))
CONCURRENT_INSTANCES = int(os.getenv("CONCURRENT_INSTANCES", "4"))

BIO_MODEL = os.getenv("BIO_MODEL", "gemini-2.5-flash-lite")


def _build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


def get_db_password() -> str:
    global DB_PASSWORD

    if DB_PASSWORD:
        return DB_PASSWORD

    if DB_SECRET_ID:
        creds = _build_creds()
        client = secretmanager.SecretManagerServiceClient(credentials=creds)
        name = client.secret_version_path(PROJECT_ID, DB_SECRET_ID, "latest")
        resp = client.access_secret_version(request={"name": name})
        DB_PASSWORD = resp.payload.data.decode("utf-8")
        return DB_PASSWORD

    raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")


def get_db_url() -> str:
    if DATABASE_URL:
        return DATABASE_URL

    if IS_LOCAL_DB:
        return "sqlite:///headstone.db"

    password = get_db_password()
    return f"postgresql+pg8000://{DB_USER}:{password}@{DB_HOST}:{DB_PORT}/{DB_NAME}"


def get_db_engine(url: str | None = None):
    url = url or get_db_url()

    if url.startswith("sqlite"):
        logger.info(f"[DB] Using SQLite URL: {url}")
        return create_engine(url, connect_args={"check_same_thread": False})

    logger.info(f"[DB] Connecting to Postgres host: {DB_HOST}:{DB_PORT}/{DB_NAME}")

    # pg8000 supports 'timeout' in seconds
    return create_engine(
        url,
        connect_args={"timeout": 10},  # fail in 10s instead of hanging forever
        pool_pre_ping=True,
    )


def create_session_factory(engine=None) -> sessionmaker:
    engine = engine or get_db_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
