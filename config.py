# ==========================================================================================================
# -------------- Configuration file for SongSculptors Flask application ------------------------------------
# ==========================================================================================================
import os
from decimal import Decimal
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def _database_uri():
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'songsculptors.db')}"

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+pg8000://", 1)
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+pg8000://", 1)
    return database_url


class Config:

    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY:
        raise ValueError("SECRET_KEY must be set in production")

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = os.getenv("DEBUG", "False").lower() in ("true", "1", "t")
    TESTING = False

    SQLALCHEMY_DATABASE_URI = _database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }
    if not SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS.update({"pool_size": 10, "max_overflow": 20})

    # ---- Orders ----
    ORDER_NUMBER_MAX_ATTEMPTS = int(os.getenv("ORDER_NUMBER_MAX_ATTEMPTS", "5"))
    SONG_DOWNLOAD_PREFIX = os.getenv("SONG_DOWNLOAD_PREFIX", "/uploads/songs")

    # ---- Affiliate programme ----
    DEFAULT_COMMISSION_RATE = Decimal(os.getenv("DEFAULT_COMMISSION_RATE", "10.00"))
    MIN_PAYOUT_THRESHOLD = Decimal(os.getenv("MIN_PAYOUT_THRESHOLD", "10.00"))
    COMMISSION_HOLDING_DAYS = int(os.getenv("COMMISSION_HOLDING_DAYS", "14"))
    AFFILIATE_COMMISSION_BASIS = os.getenv("AFFILIATE_COMMISSION_BASIS", "post_discount")
    AFFILIATE_REAPPLY_DAYS = int(os.getenv("AFFILIATE_REAPPLY_DAYS", "30"))
    CODE_REGENERATION_COOLDOWN_HOURS = int(os.getenv("CODE_REGENERATION_COOLDOWN_HOURS", "24"))

    # ---- Payment provider ----
    PAYMENT_API_BASE_URL = os.getenv("PAYMENT_API_BASE_URL", "https://api.stripe.com/v1")
    PAYMENT_API_KEY = os.getenv("PAYMENT_API_KEY")
    PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
    PAYMENT_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("PAYMENT_WEBHOOK_TOLERANCE_SECONDS", "300"))
    REQUEST_TIMEOUT_SECONDS = int(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))

    APP_BASE_URL = os.getenv("APP_BASE_URL", "https://songsculptors.com")


class TestConfig(Config):
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    PAYMENT_WEBHOOK_SECRET = "whsec_test"
    APP_BASE_URL = "http://localhost"
