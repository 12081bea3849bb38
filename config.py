"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _csv_env(name, default):
    """Read a comma separated list of role names from the environment."""
    raw = os.getenv(name, default)
    return tuple(part.strip().upper() for part in raw.split(',') if part.strip())


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')

    # Bearer tokens (HS256). No default: a missing key is a configuration error.
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY')
    JWT_ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
    DEFAULT_USER_ROLE = os.getenv('DEFAULT_USER_ROLE', 'MAGASIN')

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'stock')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'stock')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'stock')

        DATABASE_URL = (
            f"postgresql://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', '0') == '1'

    # Consignment access (role names as stored in user profiles)
    CONSIGNMENT_VIEW_ROLES = _csv_env('CONSIGNMENT_VIEW_ROLES', 'ADMIN_FULL,ADMIN,COMPTABLE')
    CONSIGNMENT_VAT_ROLES = _csv_env('CONSIGNMENT_VAT_ROLES', 'ADMIN_FULL,ADMIN,COMPTABLE')
    CONSIGNMENT_MOVE_DENIED_ROLES = _csv_env('CONSIGNMENT_MOVE_DENIED_ROLES', 'COMMANDE')
    CONSIGNMENT_SYNC_ROLES = _csv_env('CONSIGNMENT_SYNC_ROLES', 'ADMIN_FULL,ADMIN')

    # Consignment engine
    CONSIGNMENT_FETCH_WORKERS = int(os.getenv('CONSIGNMENT_FETCH_WORKERS', '4'))
    CONSIGNMENT_DEFAULT_VAT_RATE = os.getenv('CONSIGNMENT_DEFAULT_VAT_RATE', '0.20')
    CONSIGNMENT_UNPAID_DAYS = int(os.getenv('CONSIGNMENT_UNPAID_DAYS', '30'))
    CONSIGNMENT_URGENT_DAYS = int(os.getenv('CONSIGNMENT_URGENT_DAYS', '60'))

    # Redis Cache Configuration
    # Read-through cache for consignment detail lines, invalidated on every new move
    REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
    CACHE_ENABLED = os.getenv('CACHE_ENABLED', 'false').lower() == 'true'
    CACHE_DEFAULT_TTL = int(os.getenv('CACHE_DEFAULT_TTL', '60'))  # seconds
    CACHE_DETAIL_TTL = int(os.getenv('CACHE_DETAIL_TTL', '60'))
    CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'consignments')
