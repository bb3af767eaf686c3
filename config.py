"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')

    # Session Configuration (Production-safe defaults)
    SESSION_COOKIE_SECURE = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv('SESSION_COOKIE_SAMESITE', 'Lax')
    PERMANENT_SESSION_LIFETIME = 86400  # 24 hours

    # Preferred URL scheme (for url_for with _external=True)
    PREFERRED_URL_SCHEME = os.getenv('PREFERRED_URL_SCHEME', 'http')

    # Backend REST API
    BACKEND_BASE_URL = os.getenv('BACKEND_BASE_URL', 'http://localhost:8000')
    BACKEND_API_PATH = os.getenv('BACKEND_API_PATH', '/api')
    BACKEND_TIMEOUT = int(os.getenv('BACKEND_TIMEOUT', '30'))

    # Seconds the client waits before following a session-expired redirect
    SESSION_EXPIRED_REDIRECT_DELAY = int(os.getenv('SESSION_EXPIRED_REDIRECT_DELAY', '2'))

    # Browser storage database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'storefront')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'storefront')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'storefront')

        DATABASE_URL = (
            f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'

    # Cookie identifying a browser profile (scope of guest cart and local caches)
    BROWSER_ID_COOKIE = os.getenv('BROWSER_ID_COOKIE', 'browser_id')
    BROWSER_ID_MAX_AGE = int(os.getenv('BROWSER_ID_MAX_AGE', str(365 * 86400)))

    # Wholesale upgrade documents
    WHOLESALE_MAX_DOCUMENT_SIZE = int(os.getenv('WHOLESALE_MAX_DOCUMENT_SIZE', 2 * 1024 * 1024))  # 2MB
    WHOLESALE_ALLOWED_MIME_TYPES = {
        'image/jpeg',
        'image/png',
        'application/pdf'
    }
    WHOLESALE_DEFAULT_REJECTION_REASON = os.getenv(
        'WHOLESALE_DEFAULT_REJECTION_REASON',
        'Request rejected by administrator'
    )
    ADMIN_QUEUE_LIMIT = int(os.getenv('ADMIN_QUEUE_LIMIT', '1000'))

    # Seconds a submit/approve/reject click keeps later identical clicks out
    IN_FLIGHT_TTL = int(os.getenv('IN_FLIGHT_TTL', '30'))

    # Redis Cache Configuration
    REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
    CACHE_ENABLED = os.getenv('CACHE_ENABLED', 'true').lower() == 'true'
    CACHE_DEFAULT_TTL = int(os.getenv('CACHE_DEFAULT_TTL', '60'))  # seconds
    CACHE_WHOLESALE_STATUS_TTL = int(os.getenv('CACHE_WHOLESALE_STATUS_TTL', '30'))
    CACHE_WHOLESALE_CUSTOMERS_TTL = int(os.getenv('CACHE_WHOLESALE_CUSTOMERS_TTL', '60'))
    CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'storefront')


class TestConfig(Config):
    """Configuration for the test suite: in-memory storage, no Redis, no CSRF."""

    TESTING = True
    DEBUG = False
    ENV = 'testing'
    WTF_CSRF_ENABLED = False
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ECHO = False
    CACHE_ENABLED = False
    BACKEND_BASE_URL = 'http://backend.test'
