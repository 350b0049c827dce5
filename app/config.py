import os
from dotenv import load_dotenv

load_dotenv()

def _fix_db_url(url):
    """Fix common DATABASE_URL issues for SQLAlchemy compatibility."""
    if not url:
        return 'sqlite:///bookmarks.db'
    # Supabase/Heroku use postgres:// but SQLAlchemy requires postgresql://
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    return url

class Config:
    SQLALCHEMY_DATABASE_URI = _fix_db_url(os.environ.get('DATABASE_URL', ''))
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SUPABASE_URL = os.environ.get('SUPABASE_URL', '')
    # When set, tokens are verified with this HS256 secret instead of JWKS
    SUPABASE_JWT_SECRET = os.environ.get('SUPABASE_JWT_SECRET', '')

    # Sync client settings
    STORE_URL = os.environ.get('STORE_URL', 'http://localhost:5000')
    STORE_REQUEST_TIMEOUT = int(os.environ.get('STORE_REQUEST_TIMEOUT', '15'))
    BOOKMARKS_PAGE_SIZE = int(os.environ.get('BOOKMARKS_PAGE_SIZE', '10'))
    BROADCAST_CHANNEL = os.environ.get('BROADCAST_CHANNEL', 'bookmarks')

    # Seconds between keep-alive comments on idle change streams
    CHANGE_FEED_HEARTBEAT = int(os.environ.get('CHANGE_FEED_HEARTBEAT', '15'))

class DevConfig(Config):
    DEBUG = True

class ProdConfig(Config):
    DEBUG = False

class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SUPABASE_JWT_SECRET = 'test-secret-key-that-is-long-enough-for-hs256'
    CHANGE_FEED_HEARTBEAT = 1
