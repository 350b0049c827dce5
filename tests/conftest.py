import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from app import create_app
from app.extensions import db as _db
from app.config import TestConfig
from app.sync.events import Bookmark

TEST_USER_ID = str(uuid.uuid4())
OTHER_USER_ID = str(uuid.uuid4())


def make_token(user_id=TEST_USER_ID, email='test@example.com', expires_in=3600):
    """Mint a Supabase-style access token signed with the test secret."""
    now = datetime.now(timezone.utc)
    payload = {
        'sub': user_id,
        'email': email,
        'aud': 'authenticated',
        'iat': now,
        'exp': now + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, TestConfig.SUPABASE_JWT_SECRET, algorithm='HS256')


def auth_headers(user_id=TEST_USER_ID):
    return {'Authorization': f'Bearer {make_token(user_id)}'}


def make_bookmark(index, user_id=TEST_USER_ID, **overrides):
    """Build a client-side Bookmark; higher index means newer."""
    created = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=index)
    fields = {
        'id': f'bm-{index}',
        'user_id': user_id,
        'title': f'Bookmark {index}',
        'url': f'https://example.com/{index}',
        'created_at': created,
        'updated_at': created,
    }
    fields.update(overrides)
    return Bookmark(**fields)


@pytest.fixture
def app():
    """Create a test Flask application with SQLite in-memory database."""
    application = create_app(TestConfig)

    with application.app_context():
        _db.create_all()

        yield application

        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    with app.test_client() as test_client:
        yield test_client
