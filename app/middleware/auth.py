import jwt
from jwt import PyJWKClient
from functools import wraps
from flask import request, jsonify, g, current_app
from app.extensions import db
from app.models.user_profile import UserProfile

# Module-level JWKS client (cached — avoids fetching keys on every request)
_jwks_client = None


def _get_jwks_client():
    global _jwks_client
    if _jwks_client is None:
        jwks_url = current_app.config['SUPABASE_URL'] + '/auth/v1/.well-known/jwks.json'
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True)
    return _jwks_client


def _decode_token(token):
    """Decode and verify a Supabase JWT.

    Projects with a legacy shared secret sign with HS256; everything else is
    verified against the JWKS endpoint (ES256).
    """
    secret = current_app.config.get('SUPABASE_JWT_SECRET')
    if secret:
        return jwt.decode(
            token,
            secret,
            algorithms=['HS256'],
            audience='authenticated'
        )
    client = _get_jwks_client()
    signing_key = client.get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=['ES256'],
        audience='authenticated'
    )


def require_auth(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        token = None
        auth_header = request.headers.get('Authorization', '')

        if auth_header.startswith('Bearer '):
            token = auth_header[7:]

        if not token:
            return jsonify({'error': 'Missing authorization token'}), 401

        try:
            payload = _decode_token(token)
        except jwt.ExpiredSignatureError:
            return jsonify({'error': 'Token expired'}), 401
        except jwt.InvalidTokenError:
            return jsonify({'error': 'Invalid token'}), 401

        user_id = payload.get('sub')
        if not user_id:
            return jsonify({'error': 'Invalid token payload'}), 401

        # Auto-create profile on first request
        profile = db.session.get(UserProfile, user_id)
        if not profile:
            email = payload.get('email', '')
            display_name = email.split('@')[0] if email else 'User'
            avatar_url = payload.get('user_metadata', {}).get('avatar_url')

            profile = UserProfile(
                id=user_id,
                display_name=display_name,
                avatar_url=avatar_url,
            )
            db.session.add(profile)
            db.session.commit()

        g.user_id = user_id
        g.user_profile = profile
        g.jwt_payload = payload

        return f(*args, **kwargs)
    return decorated


def require_owner(f):
    """Reject requests whose ``user_id`` disagrees with the token subject.

    Clients scope every call by user id; the row-level check here is what
    actually enforces it. Must be applied inside ``require_auth``.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        requested = request.args.get('user_id')
        if requested is None and request.is_json:
            body = request.get_json(silent=True) or {}
            requested = body.get('user_id')

        if requested is not None and requested != g.user_id:
            current_app.logger.warning(
                'Row-level policy violation: token user %s requested rows of %s',
                g.user_id, requested,
            )
            return jsonify({'error': 'Row-level security policy violation for table "bookmarks"'}), 403

        return f(*args, **kwargs)
    return decorated
