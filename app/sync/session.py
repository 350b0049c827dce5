"""Current signed-in identity for the sync client."""

import logging

import jwt

from .errors import AuthenticationRequired

logger = logging.getLogger(__name__)


def user_id_from_token(access_token):
    """Read the ``sub`` claim of a Supabase access token.

    The signature is not checked here; the store verifies every request.
    """
    try:
        claims = jwt.decode(access_token, options={'verify_signature': False})
    except jwt.InvalidTokenError as e:
        raise AuthenticationRequired(f'Invalid access token: {e}') from e
    user_id = claims.get('sub')
    if not user_id:
        raise AuthenticationRequired('Access token has no subject')
    return user_id, claims


class SessionContext:
    """Holds the access token and notifies listeners on identity changes.

    Listeners are called with the new user id (None after sign-out) only
    when the user actually changes; refreshing the token of the same user
    is silent.
    """

    def __init__(self):
        self.access_token = None
        self.user_id = None
        self.claims = {}
        self._listeners = []

    @property
    def is_authenticated(self):
        return self.user_id is not None

    def subscribe(self, listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def sign_in(self, access_token):
        user_id, claims = user_id_from_token(access_token)
        self.access_token = access_token
        self.claims = claims
        self._set_user(user_id)
        return user_id

    def sign_out(self):
        self.access_token = None
        self.claims = {}
        self._set_user(None)

    def _set_user(self, user_id):
        if user_id == self.user_id:
            return
        previous, self.user_id = self.user_id, user_id
        logger.info('Session user changed: %s -> %s', previous, user_id)
        for listener in list(self._listeners):
            try:
                listener(user_id)
            except Exception:
                logger.exception('Session listener failed')
