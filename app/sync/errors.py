"""Failure taxonomy for the sync client.

Every failure a user can see maps to one of these classes. Each carries the
human-readable message shown to the user as ``str(exc)``.
"""

FILL_ALL_FIELDS = 'Please fill in all fields'
INVALID_URL = 'Please enter a valid URL'
LOGIN_REQUIRED = 'You must be logged in to add bookmarks'
NOT_AUTHENTICATED = 'Not authenticated'
NETWORK_ERROR = 'Network error - check your connection'
DATABASE_NOT_READY = 'Database not ready. Please refresh and try again.'
READ_POLICY_ERROR = (
    'Row-level security policy blocked access to your bookmarks. '
    'Check that the store allows users to read their own rows.'
)


class SyncError(Exception):
    """Base class for failures reported by the sync client."""


class ValidationError(SyncError):
    """Input rejected before any remote call."""


class AuthenticationRequired(SyncError):
    """No signed-in user."""


class RemoteFailure(SyncError):
    """The store answered but refused the operation."""

    def __init__(self, detail, status_code=None, policy_violation=False):
        self.detail = detail
        self.status_code = status_code
        self.policy_violation = policy_violation
        super().__init__(detail)

    @property
    def missing_relation(self):
        """True when the store reports the bookmarks table itself is absent."""
        text = (self.detail or '').lower()
        return 'relation' in text or 'no such table' in text


class NetworkFailure(SyncError):
    """The request never completed."""

    def __init__(self, detail=NETWORK_ERROR):
        self.detail = detail
        super().__init__(NETWORK_ERROR)


class MalformedEvent(SyncError):
    """A change payload that cannot be applied."""


def read_error_message(exc):
    """Message shown when a page fetch fails."""
    if isinstance(exc, RemoteFailure):
        if exc.policy_violation:
            return READ_POLICY_ERROR
        return f'Failed to load bookmarks: {exc.detail}'
    if isinstance(exc, NetworkFailure):
        return NETWORK_ERROR
    return str(exc)


def insert_error_message(exc):
    """Message shown when adding a bookmark fails."""
    if isinstance(exc, RemoteFailure):
        if exc.missing_relation:
            return DATABASE_NOT_READY
        return f'Failed to add bookmark: {exc.detail}'
    return str(exc)


def delete_error_message(exc):
    if isinstance(exc, RemoteFailure):
        return exc.detail or 'Delete failed (check row-level policies)'
    return str(exc)
