"""HTTP client for the bookmark collection store.

Thin adapter: every call is scoped by user id (the store enforces the same
boundary with row-level checks) and every failure is raised as a
``RemoteFailure`` or ``NetworkFailure``.
"""

import logging
from dataclasses import dataclass

import requests

from .errors import RemoteFailure, NetworkFailure
from .events import Bookmark

logger = logging.getLogger(__name__)


@dataclass
class Page:
    rows: list
    total_count: int | None


class RemoteStoreClient:

    def __init__(self, base_url, token_provider=None, timeout=15, session=None):
        """
        Args:
            base_url: root URL of the collection store.
            token_provider: zero-argument callable returning the current
                access token (or None). Read on every request so token
                refreshes apply without rebuilding the client.
            timeout: connect/read timeout in seconds.
            session: optional ``requests.Session`` to reuse.
        """
        self.base_url = base_url.rstrip('/')
        self.token_provider = token_provider or (lambda: None)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})

    @classmethod
    def from_config(cls, config, session_context):
        return cls(
            config.STORE_URL,
            token_provider=lambda: session_context.access_token,
            timeout=config.STORE_REQUEST_TIMEOUT,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _auth_headers(self):
        token = self.token_provider()
        return {'Authorization': f'Bearer {token}'} if token else {}

    def _request(self, method, path, **kwargs):
        url = f'{self.base_url}{path}'
        kwargs.setdefault('timeout', self.timeout)
        kwargs['headers'] = {**self._auth_headers(), **kwargs.get('headers', {})}
        try:
            resp = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            logger.warning('%s %s failed: %s', method, path, e)
            raise NetworkFailure(str(e)) from e

        if resp.status_code >= 400:
            try:
                detail = resp.json().get('error') or resp.reason
            except ValueError:
                detail = resp.text or resp.reason
            logger.warning('%s %s rejected (%s): %s', method, path, resp.status_code, detail)
            raise RemoteFailure(
                detail,
                status_code=resp.status_code,
                policy_violation=resp.status_code == 403,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise RemoteFailure('Store returned a non-JSON response', status_code=resp.status_code) from e

    @staticmethod
    def _bookmark(payload):
        try:
            return Bookmark.from_row(payload.get('bookmark'))
        except (AttributeError, ValueError) as e:
            raise RemoteFailure(f'Malformed bookmark in response: {e}') from e

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def list_page(self, user_id, offset, limit) -> Page:
        """Fetch rows ``[offset, offset + limit)`` of the user's bookmarks, newest first."""
        payload = self._request('GET', '/api/bookmarks', params={
            'user_id': user_id,
            'offset': offset,
            'limit': limit,
        })
        try:
            rows = [Bookmark.from_row(r) for r in payload.get('bookmarks', [])]
            total = payload.get('count')
            total = int(total) if total is not None else None
        except (AttributeError, TypeError, ValueError) as e:
            raise RemoteFailure(f'Malformed bookmark page in response: {e}') from e
        return Page(rows=rows, total_count=total)

    def insert(self, user_id, title, url) -> Bookmark:
        payload = self._request('POST', '/api/bookmarks', json={
            'user_id': user_id,
            'title': title,
            'url': url,
        })
        return self._bookmark(payload)

    def update(self, bookmark_id, user_id, title=None, url=None) -> Bookmark:
        body = {'user_id': user_id}
        if title is not None:
            body['title'] = title
        if url is not None:
            body['url'] = url
        payload = self._request('PATCH', f'/api/bookmarks/{bookmark_id}', json=body)
        return self._bookmark(payload)

    def delete(self, bookmark_id, user_id) -> None:
        self._request('DELETE', f'/api/bookmarks/{bookmark_id}', params={'user_id': user_id})

    def initialize_schema(self) -> dict:
        return self._request('POST', '/api/init-db')

    def open_change_stream(self, user_id):
        """Open the raw SSE response for the user's change feed.

        No read timeout: the stream stays open until closed.
        """
        url = f'{self.base_url}/api/bookmarks/changes'
        try:
            resp = self.session.get(
                url,
                params={'user_id': user_id},
                headers={**self._auth_headers(), 'Accept': 'text/event-stream'},
                stream=True,
                timeout=(self.timeout, None),
            )
        except requests.RequestException as e:
            raise NetworkFailure(str(e)) from e
        if resp.status_code >= 400:
            detail = resp.reason
            resp.close()
            raise RemoteFailure(
                detail,
                status_code=resp.status_code,
                policy_violation=resp.status_code == 403,
            )
        return resp
