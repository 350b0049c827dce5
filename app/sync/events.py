"""Bookmark rows and the change events that carry them.

The change feed and the broadcast relay deliver the same three kinds of
event. Both are decoded here into ``ChangeEvent`` so the controller has one
thing to reconcile.
"""

from dataclasses import dataclass, asdict
from datetime import datetime

from .errors import MalformedEvent

INSERT = 'INSERT'
UPDATE = 'UPDATE'
DELETE = 'DELETE'

EVENT_KINDS = (INSERT, UPDATE, DELETE)


def _parse_timestamp(value):
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Bookmark:
    id: str
    user_id: str
    title: str
    url: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> 'Bookmark':
        """Build a Bookmark from a store row.

        Raises:
            ValueError: if a required column is missing or a timestamp
            does not parse.
        """
        if not isinstance(row, dict):
            raise ValueError(f'expected a row object, got {type(row).__name__}')
        missing = [key for key in ('id', 'user_id', 'title', 'url') if not row.get(key)]
        if missing:
            raise ValueError(f"row is missing {', '.join(missing)}")
        return cls(
            id=str(row['id']),
            user_id=str(row['user_id']),
            title=row['title'],
            url=row['url'],
            created_at=_parse_timestamp(row.get('created_at')),
            updated_at=_parse_timestamp(row.get('updated_at')),
        )

    def to_row(self) -> dict:
        row = asdict(self)
        for key in ('created_at', 'updated_at'):
            if row[key] is not None:
                row[key] = row[key].isoformat()
        return row


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change.

    INSERT and UPDATE carry the full bookmark. DELETE may only know the id,
    and the owner when the source supplied it.
    """
    kind: str
    bookmark_id: str
    user_id: str | None = None
    bookmark: Bookmark | None = None
    source: str = ''


def parse_event(kind, row, source=''):
    """Decode ``(kind, row)`` into a ChangeEvent.

    Raises:
        MalformedEvent: unknown kind or unusable row.
    """
    if kind not in EVENT_KINDS:
        raise MalformedEvent(f'unknown event type {kind!r}')
    if not isinstance(row, dict):
        raise MalformedEvent(f'{kind} event without a row')

    if kind == DELETE:
        if not row.get('id'):
            raise MalformedEvent('DELETE event without an id')
        user_id = row.get('user_id')
        return ChangeEvent(
            kind=kind,
            bookmark_id=str(row['id']),
            user_id=str(user_id) if user_id else None,
            source=source,
        )

    try:
        bookmark = Bookmark.from_row(row)
    except ValueError as e:
        raise MalformedEvent(f'{kind} event: {e}') from e
    return ChangeEvent(
        kind=kind,
        bookmark_id=bookmark.id,
        user_id=bookmark.user_id,
        bookmark=bookmark,
        source=source,
    )


def parse_message(message, source='broadcast'):
    """Decode a relay message ``{'type': ..., 'bookmark': {...}}``."""
    if not isinstance(message, dict):
        raise MalformedEvent('message is not an object')
    return parse_event(message.get('type'), message.get('bookmark'), source=source)


def to_message(event: ChangeEvent) -> dict:
    """Encode a ChangeEvent as a relay message."""
    if event.bookmark is not None:
        row = event.bookmark.to_row()
    else:
        row = {'id': event.bookmark_id, 'user_id': event.user_id}
    return {'type': event.kind, 'bookmark': row}
