from flask import Blueprint, Response, request, jsonify, g, current_app
from app.extensions import db
from app.models.bookmark import Bookmark
from app.middleware.auth import require_auth, require_owner
from app.services.change_hub import hub, format_sse, EVENT_INSERT, EVENT_UPDATE, EVENT_DELETE
from app.services.validation import is_valid_url

bp = Blueprint('bookmarks', __name__, url_prefix='/api/bookmarks')

MAX_PAGE_SIZE = 100


def _bookmark_to_dict(bookmark):
    return {
        'id': bookmark.id,
        'user_id': bookmark.user_id,
        'title': bookmark.title,
        'url': bookmark.url,
        'created_at': bookmark.created_at.isoformat(),
        'updated_at': bookmark.updated_at.isoformat(),
    }


def _int_arg(name, default):
    value = request.args.get(name, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@bp.route('', methods=['GET'])
@require_auth
@require_owner
def list_bookmarks():
    """List one page of the caller's bookmarks, newest first.

    Query params:
        offset: rows to skip (default 0)
        limit: page size (default 10, max 100)

    The response carries the total matching count so clients can tell
    whether more pages exist.
    """
    offset = _int_arg('offset', 0)
    limit = _int_arg('limit', 10)
    if offset is None or limit is None or offset < 0 or limit < 1:
        return jsonify({'error': 'offset and limit must be non-negative integers'}), 400
    limit = min(limit, MAX_PAGE_SIZE)

    query = Bookmark.query.filter_by(user_id=g.user_id)
    total = query.count()
    rows = query.order_by(
        Bookmark.created_at.desc(), Bookmark.id.desc()
    ).offset(offset).limit(limit).all()

    return jsonify({
        'bookmarks': [_bookmark_to_dict(b) for b in rows],
        'count': total,
    })


@bp.route('', methods=['POST'])
@require_auth
@require_owner
def create_bookmark():
    """Save a bookmark for the caller. Server assigns id and timestamps."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body is required'}), 400

    title = (data.get('title') or '').strip()
    url = (data.get('url') or '').strip()
    if not title or not url:
        return jsonify({'error': 'title and url are required'}), 400
    if not is_valid_url(url):
        return jsonify({'error': 'url must be a valid absolute URL'}), 400

    bookmark = Bookmark(user_id=g.user_id, title=title, url=url)
    db.session.add(bookmark)
    db.session.commit()

    row = _bookmark_to_dict(bookmark)
    hub.publish(EVENT_INSERT, row)
    return jsonify({'bookmark': row}), 201


@bp.route('/<bookmark_id>', methods=['PATCH'])
@require_auth
@require_owner
def update_bookmark(bookmark_id):
    """Edit a bookmark's title and/or url."""
    bookmark = Bookmark.query.filter_by(id=bookmark_id, user_id=g.user_id).first()
    if not bookmark:
        return jsonify({'error': 'Bookmark not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body is required'}), 400

    if 'title' in data:
        title = (data['title'] or '').strip()
        if not title:
            return jsonify({'error': 'title must not be empty'}), 400
        bookmark.title = title
    if 'url' in data:
        url = (data['url'] or '').strip()
        if not is_valid_url(url):
            return jsonify({'error': 'url must be a valid absolute URL'}), 400
        bookmark.url = url

    db.session.commit()

    row = _bookmark_to_dict(bookmark)
    hub.publish(EVENT_UPDATE, row)
    return jsonify({'bookmark': row})


@bp.route('/<bookmark_id>', methods=['DELETE'])
@require_auth
@require_owner
def delete_bookmark(bookmark_id):
    """Remove a bookmark. Rows owned by other users are reported as missing."""
    bookmark = Bookmark.query.filter_by(id=bookmark_id, user_id=g.user_id).first()
    if not bookmark:
        return jsonify({'error': 'Bookmark not found'}), 404

    db.session.delete(bookmark)
    db.session.commit()

    hub.publish(EVENT_DELETE, {'id': bookmark_id, 'user_id': g.user_id})
    return jsonify({'ok': True})


@bp.route('/changes', methods=['GET'])
@require_auth
@require_owner
def stream_changes():
    """Push the caller's row changes as Server-Sent Events.

    Idle streams receive a comment line every CHANGE_FEED_HEARTBEAT seconds
    so proxies keep the connection open and dead clients are noticed.
    """
    heartbeat = current_app.config['CHANGE_FEED_HEARTBEAT']
    sub = hub.subscribe(g.user_id)
    current_app.logger.info('Change feed subscribed for user %s', g.user_id)

    def generate():
        try:
            yield ': connected\n\n'
            while True:
                change = sub.get(timeout=heartbeat)
                if change is None:
                    yield ': keep-alive\n\n'
                else:
                    yield format_sse(change)
        finally:
            sub.close()

    return Response(
        generate(),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )
