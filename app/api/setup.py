from flask import Blueprint, jsonify, current_app
from app.middleware.auth import require_auth
from app.services.schema import ensure_schema

bp = Blueprint('setup', __name__, url_prefix='/api')


@bp.route('/init-db', methods=['POST'])
@require_auth
def init_db():
    """Provision the bookmarks schema. Safe to call any number of times."""
    try:
        created = ensure_schema()
    except Exception:
        current_app.logger.exception('Schema initialization failed')
        return jsonify({'error': 'Initialization failed'}), 500

    if created:
        return jsonify({'success': True, 'message': 'Database initialized'})
    return jsonify({'success': True, 'message': 'Table exists'})
