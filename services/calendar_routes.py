"""Calendar window route: single events and recurring occurrences in one ordered list."""
from flask import current_app, jsonify, request

from backend.occurrences import occurrences_in_window
from backend.store import CalendarStore, StoreError
from services.user_routes import get_current_user
from services.validation_service import parse_window


def api_calendar_occurrences():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    default_tz = current_app.config.get('DEFAULT_TIMEZONE', 'UTC')
    start, end, error = parse_window(
        request.args.get('start'),
        request.args.get('end'),
        request.args.get('tz') or default_tz
    )
    if error:
        return jsonify({'error': error}), 400

    store = CalendarStore(default_timezone=default_tz)
    try:
        occurrences = occurrences_in_window(store, user.id, start, end)
    except StoreError as e:
        current_app.logger.error(f"Error loading calendar window for user {user.id}: {e}")
        return jsonify({'error': 'Calendar unavailable'}), 503

    return jsonify({
        'start': start.isoformat(),
        'end': end.isoformat(),
        'count': len(occurrences),
        'occurrences': [occ.to_dict() for occ in occurrences]
    })
