"""User selection routes and the current-user lookup shared by the API handlers."""
from flask import jsonify, request, session

from models import db, User


def get_current_user():
    """Resolve the current user from the X-User-Id header, else fall back to session."""
    api_user_id = request.headers.get('X-User-Id')
    if api_user_id:
        try:
            api_uid_int = int(api_user_id)
        except (TypeError, ValueError):
            api_uid_int = None
        if api_uid_int:
            user = db.session.get(User, api_uid_int)
            if user:
                return user

    user_id = session.get('user_id')
    if user_id:
        return db.session.get(User, user_id)
    return None


def set_user(user_id):
    user = db.get_or_404(User, user_id)
    session['user_id'] = user.id
    session.permanent = True
    return jsonify({'success': True, 'username': user.username, 'user_id': user.id})


def current_user():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    return jsonify(user.to_dict())
