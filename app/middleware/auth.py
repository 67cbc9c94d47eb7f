"""
Request authentication for the settlement API.

Sessions and sign-in live in the upstream auth layer, which forwards the
authenticated identity in headers:

    X-User-Id     numeric user id (required)
    X-User-Email  email, used to provision the user on first sight
    X-User-Role   'staff' for café staff, otherwise customer
"""
from functools import wraps

from flask import current_app, g, request

from ..extensions import db
from ..models.user import User
from ..utils.errors import forbidden, unauthorized


def get_user_from_request() -> User | None:
    """
    Resolve the forwarded identity to a User row.

    Unknown ids are provisioned when an email is supplied.

    Returns:
        User or None
    """
    raw_id = request.headers.get('X-User-Id')
    if not raw_id:
        return None
    try:
        user_id = int(raw_id)
    except (TypeError, ValueError):
        return None

    user = db.session.get(User, user_id)
    role = (request.headers.get('X-User-Role') or 'customer').lower()

    if user is None:
        email = request.headers.get('X-User-Email')
        if not email:
            return None
        user = User(id=user_id, email=email.strip().lower(), role=role, points=0)
        db.session.add(user)
        db.session.commit()
        current_app.logger.info(f'[Auth] Provisioned user {user_id} ({user.email})')
    elif user.role != role:
        user.role = role
        db.session.commit()

    return user


def require_user(f):
    """
    Decorator to require an authenticated user.

    Sets g.user and g.user_id.

    Usage:
        @require_user
        def my_endpoint():
            user_id = g.user_id
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_user_from_request()
        if user is None:
            return unauthorized()
        g.user = user
        g.user_id = user.id
        g.is_staff = user.is_staff
        return f(*args, **kwargs)

    return decorated_function


def require_staff(f):
    """Like require_user, and the user must be café staff."""
    @wraps(f)
    @require_user
    def decorated_function(*args, **kwargs):
        if not g.is_staff:
            return forbidden('Staff access required')
        return f(*args, **kwargs)

    return decorated_function
