"""Middleware for customer identity."""
import hashlib
from functools import wraps
from flask import session, g, jsonify


def customer_key_for_email(email: str) -> str:
    """Stable key for a guest customer; the address itself is never stored."""
    digest = hashlib.sha256(email.strip().lower().encode('utf-8')).hexdigest()
    return f"email:{digest}"


def load_customer():
    """
    Load the current customer key into g.

    Signed-in customers are keyed by user id, guests by the hash of the email
    they entered at checkout. Sets g.customer_key to None when neither is known.
    """
    g.customer_key = None

    user_id = session.get('user_id')
    if user_id:
        g.customer_key = f"user:{user_id}"
        return

    guest_email = session.get('guest_email')
    if guest_email:
        g.customer_key = customer_key_for_email(guest_email)


def require_customer(f):
    """
    Decorator: Require a known customer.

    Returns a 401 JSON response when the request carries no identity.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('customer_key') is None:
            return jsonify({'status': 'error', 'message': 'Sign in or enter an email to continue'}), 401
        return f(*args, **kwargs)
    return decorated_function
