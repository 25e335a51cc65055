"""
Supabase JWT Authentication for the Rubric Grader.

Requests without an Authorization header are served in guest mode: results
and sessions stay in local storage. A Bearer token must be a valid Supabase
JWT; the user id it carries switches persistence to the encrypted remote
store.
"""
import os
from dataclasses import dataclass
from typing import Optional

import jwt
from flask import request, jsonify, g, has_request_context


# Routes that don't require authentication
PUBLIC_EXACT = [
    '/api/status',
]


@dataclass(frozen=True)
class User:
    id: str
    email: str = ""


def get_jwt_secret():
    """
    The Supabase JWT secret. Only needed once a client sends a Bearer token;
    guests never reach this.
    """
    secret = os.getenv('SUPABASE_JWT_SECRET')
    if not secret:
        raise RuntimeError('SUPABASE_JWT_SECRET not configured')
    return secret


def validate_token(token):
    """
    Decode a signed-in teacher's token. The payload's sub becomes the owner
    id for encrypted results, saved sessions and the privacy key.

    Returns None for an expired, forged or foreign-audience token.
    """
    try:
        return jwt.decode(token, get_jwt_secret(), algorithms=['HS256'], audience='authenticated')
    except jwt.InvalidTokenError:
        return None


def is_public_route(path):
    """Check if a route is public (no auth required)."""
    return path in PUBLIC_EXACT


def init_auth(app):
    """
    Register the before_request auth hook on the Flask app.
    Call this BEFORE registering blueprints.
    """
    @app.before_request
    def check_auth():
        g.user_id = None
        g.user_email = ''

        # Skip non-API routes
        if not request.path.startswith('/api/'):
            return None

        if is_public_route(request.path):
            return None

        auth_header = request.headers.get('Authorization', '')
        if not auth_header:
            return None  # Guest mode

        if not auth_header.startswith('Bearer '):
            return jsonify({'error': 'Malformed Authorization header'}), 401

        token = auth_header[7:]  # Strip 'Bearer '
        payload = validate_token(token)
        if payload is None or not payload.get('sub'):
            return jsonify({'error': 'Invalid or expired token'}), 401

        g.user_id = payload.get('sub')
        g.user_email = payload.get('email', '')


# ══════════════════════════════════════════════════════════════
# AUTH STATUS PROVIDERS
# ══════════════════════════════════════════════════════════════

class AuthProvider:
    """Answers "who is grading right now?" - None means guest."""

    def get_current_user(self) -> Optional[User]:
        raise NotImplementedError


class RequestAuthProvider(AuthProvider):
    """Reads the user attached to the current Flask request by init_auth."""

    def get_current_user(self):
        if not has_request_context():
            return None
        user_id = getattr(g, 'user_id', None)
        if not user_id:
            return None
        return User(id=user_id, email=getattr(g, 'user_email', ''))


class StaticAuthProvider(AuthProvider):
    """Fixed user (or guest) for scripts and tests."""

    def __init__(self, user: Optional[User] = None):
        self.user = user

    def get_current_user(self):
        return self.user
