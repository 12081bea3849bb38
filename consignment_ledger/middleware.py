"""Middleware for bearer authentication and consignment permissions."""
from functools import wraps
from flask import g, request

from consignment_ledger.exceptions import ForbiddenError
from consignment_ledger.services.identity_service import (
    resolve_bearer_token, token_from_header,
    can_view_consignments, can_view_vat, can_record_moves, can_sync_billing,
)


def load_identity():
    """
    Resolve the bearer token into g (Flask's per-request global).

    Sets g.identity, g.user_role and g.can_view_vat. Raises AuthError or
    ConfigurationError, rendered by the app error handler.
    """
    token = token_from_header(request.headers.get('Authorization'))
    identity = resolve_bearer_token(token)
    g.identity = identity
    g.user_role = identity.role
    g.can_view_vat = can_view_vat(identity.role)
    return identity


def require_consignment_access(f):
    """
    Decorator: Require a valid bearer token with a consignment viewing role.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        identity = load_identity()
        if not can_view_consignments(identity.role):
            raise ForbiddenError('Accès aux dépôts-ventes refusé')
        return f(*args, **kwargs)

    return decorated_function


def require_move_permission(f):
    """
    Decorator: Require a valid bearer token whose role may record moves.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        identity = load_identity()
        if not can_record_moves(identity.role):
            raise ForbiddenError('Mouvement de dépôt-vente refusé pour ce rôle')
        return f(*args, **kwargs)

    return decorated_function


def require_billing_sync(f):
    """
    Decorator: Require a valid bearer token whose role may sync invoice moves.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        identity = load_identity()
        if not can_sync_billing(identity.role):
            raise ForbiddenError('Synchronisation des factures réservée aux administrateurs')
        return f(*args, **kwargs)

    return decorated_function
