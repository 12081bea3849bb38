"""
Identity service - bearer token decoding and role capabilities.

Tokens are HS256 JWTs signed with JWT_SECRET_KEY; claims carry ``sub``
(user id) and ``role``. Role lookup beyond the token is out of scope.
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from flask import current_app

from consignment_ledger.exceptions import AuthError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str


def _secret_key() -> str:
    secret_key = current_app.config.get('JWT_SECRET_KEY')
    if not secret_key:
        raise ConfigurationError('JWT_SECRET_KEY non configurée', missing=['JWT_SECRET_KEY'])
    return secret_key


def resolve_bearer_token(token: Optional[str]) -> Identity:
    """
    Decode a bearer token into an Identity.

    Raises:
        ConfigurationError: JWT_SECRET_KEY is not set (checked first)
        AuthError: token missing, expired or invalid
    """
    secret_key = _secret_key()

    if not token:
        raise AuthError('Token manquant')

    try:
        payload = jwt.decode(token, secret_key, algorithms=[current_app.config.get('JWT_ALGORITHM', 'HS256')])
    except jwt.ExpiredSignatureError:
        logger.info("[AUTH] Expired bearer token")
        raise AuthError('Token expiré')
    except jwt.InvalidTokenError as e:
        logger.info(f"[AUTH] Invalid bearer token: {e}")
        raise AuthError('Token invalide')

    user_id = payload.get('sub')
    if not user_id:
        raise AuthError('Token invalide')

    role = str(payload.get('role') or current_app.config.get('DEFAULT_USER_ROLE', 'MAGASIN')).strip().upper()
    return Identity(user_id=str(user_id), role=role)


def token_from_header(header_value: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(' ')
    if scheme.lower() != 'bearer':
        return None
    return token.strip() or None


def _normalize_role(role) -> str:
    return str(role or '').strip().upper()


def can_view_consignments(role) -> bool:
    return _normalize_role(role) in current_app.config.get('CONSIGNMENT_VIEW_ROLES', ())


def can_view_vat(role) -> bool:
    """VAT and monetary fields are visible only to accounting-level roles."""
    return _normalize_role(role) in current_app.config.get('CONSIGNMENT_VAT_ROLES', ())


def can_record_moves(role) -> bool:
    return _normalize_role(role) not in current_app.config.get('CONSIGNMENT_MOVE_DENIED_ROLES', ())


def can_sync_billing(role) -> bool:
    return _normalize_role(role) in current_app.config.get('CONSIGNMENT_SYNC_ROLES', ())
