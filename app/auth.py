# app/auth.py - Bearer token authentication and the per-request context

from datetime import datetime, timedelta, timezone
from flask import current_app
from flask_login import LoginManager, UserMixin, current_user
from app.errors import AuthenticationError, ForbiddenError
import jwt
import logging

logger = logging.getLogger(__name__)

# HS256 keys shorter than the digest size are rejected outside development
MIN_SIGNING_KEY_BYTES = 32


class RequestContext(UserMixin):
    """
    Who is calling and what they may do.

    Built once per request from the bearer token and the member row, then
    passed explicitly into every service call.
    """

    def __init__(self, family_id, user_id, role, permissions):
        self.family_id = family_id
        self.user_id = user_id
        self.role = role
        self.permissions = dict(permissions)

    @classmethod
    def for_member(cls, member):
        return cls(member.family_id, member.id, member.role, member.get_permissions())

    def get_id(self):
        return str(self.user_id)

    def can(self, flag):
        return bool(self.permissions.get(flag))

    def require(self, flag):
        if not self.can(flag):
            logger.warning(f"[FORBIDDEN] Member {self.user_id} ({self.role}) lacks {flag}")
            raise ForbiddenError(f"Your role does not allow this action ({flag})")

    def __repr__(self):
        return f'<RequestContext family={self.family_id} user={self.user_id} role={self.role}>'


def create_access_token(member, expires_minutes=None):
    """Issue a signed token for a family member (used by tooling and tests)"""
    if expires_minutes is None:
        expires_minutes = current_app.config['JWT_EXPIRES_MINUTES']
    now = datetime.now(timezone.utc)
    payload = {
        'familyId': member.family_id,
        'userId': member.id,
        'role': member.role,
        'iat': now,
        'exp': now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload,
                      current_app.config['JWT_SECRET_KEY'],
                      algorithm=current_app.config['JWT_ALGORITHM'])


def decode_access_token(token):
    """Verify signature and expiry, return the claims"""
    try:
        claims = jwt.decode(
            token,
            current_app.config['JWT_SECRET_KEY'],
            algorithms=[current_app.config['JWT_ALGORITHM']],
            options={'require': ['exp', 'familyId', 'userId']},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError('Token has expired', code='TOKEN_EXPIRED')
    except jwt.InvalidTokenError as e:
        logger.info(f"[AUTH] Rejected token: {e}")
        raise AuthenticationError('Invalid authentication token', code='INVALID_TOKEN')

    if not isinstance(claims.get('familyId'), int) or not isinstance(claims.get('userId'), int):
        raise AuthenticationError('Invalid authentication token', code='INVALID_TOKEN')
    return claims


def _load_context_from_request(request):
    header = request.headers.get('Authorization')
    if not header:
        return None

    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != 'bearer':
        raise AuthenticationError('Authorization header must be "Bearer <token>"', code='INVALID_TOKEN')

    claims = decode_access_token(parts[1])

    from models import FamilyMember
    member = FamilyMember.query.filter_by(
        id=claims['userId'],
        family_id=claims['familyId'],
        is_active=True
    ).first()
    if not member:
        logger.warning(f"[AUTH] No active member {claims['userId']} in family {claims['familyId']}")
        raise AuthenticationError('Invalid authentication token', code='INVALID_TOKEN')

    # The stored role wins over whatever the token claims
    if claims.get('role') != member.role:
        logger.info(f"[AUTH] Token role {claims.get('role')} differs from stored role {member.role} for member {member.id}")

    return RequestContext.for_member(member)


def check_signing_key(app):
    key = app.config.get('JWT_SECRET_KEY') or ''
    if len(key.encode()) >= MIN_SIGNING_KEY_BYTES:
        return
    if app.config.get('IS_DEVELOPMENT') or app.testing:
        logger.warning(f"[AUTH] JWT_SECRET_KEY is shorter than {MIN_SIGNING_KEY_BYTES} bytes")
        return
    raise RuntimeError(f"JWT_SECRET_KEY must be set to at least {MIN_SIGNING_KEY_BYTES} bytes outside development")


def init_login_manager(app):
    """Initialize Flask-Login for stateless bearer tokens"""
    check_signing_key(app)
    login_manager = LoginManager()
    login_manager.init_app(app)
    login_manager.session_protection = None

    @login_manager.request_loader
    def load_user_from_request(request):
        return _load_context_from_request(request)

    @login_manager.unauthorized_handler
    def unauthorized():
        raise AuthenticationError('Authentication required')

    return login_manager


def get_request_context():
    """The authenticated RequestContext behind current_user"""
    return current_user._get_current_object()
