import time
import logging
import jwt
from sqlalchemy.exc import IntegrityError
from flask import current_app, request
from ..models import db, User

logger = logging.getLogger(__name__)


class Identity:
    __slots__ = ('user_id', 'email')

    def __init__(self, user_id, email):
        self.user_id = user_id
        self.email = email


def _bearer():
    auth = request.headers.get('Authorization', '')
    if not auth.startswith('Bearer '):
        return None
    return auth.split(' ', 1)[1].strip() or None


def decode_identity_jwt(token):
    pub = current_app.config.get('JWT_PUBLIC_KEY')
    alg = current_app.config.get('JWT_ALG', 'RS256')
    return jwt.decode(token, pub, algorithms=[alg], options={'require': ['sub', 'exp']})


def current_identity():
    """Signed-in user from the ``Authorization: Bearer`` JWT, or None."""
    token = _bearer()
    if not token:
        return None
    try:
        payload = decode_identity_jwt(token)
    except jwt.ExpiredSignatureError:
        logger.info('identity token expired')
        return None
    except jwt.InvalidTokenError as e:
        logger.info('identity token rejected: %s', e)
        return None
    return Identity(str(payload['sub']), (payload.get('email') or '').strip().lower() or None)


def get_or_create_user(identity: Identity) -> User:
    user = db.session.get(User, identity.user_id)
    if user is None:
        db.session.add(User(id=identity.user_id, email=identity.email))
        try:
            db.session.commit()
        except IntegrityError:
            # Another request for the same subject created it first.
            db.session.rollback()
        user = db.session.get(User, identity.user_id)
    elif identity.email and user.email != identity.email:
        user.email = identity.email
        db.session.commit()
    return user


# Used by tests and scripts to stand in for the identity provider.
def sign_identity_jwt(user_id: str, email: str | None = None, ttl: int = 3600) -> str:
    payload = {'sub': str(user_id), 'exp': int(time.time()) + ttl}
    if email:
        payload['email'] = email
    key = current_app.config['JWT_PRIVATE_KEY']
    return jwt.encode(payload, key, algorithm=current_app.config['JWT_ALG'])
