import logging
from dataclasses import dataclass
from datetime import datetime
from ..errors import RedemptionError, RedemptionFailure, MESSAGES
from ..models import db, Entitlement, EntitlementStatus, CodeStatus, utcnow
from . import audit, codes
from .entitlements import benefits_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionResult:
    ok: bool
    error: RedemptionError | None = None
    code_type: str | None = None
    benefits: tuple = ()
    expires_at: datetime | None = None
    entitlement_id: int | None = None

    @property
    def message(self):
        return MESSAGES[self.error] if self.error else None


def redeem(code_identity, user_identity, now=None) -> RedemptionResult:
    """Redeem ``code_identity`` for ``user_identity``.

    Every expected rejection comes back as ``RedemptionResult(ok=False)``.
    Database errors propagate.
    """
    now = now or utcnow()
    try:
        ent, code_type = _redeem(code_identity, user_identity, now)
    except RedemptionFailure as e:
        logger.info('redeem rejected user=%s code=%r: %s', user_identity, code_identity, e.error.value)
        return RedemptionResult(ok=False, error=e.error)
    logger.info('redeem ok user=%s type=%s entitlement=%s', user_identity, code_type, ent.id)
    return RedemptionResult(
        ok=True,
        code_type=code_type,
        benefits=tuple(ent.benefits),
        expires_at=ent.expires_at,
        entitlement_id=ent.id,
    )


def _redeem(code_identity, user_identity, now):
    if not user_identity:
        raise RedemptionFailure(RedemptionError.AUTHENTICATION_REQUIRED)

    identity = codes.normalize_code(code_identity)
    if not codes.is_valid_format(identity):
        raise RedemptionFailure(RedemptionError.INVALID_FORMAT)

    code = codes.lookup(identity)
    error = codes.classify(code, now)
    if error is RedemptionError.CODE_EXPIRED and code.status == CodeStatus.ACTIVE:
        if codes.expire_code(identity, now):
            db.session.commit()
    if error:
        raise RedemptionFailure(error)

    code_id, code_type = code.id, code.type
    try:
        if not codes.increment_redemption(identity, now):
            raise RedemptionFailure(RedemptionError.CODE_ALREADY_REDEEMED)
        benefits = benefits_for(code_type)
        ent = Entitlement(
            user_id=user_identity,
            type=benefits[0],
            benefits=list(benefits),
            status=EntitlementStatus.ACTIVE,
            code_id=code_id,
            created_at=now,
        )
        db.session.add(ent)
        audit.record('code_redeemed', 'user', user_identity, {'code': identity, 'type': code_type})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return ent, code_type
