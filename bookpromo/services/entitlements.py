"""Entitlement resolution.

Folds a user's ACTIVE, unexpired entitlement rows and verified purchase
receipts into one fully populated :class:`EntitlementFlags`. Each flag is an
OR across every source that can grant it.
"""
import logging
from dataclasses import dataclass, asdict
from sqlalchemy import select, update, or_, exists
from ..errors import DownloadDenied
from ..models import (
    db, Entitlement, EntitlementStatus, EntitlementType, Receipt, ReceiptStatus, CodeType, utcnow,
)
from . import audit, tokens

logger = logging.getLogger(__name__)

# First entry is the entitlement's primary type.
CODE_BENEFITS = {
    CodeType.VIP_PREVIEW: (EntitlementType.EARLY_EXCERPT,),
    CodeType.VIP_BONUS: (EntitlementType.ENHANCED_BONUS,),
    CodeType.VIP_LAUNCH: (EntitlementType.LAUNCH_EVENT,),
    CodeType.PARTNER: (EntitlementType.BONUS_PACK, EntitlementType.BULK_DISCOUNT),
    CodeType.MEDIA: (EntitlementType.EARLY_EXCERPT, EntitlementType.PRIORITY_SUPPORT),
    CodeType.INFLUENCER: (EntitlementType.ENHANCED_BONUS, EntitlementType.PRIORITY_SUPPORT),
}

FLAG_SOURCES = {
    'has_excerpt': {EntitlementType.EARLY_EXCERPT},
    'has_agent_charter_pack': {EntitlementType.ENHANCED_BONUS, EntitlementType.BONUS_PACK},
    'has_launch_event': {EntitlementType.LAUNCH_EVENT},
    'has_priority_support': {EntitlementType.PRIORITY_SUPPORT},
    'has_bulk_discount': {EntitlementType.BULK_DISCOUNT},
}


def benefits_for(code_type: str) -> tuple:
    return CODE_BENEFITS[code_type]


@dataclass(frozen=True)
class EntitlementFlags:
    has_excerpt: bool
    has_agent_charter_pack: bool
    has_preordered: bool
    has_launch_event: bool
    has_priority_support: bool
    has_bulk_discount: bool

    def to_dict(self):
        return asdict(self)


NO_FLAGS = EntitlementFlags(False, False, False, False, False, False)


def _is_live(now):
    return (
        Entitlement.status == EntitlementStatus.ACTIVE,
        or_(Entitlement.expires_at.is_(None), Entitlement.expires_at > now),
    )


def _live(user_id, now):
    return (
        select(Entitlement)
        .where(Entitlement.user_id == user_id, *_is_live(now))
        .order_by(Entitlement.created_at, Entitlement.id)
    )


def active_entitlements(user_id, now=None) -> list[Entitlement]:
    if not user_id:
        return []
    return list(db.session.scalars(_live(user_id, now or utcnow())))


def resolve(user_id, now=None) -> EntitlementFlags:
    """Read-only flag aggregation for ``user_id``."""
    if not user_id:
        return NO_FLAGS
    now = now or utcnow()
    granted = set()
    for benefits in db.session.scalars(_live(user_id, now).with_only_columns(Entitlement.benefits)):
        granted.update(benefits or ())
    preordered = db.session.scalar(
        select(exists().where(Receipt.user_id == user_id, Receipt.status == ReceiptStatus.VERIFIED))
    )
    flags = {name: bool(granted & sources) for name, sources in FLAG_SOURCES.items()}
    return EntitlementFlags(has_preordered=bool(preordered), **flags)


def has_benefit(user_id, flag: str, now=None) -> bool:
    return getattr(resolve(user_id, now), flag)


def claim_grant_is_live(claim_id, now=None) -> bool:
    """True while the bonus claim still has an ACTIVE, unexpired entitlement."""
    now = now or utcnow()
    return bool(db.session.scalar(select(exists().where(Entitlement.claim_id == claim_id, *_is_live(now)))))


def excerpt_grant(user_id, now=None):
    """First live entitlement carrying EARLY_EXCERPT, or None."""
    for ent in active_entitlements(user_id, now):
        if EntitlementType.EARLY_EXCERPT in (ent.benefits or ()):
            return ent
    return None


def authorize_excerpt(token, now=None) -> Entitlement:
    """Excerpt token check plus the live state of the entitlement it was issued for.

    Raises ``tokens.TokenError`` or :class:`DownloadDenied`.
    """
    verified = tokens.verify_excerpt_token(token, now)
    ent = db.session.get(Entitlement, verified.claim_id, populate_existing=True)
    if (ent is None or ent.status != EntitlementStatus.ACTIVE
            or (ent.expires_at is not None and ent.expires_at <= utcnow())
            or EntitlementType.EARLY_EXCERPT not in (ent.benefits or ())):
        logger.warning('excerpt download refused for entitlement %s', verified.claim_id)
        raise DownloadDenied('ENTITLEMENT_REVOKED')
    return ent


def revoke_entitlement(entitlement_id, actor=None) -> bool:
    stmt = (
        update(Entitlement)
        .where(Entitlement.id == entitlement_id, Entitlement.status == EntitlementStatus.ACTIVE)
        .values(status=EntitlementStatus.REVOKED)
        .execution_options(synchronize_session=False)
    )
    changed = db.session.execute(stmt).rowcount == 1
    if changed:
        audit.record('entitlement_revoked', 'admin', actor, {'entitlement_id': entitlement_id})
    db.session.commit()
    return changed


def to_dict(ent: Entitlement) -> dict:
    return {
        'id': ent.id,
        'type': ent.type,
        'benefits': list(ent.benefits or ()),
        'status': ent.status,
        'code_id': ent.code_id,
        'claim_id': ent.claim_id,
        'expires_at': ent.expires_at.isoformat() if ent.expires_at else None,
        'created_at': ent.created_at.isoformat() if ent.created_at else None,
    }
