"""Bonus claim workflow: PENDING -> APPROVED -> DELIVERED, or -> REJECTED.

Every transition is a conditional UPDATE keyed on the current status, so two
reviewers acting at once cannot both move the same claim.
"""
import hashlib
import logging
import os
from sqlalchemy import update, select
from sqlalchemy.exc import IntegrityError
from werkzeug.utils import secure_filename
from ..models import (
    db, BonusClaim, ClaimStatus, Receipt, ReceiptStatus, Entitlement, EntitlementStatus,
    EntitlementType, utcnow,
)
from ..errors import DownloadDenied
from . import audit, entitlements, tokens

logger = logging.getLogger(__name__)


class ClaimError(Exception):
    code = 'claim_error'
    status = 400


class DuplicateReceipt(ClaimError):
    code = 'duplicate_receipt'
    status = 409


class ClaimNotFound(ClaimError):
    code = 'claim_not_found'
    status = 404


class ReceiptRejected(ClaimError):
    code = 'receipt_rejected'
    status = 409


class ClaimTransitionError(ClaimError):
    code = 'invalid_transition'
    status = 409

    def __init__(self, claim_id, current, target):
        super().__init__(f'claim {claim_id} cannot move from {current} to {target}')
        self.current = current
        self.target = target


def store_receipt(data: bytes, filename, digest, upload_dir) -> str:
    """Write receipt bytes under ``upload_dir``; returns the opaque storage ref."""
    name = secure_filename(filename or '') or 'receipt'
    ref = os.path.join(digest[:2], f"{digest}-{name}")
    path = os.path.join(upload_dir, ref)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)
    return ref


def submit_claim(user_id, email, receipt_file, upload_dir, retailer=None, order_number=None) -> BonusClaim:
    data = receipt_file.read()
    digest = hashlib.sha256(data).hexdigest()
    if db.session.scalar(select(Receipt.id).where(Receipt.file_hash == digest)):
        raise DuplicateReceipt('this receipt has already been submitted')

    file_ref = store_receipt(data, receipt_file.filename, digest, upload_dir)
    receipt = Receipt(user_id=user_id, retailer=retailer, order_number=order_number,
                      file_ref=file_ref, file_hash=digest, status=ReceiptStatus.PENDING)
    db.session.add(receipt)
    try:
        db.session.flush()
        claim = BonusClaim(user_id=user_id, delivery_email=email.strip().lower(), receipt_id=receipt.id,
                           retailer=retailer, order_number=order_number, status=ClaimStatus.PENDING)
        db.session.add(claim)
        db.session.flush()
        audit.record('bonus_claim_submitted', 'user', user_id, {'claim_id': claim.id, 'receipt_id': receipt.id})
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateReceipt('this receipt has already been submitted')
    logger.info('bonus claim %s submitted by %s', claim.id, user_id)
    return claim


def get_claim(claim_id) -> BonusClaim:
    claim = db.session.get(BonusClaim, claim_id, populate_existing=True)
    if claim is None:
        raise ClaimNotFound(f'claim {claim_id} not found')
    return claim


def _transition(claim_id, allowed_from, target, **values):
    stmt = (
        update(BonusClaim)
        .where(BonusClaim.id == claim_id, BonusClaim.status.in_(allowed_from))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount != 1:
        current = db.session.scalar(select(BonusClaim.status).where(BonusClaim.id == claim_id))
        db.session.rollback()
        if current is None:
            raise ClaimNotFound(f'claim {claim_id} not found')
        raise ClaimTransitionError(claim_id, current, target)


def approve(claim_id, reviewer, now=None) -> BonusClaim:
    now = now or utcnow()
    _transition(claim_id, (ClaimStatus.PENDING,), ClaimStatus.APPROVED, approved_at=now, reviewed_by=reviewer)
    try:
        claim = get_claim(claim_id)
        db.session.execute(
            update(Receipt)
            .where(Receipt.id == claim.receipt_id, Receipt.status == ReceiptStatus.PENDING)
            .values(status=ReceiptStatus.VERIFIED, verified_at=now, verified_by=reviewer)
            .execution_options(synchronize_session=False)
        )
        if db.session.scalar(select(Receipt.status).where(Receipt.id == claim.receipt_id)) == ReceiptStatus.REJECTED:
            raise ReceiptRejected(f'claim {claim_id} rests on a rejected receipt')
        db.session.add(Entitlement(
            user_id=claim.user_id, type=EntitlementType.BONUS_PACK, benefits=[EntitlementType.BONUS_PACK],
            status=EntitlementStatus.ACTIVE, claim_id=claim.id, created_at=now,
        ))
        audit.record('bonus_claim_approved', 'admin', reviewer, {'claim_id': claim_id})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info('bonus claim %s approved by %s', claim_id, reviewer)
    return claim


def reject(claim_id, reviewer, reason=None, now=None) -> BonusClaim:
    now = now or utcnow()
    _transition(claim_id, (ClaimStatus.PENDING, ClaimStatus.APPROVED), ClaimStatus.REJECTED,
                rejected_at=now, reviewed_by=reviewer, rejection_reason=reason)
    try:
        claim = get_claim(claim_id)
        db.session.execute(
            update(Receipt)
            .where(Receipt.id == claim.receipt_id,
                   Receipt.status.in_((ReceiptStatus.PENDING, ReceiptStatus.VERIFIED)))
            .values(status=ReceiptStatus.REJECTED, verified_by=reviewer, rejection_reason=reason)
            .execution_options(synchronize_session=False)
        )
        db.session.execute(
            update(Entitlement)
            .where(Entitlement.claim_id == claim_id, Entitlement.status == EntitlementStatus.ACTIVE)
            .values(status=EntitlementStatus.REVOKED)
            .execution_options(synchronize_session=False)
        )
        audit.record('bonus_claim_rejected', 'admin', reviewer, {'claim_id': claim_id, 'reason': reason})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info('bonus claim %s rejected by %s', claim_id, reviewer)
    return claim


def mark_delivered(claim_id, now=None) -> bool:
    """APPROVED -> DELIVERED. Returns False when already delivered."""
    now = now or utcnow()
    try:
        _transition(claim_id, (ClaimStatus.APPROVED,), ClaimStatus.DELIVERED, delivered_at=now)
    except ClaimTransitionError as e:
        if e.current == ClaimStatus.DELIVERED:
            return False
        raise
    db.session.execute(
        update(Entitlement)
        .where(Entitlement.claim_id == claim_id, Entitlement.fulfilled_at.is_(None))
        .values(fulfilled_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    logger.info('bonus claim %s delivered', claim_id)
    return True


def authorize_download(token, asset_id, now=None) -> BonusClaim:
    """Token check plus the claim's live status, its entitlement and delivery email.

    Raises ``tokens.TokenError`` or :class:`DownloadDenied`.
    """
    verified = tokens.verify_asset_token(token, asset_id, now)
    claim = db.session.get(BonusClaim, verified.claim_id, populate_existing=True)
    if claim is None:
        raise DownloadDenied('CLAIM_NOT_FOUND')
    if claim.status not in (ClaimStatus.APPROVED, ClaimStatus.DELIVERED):
        logger.warning('download refused for claim %s in status %s', claim.id, claim.status)
        raise DownloadDenied('CLAIM_NOT_APPROVED')
    if not entitlements.claim_grant_is_live(claim.id):
        logger.warning('download refused for claim %s: entitlement revoked', claim.id)
        raise DownloadDenied('ENTITLEMENT_REVOKED')
    if claim.delivery_email.lower() != verified.email.lower():
        logger.warning('download refused for claim %s: email mismatch', claim.id)
        raise DownloadDenied('EMAIL_MISMATCH')
    return claim


def _review_receipt(receipt_id, target, reviewer, reason=None):
    values = {'status': target, 'verified_by': reviewer}
    if target == ReceiptStatus.VERIFIED:
        values['verified_at'] = utcnow()
    else:
        values['rejection_reason'] = reason
    stmt = (
        update(Receipt)
        .where(Receipt.id == receipt_id, Receipt.status == ReceiptStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    changed = db.session.execute(stmt).rowcount == 1
    if changed:
        audit.record(f'receipt_{target.lower()}', 'admin', reviewer, {'receipt_id': receipt_id})
    db.session.commit()
    return changed


def verify_receipt(receipt_id, reviewer) -> bool:
    return _review_receipt(receipt_id, ReceiptStatus.VERIFIED, reviewer)


def reject_receipt(receipt_id, reviewer, reason=None) -> bool:
    return _review_receipt(receipt_id, ReceiptStatus.REJECTED, reviewer, reason)


def to_dict(claim: BonusClaim) -> dict:
    def ts(v):
        return v.isoformat() if v else None
    return {
        'id': claim.id,
        'status': claim.status,
        'delivery_email': claim.delivery_email,
        'retailer': claim.retailer,
        'order_number': claim.order_number,
        'receipt_id': claim.receipt_id,
        'created_at': ts(claim.created_at),
        'approved_at': ts(claim.approved_at),
        'rejected_at': ts(claim.rejected_at),
        'delivered_at': ts(claim.delivered_at),
    }
