from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy


def utcnow():
    # Naive UTC throughout; SQLite drops tzinfo anyway.
    return datetime.now(timezone.utc).replace(tzinfo=None)

db = SQLAlchemy()


class CodeType:
    VIP_PREVIEW = 'VIP_PREVIEW'
    VIP_BONUS = 'VIP_BONUS'
    VIP_LAUNCH = 'VIP_LAUNCH'
    PARTNER = 'PARTNER'
    MEDIA = 'MEDIA'
    INFLUENCER = 'INFLUENCER'

    ALL = (VIP_PREVIEW, VIP_BONUS, VIP_LAUNCH, PARTNER, MEDIA, INFLUENCER)


class CodeStatus:
    ACTIVE = 'ACTIVE'
    REDEEMED = 'REDEEMED'
    EXPIRED = 'EXPIRED'
    REVOKED = 'REVOKED'

    ALL = (ACTIVE, REDEEMED, EXPIRED, REVOKED)


class EntitlementType:
    EARLY_EXCERPT = 'EARLY_EXCERPT'
    ENHANCED_BONUS = 'ENHANCED_BONUS'
    LAUNCH_EVENT = 'LAUNCH_EVENT'
    BONUS_PACK = 'BONUS_PACK'
    BULK_DISCOUNT = 'BULK_DISCOUNT'
    PRIORITY_SUPPORT = 'PRIORITY_SUPPORT'


class EntitlementStatus:
    ACTIVE = 'ACTIVE'
    EXPIRED = 'EXPIRED'
    REVOKED = 'REVOKED'


class ClaimStatus:
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    DELIVERED = 'DELIVERED'


class ReceiptStatus:
    PENDING = 'PENDING'
    VERIFIED = 'VERIFIED'
    REJECTED = 'REJECTED'
    DUPLICATE = 'DUPLICATE'


class User(db.Model):
    id = db.Column(db.String(64), primary_key=True)
    email = db.Column(db.String(255), index=True)
    name = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)


class Org(db.Model):
    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(32), default='PARTNER')  # PARTNER|MEDIA|ACADEMIC|CORPORATE
    created_at = db.Column(db.DateTime, default=utcnow)


class Code(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), nullable=False, unique=True, index=True)
    type = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=CodeStatus.ACTIVE, index=True)
    description = db.Column(db.Text)
    max_redemptions = db.Column(db.Integer)  # None = unlimited
    redemption_count = db.Column(db.Integer, nullable=False, default=0)
    valid_from = db.Column(db.DateTime, nullable=False, default=utcnow)
    valid_until = db.Column(db.DateTime)  # None = no expiry
    org_id = db.Column(db.String(64), db.ForeignKey('org.id'))
    created_by = db.Column(db.String(128))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.CheckConstraint(
            'max_redemptions IS NULL OR redemption_count <= max_redemptions',
            name='ck_code_redemption_ceiling',
        ),
    )

    @property
    def redemptions_remaining(self):
        if self.max_redemptions is None:
            return None
        return max(0, self.max_redemptions - (self.redemption_count or 0))


class Entitlement(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False, index=True)
    type = db.Column(db.String(32), nullable=False)
    benefits = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(16), nullable=False, default=EntitlementStatus.ACTIVE)
    code_id = db.Column(db.Integer, db.ForeignKey('code.id'), index=True)
    claim_id = db.Column(db.Integer, db.ForeignKey('bonus_claim.id'), index=True)
    expires_at = db.Column(db.DateTime)
    fulfilled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)


class Receipt(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False, index=True)
    retailer = db.Column(db.String(64))
    order_number = db.Column(db.String(128))
    file_ref = db.Column(db.Text, nullable=False)
    file_hash = db.Column(db.String(64), unique=True)
    status = db.Column(db.String(16), nullable=False, default=ReceiptStatus.PENDING)
    verified_at = db.Column(db.DateTime)
    verified_by = db.Column(db.String(128))
    rejection_reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)


class BonusClaim(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False, index=True)
    delivery_email = db.Column(db.String(255), nullable=False)
    receipt_id = db.Column(db.Integer, db.ForeignKey('receipt.id'), nullable=False, unique=True)
    retailer = db.Column(db.String(64))
    order_number = db.Column(db.String(128))
    status = db.Column(db.String(16), nullable=False, default=ClaimStatus.PENDING, index=True)
    reviewed_by = db.Column(db.String(128))
    rejection_reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)
    approved_at = db.Column(db.DateTime)
    rejected_at = db.Column(db.DateTime)
    delivered_at = db.Column(db.DateTime)

    receipt = db.relationship('Receipt')


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    ts = db.Column(db.DateTime, default=utcnow)
    actor_type = db.Column(db.String(32))
    actor_id = db.Column(db.String(64))
    event_type = db.Column(db.String(64))
    payload_json = db.Column(db.JSON)
