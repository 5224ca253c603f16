"""VIP code store.

Codes are short, human-enterable identities drawn from an alphabet without
the look-alike characters 0/O and 1/I. The only path that changes a code's
redemption counter is :func:`increment_redemption`, a single conditional
UPDATE, so concurrent redeemers cannot push a code past its ceiling.
"""
import csv
import io
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from sqlalchemy import update, select, func, or_, and_, case
from sqlalchemy.exc import IntegrityError
from ..errors import RedemptionError
from ..models import db, Code, CodeType, CodeStatus, utcnow
from . import audit

logger = logging.getLogger(__name__)

CODE_CHARS = '23456789ABCDEFGHJKLMNPQRSTUVWXYZ'
CODE_LENGTH = 6
MAX_BATCH = 10000
_FORMAT_RE = re.compile(r'^[A-Z0-9]{%d}$' % CODE_LENGTH)
_LOOKUP_CHUNK = 500


class GenerationError(ValueError):
    pass


class CodeSpaceExhausted(GenerationError):
    pass


def normalize_code(raw) -> str:
    if raw is None:
        return ''
    return re.sub(r'[\s-]', '', str(raw)).upper()


def is_valid_format(code: str) -> bool:
    return bool(_FORMAT_RE.match(code or ''))


def format_code(code: str, separator='-') -> str:
    if len(code) == CODE_LENGTH:
        return f"{code[:3]}{separator}{code[3:]}"
    return code


def parse_timestamp(value):
    """Parse an ISO-8601 date or timestamp into naive UTC; None passes through."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def random_code(length=CODE_LENGTH) -> str:
    return ''.join(secrets.choice(CODE_CHARS) for _ in range(length))


def _existing(candidates) -> set:
    taken = set()
    for i in range(0, len(candidates), _LOOKUP_CHUNK):
        chunk = candidates[i:i + _LOOKUP_CHUNK]
        taken.update(db.session.scalars(select(Code.code).where(Code.code.in_(chunk))))
    return taken


def _fresh_code(seen: set, max_attempts=10) -> str:
    for _ in range(max_attempts):
        candidate = random_code()
        if candidate in seen:
            continue
        if not _existing([candidate]):
            seen.add(candidate)
            return candidate
    raise CodeSpaceExhausted(f'no unique code after {max_attempts} attempts')


def _unique_candidates(count: int) -> list[str]:
    batch = set()
    while len(batch) < count:
        batch.add(random_code())
    batch = list(batch)
    taken = _existing(batch)
    final = [c for c in batch if c not in taken]
    seen = set(final)
    for _ in range(len(batch) - len(final)):
        final.append(_fresh_code(seen))
    if taken:
        logger.info('regenerated %d colliding codes', len(taken))
    return final


def generate(count, code_type, max_redemptions=1, valid_until=None, description=None,
             valid_from=None, org_id=None, created_by=None, insert_attempts=3) -> list[Code]:
    """Create ``count`` new ACTIVE codes in one transaction."""
    try:
        count = int(count)
    except (TypeError, ValueError):
        raise GenerationError('count must be an integer')
    if count < 1 or count > MAX_BATCH:
        raise GenerationError(f'count must be between 1 and {MAX_BATCH}')
    if code_type not in CodeType.ALL:
        raise GenerationError(f"type must be one of {', '.join(CodeType.ALL)}")
    if max_redemptions is not None:
        try:
            max_redemptions = int(max_redemptions)
        except (TypeError, ValueError):
            raise GenerationError('max_redemptions must be an integer')
        if max_redemptions < 1:
            raise GenerationError('max_redemptions must be at least 1')
    try:
        valid_from = parse_timestamp(valid_from) or utcnow()
        valid_until = parse_timestamp(valid_until)
    except ValueError:
        raise GenerationError('dates must be ISO-8601')
    if valid_until is not None and valid_until <= valid_from:
        raise GenerationError('valid_until must be after valid_from')

    for attempt in range(1, insert_attempts + 1):
        identities = _unique_candidates(count)
        now = utcnow()
        codes = [
            Code(code=identity, type=code_type, status=CodeStatus.ACTIVE, description=description,
                 max_redemptions=max_redemptions, redemption_count=0, valid_from=valid_from,
                 valid_until=valid_until, org_id=org_id, created_by=created_by,
                 created_at=now, updated_at=now)
            for identity in identities
        ]
        db.session.add_all(codes)
        audit.record('codes_generated', 'admin', created_by, {
            'count': count, 'type': code_type, 'max_redemptions': max_redemptions,
            'valid_until': valid_until.isoformat() if valid_until else None,
        })
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent generator took one of our identities between check and insert.
            db.session.rollback()
            logger.warning('code batch collided on insert (attempt %d/%d)', attempt, insert_attempts)
            if attempt == insert_attempts:
                raise
            continue
        logger.info('generated %d %s codes', count, code_type)
        return codes


def lookup(identity) -> Code | None:
    code = normalize_code(identity)
    if not code:
        return None
    return db.session.scalar(select(Code).where(Code.code == code))


def classify(code: Code | None, now=None) -> RedemptionError | None:
    """Why ``code`` cannot be redeemed right now, or None if it can."""
    now = now or utcnow()
    if code is None or code.status == CodeStatus.REVOKED:
        return RedemptionError.CODE_INVALID
    if code.valid_from and code.valid_from > now:
        return RedemptionError.CODE_INVALID
    if code.status == CodeStatus.EXPIRED or (code.valid_until is not None and code.valid_until <= now):
        return RedemptionError.CODE_EXPIRED
    if code.status == CodeStatus.REDEEMED:
        return RedemptionError.CODE_ALREADY_REDEEMED
    if code.max_redemptions is not None and code.redemption_count >= code.max_redemptions:
        return RedemptionError.CODE_ALREADY_REDEEMED
    return None


def increment_redemption(identity, now=None) -> bool:
    """Atomically consume one redemption of ``identity``.

    Returns False when the guarded UPDATE matched no row: the code is gone,
    not ACTIVE, outside its window, or at its ceiling (including a race lost
    to another redeemer). Does not commit.
    """
    now = now or utcnow()
    new_count = Code.redemption_count + 1
    stmt = (
        update(Code)
        .where(
            Code.code == normalize_code(identity),
            Code.status == CodeStatus.ACTIVE,
            Code.valid_from <= now,
            or_(Code.valid_until.is_(None), Code.valid_until > now),
            or_(Code.max_redemptions.is_(None), Code.redemption_count < Code.max_redemptions),
        )
        .values(
            redemption_count=new_count,
            status=case(
                (and_(Code.max_redemptions.is_not(None), new_count >= Code.max_redemptions), CodeStatus.REDEEMED),
                else_=Code.status,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def expire_code(identity, now=None) -> bool:
    now = now or utcnow()
    stmt = (
        update(Code)
        .where(Code.code == normalize_code(identity), Code.status == CodeStatus.ACTIVE,
               Code.valid_until.is_not(None), Code.valid_until <= now)
        .values(status=CodeStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def expire_stale_codes(now=None) -> int:
    now = now or utcnow()
    stmt = (
        update(Code)
        .where(Code.status == CodeStatus.ACTIVE, Code.valid_until.is_not(None), Code.valid_until <= now)
        .values(status=CodeStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    expired = db.session.execute(stmt).rowcount
    db.session.commit()
    if expired:
        logger.info('expired %d stale codes', expired)
    return expired


def revoke(identity, actor=None) -> Code | None:
    code = normalize_code(identity)
    stmt = (
        update(Code)
        .where(Code.code == code, Code.status.in_((CodeStatus.ACTIVE, CodeStatus.REDEEMED)))
        .values(status=CodeStatus.REVOKED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount:
        audit.record('code_revoked', 'admin', actor, {'code': code})
    db.session.commit()
    return db.session.scalar(select(Code).where(Code.code == code).execution_options(populate_existing=True))


@dataclass(frozen=True)
class CodeCheck:
    valid: bool
    error: RedemptionError | None = None
    code: Code | None = None


def validate(identity, now=None) -> CodeCheck:
    """Read-only redeemability check for the public validate endpoint."""
    code = normalize_code(identity)
    if not is_valid_format(code):
        return CodeCheck(False, RedemptionError.INVALID_FORMAT)
    record = lookup(code)
    error = classify(record, now)
    if error:
        return CodeCheck(False, error)
    return CodeCheck(True, None, record)


def list_codes(page=1, limit=50, code_type=None, status=None, search=None, org_id=None):
    stmt = select(Code).order_by(Code.created_at.desc(), Code.id.desc())
    if code_type:
        stmt = stmt.where(Code.type == code_type)
    if status:
        stmt = stmt.where(Code.status == status)
    if org_id:
        stmt = stmt.where(Code.org_id == org_id)
    if search:
        needle = f"%{normalize_code(search)}%"
        stmt = stmt.where(or_(Code.code.like(needle), Code.description.ilike(f"%{search}%")))
    return db.paginate(stmt, page=page, per_page=min(max(int(limit), 1), 500), error_out=False)


def statistics(code_type=None) -> dict:
    by_status = select(Code.status, func.count(Code.id)).group_by(Code.status)
    totals = select(func.count(Code.id), func.coalesce(func.sum(Code.redemption_count), 0))
    if code_type:
        by_status = by_status.where(Code.type == code_type)
        totals = totals.where(Code.type == code_type)
    counts = {s: 0 for s in CodeStatus.ALL}
    for status, n in db.session.execute(by_status):
        counts[status] = n
    total, redemptions = db.session.execute(totals).one()
    return {
        'total_codes': total,
        'active': counts[CodeStatus.ACTIVE],
        'redeemed': counts[CodeStatus.REDEEMED],
        'expired': counts[CodeStatus.EXPIRED],
        'revoked': counts[CodeStatus.REVOKED],
        'total_redemptions': int(redemptions),
        'redemption_rate': (redemptions / total * 100) if total else 0.0,
    }


def to_dict(code: Code) -> dict:
    return {
        'id': code.id,
        'code': code.code,
        'display': format_code(code.code),
        'type': code.type,
        'status': code.status,
        'description': code.description,
        'max_redemptions': code.max_redemptions,
        'redemption_count': code.redemption_count,
        'valid_from': code.valid_from.isoformat() if code.valid_from else None,
        'valid_until': code.valid_until.isoformat() if code.valid_until else None,
        'org_id': code.org_id,
        'created_by': code.created_by,
    }


def export_csv(codes) -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator='\n')
    w.writerow(['code', 'type', 'max_redemptions', 'valid_from', 'valid_until'])
    for c in codes:
        w.writerow([
            c.code, c.type,
            '' if c.max_redemptions is None else c.max_redemptions,
            c.valid_from.isoformat() if c.valid_from else '',
            c.valid_until.isoformat() if c.valid_until else 'never',
        ])
    return buf.getvalue()


def export_lines(codes) -> str:
    return ''.join(f"{c.code}\n" for c in codes)
