from flask import Blueprint, jsonify, request, current_app, send_file, Response
from sqlalchemy import select
import base64
import hmac
import io
from .models import db, BonusClaim
from .services import codes, bonus_claims, entitlements, tokens
from .services.qr import make_qr_bytes, redeem_url

bp = Blueprint('admin', __name__)


@bp.before_request
def require_admin_key():
    # Simple API-key auth
    api_key = request.headers.get('X-Admin-Key') or request.args.get('key') or ''
    expected = current_app.config.get('ADMIN_API_KEY') or ''
    if not expected or not hmac.compare_digest(api_key.encode(), expected.encode()):
        current_app.logger.warning('admin request refused from %s', request.remote_addr)
        return jsonify({'error': 'unauthorized'}), 401


@bp.errorhandler(bonus_claims.ClaimError)
def claim_error(e):
    return jsonify({'error': e.code, 'message': str(e)}), e.status


@bp.errorhandler(tokens.TokenError)
def token_error(e):
    current_app.logger.error('download links unavailable: %s', e.code)
    return jsonify({'error': e.code, 'message': e.message}), e.status


def _reviewer(data):
    return data.get('reviewer') or request.headers.get('X-Admin-User') or 'admin'


@bp.get('/ping')
def ping():
    return jsonify({'admin': 'ok'})


@bp.post('/codes/generate')
def generate_codes():
    data = request.get_json(silent=True) or {}
    try:
        batch = codes.generate(
            data.get('count', 1),
            data.get('type'),
            max_redemptions=data.get('max_redemptions', 1),
            valid_until=data.get('valid_until'),
            description=data.get('description'),
            valid_from=data.get('valid_from'),
            org_id=data.get('org_id'),
            created_by=_reviewer(data),
        )
    except codes.GenerationError as e:
        return jsonify({'error': 'invalid_request', 'message': str(e)}), 400

    current_app.logger.info('admin generated %d %s codes', len(batch), data.get('type'))
    if data.get('format') == 'csv':
        return Response(codes.export_csv(batch), mimetype='text/csv', headers={
            'Content-Disposition': f"attachment; filename=codes-{data.get('type', '').lower()}.csv",
        })
    return jsonify({'ok': True, 'count': len(batch), 'codes': [codes.to_dict(c) for c in batch]}), 201


@bp.get('/codes')
def list_codes():
    args = request.args
    page = codes.list_codes(
        page=args.get('page', 1, type=int),
        limit=args.get('limit', 50, type=int),
        code_type=args.get('type'),
        status=args.get('status'),
        search=args.get('search'),
        org_id=args.get('org_id'),
    )
    return jsonify({
        'codes': [codes.to_dict(c) for c in page.items],
        'page': page.page,
        'pages': page.pages,
        'total': page.total,
        'stats': codes.statistics(args.get('type')),
    })


@bp.post('/codes/<code>/revoke')
def revoke_code(code):
    data = request.get_json(silent=True) or {}
    record = codes.revoke(code, actor=_reviewer(data))
    if record is None:
        return jsonify({'error': 'not_found'}), 404
    return jsonify({'ok': True, 'code': codes.to_dict(record)})


@bp.get('/codes/<code>/qr')
def code_qr(code):
    record = codes.lookup(code)
    if record is None:
        return jsonify({'error': 'not_found'}), 404
    url = redeem_url(current_app.config.get('BASE_URL'), codes.format_code(record.code))
    png = make_qr_bytes(url)

    accept = request.headers.get('Accept', '')
    if 'image/png' in accept or request.args.get('format') == 'png':
        return send_file(
            io.BytesIO(png), mimetype='image/png', as_attachment=False, download_name=f"vip_{record.code}.png",
            etag=False,
        )
    return jsonify({
        'ok': True,
        'code': record.code,
        'redeem_url': url,
        'qr_png_b64': base64.b64encode(png).decode('ascii'),
    })


@bp.get('/claims')
def list_claims():
    stmt = select(BonusClaim).order_by(BonusClaim.created_at, BonusClaim.id)
    status = request.args.get('status')
    if status:
        stmt = stmt.where(BonusClaim.status == status)
    page = db.paginate(stmt, page=request.args.get('page', 1, type=int), per_page=50, error_out=False)
    return jsonify({'claims': [bonus_claims.to_dict(c) for c in page.items], 'total': page.total})


@bp.post('/claims/<int:claim_id>/approve')
def approve_claim(claim_id: int):
    data = request.get_json(silent=True) or {}
    # Links must be signable before the claim moves.
    if not current_app.config.get('BONUS_TOKEN_SECRET'):
        raise tokens.TokenMissingSecret()
    claim = bonus_claims.approve(claim_id, _reviewer(data))
    urls = tokens.download_urls(claim.id, claim.delivery_email, current_app.config.get('BASE_URL'))
    return jsonify({'ok': True, 'claim': bonus_claims.to_dict(claim), 'download_urls': urls})


@bp.post('/claims/<int:claim_id>/reject')
def reject_claim(claim_id: int):
    data = request.get_json(silent=True) or {}
    claim = bonus_claims.reject(claim_id, _reviewer(data), data.get('reason'))
    return jsonify({'ok': True, 'claim': bonus_claims.to_dict(claim)})


@bp.post('/receipts/<int:receipt_id>/verify')
def verify_receipt(receipt_id: int):
    data = request.get_json(silent=True) or {}
    if not bonus_claims.verify_receipt(receipt_id, _reviewer(data)):
        return jsonify({'error': 'not_pending'}), 409
    return jsonify({'ok': True})


@bp.post('/receipts/<int:receipt_id>/reject')
def reject_receipt(receipt_id: int):
    data = request.get_json(silent=True) or {}
    if not bonus_claims.reject_receipt(receipt_id, _reviewer(data), data.get('reason')):
        return jsonify({'error': 'not_pending'}), 409
    return jsonify({'ok': True})


@bp.post('/entitlements/<int:entitlement_id>/revoke')
def revoke_entitlement(entitlement_id: int):
    data = request.get_json(silent=True) or {}
    if not entitlements.revoke_entitlement(entitlement_id, _reviewer(data)):
        return jsonify({'error': 'not_active'}), 409
    return jsonify({'ok': True})
