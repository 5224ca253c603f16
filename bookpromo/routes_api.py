import os
from flask import Blueprint, request, jsonify, current_app, send_file
from .errors import HTTP_STATUS, MESSAGES, RedemptionError, DownloadDenied
from .services import codes, entitlements, bonus_claims, tokens
from .services.identity import current_identity, get_or_create_user
from .services.rate_limit import (
    check, RateLimitExceeded, REDEEM_LIMIT, VALIDATE_LIMIT, CLAIM_LIMIT, DOWNLOAD_LIMIT,
)
from .services.redeem import redeem as redeem_code

bp = Blueprint('api', __name__)


def _ip():
    return request.remote_addr or '0.0.0.0'


def _error(code, message, status):
    return jsonify({'error': code, 'message': message}), status


def _asset_path(directory, info):
    path = os.path.abspath(os.path.join(directory, info.filename))
    return path if os.path.isfile(path) else None


def _send_asset(path, info):
    resp = send_file(path, mimetype=info.content_type, as_attachment=True, download_name=info.filename,
                     etag=False, max_age=0)
    resp.headers['Cache-Control'] = 'private, no-store'
    resp.headers['X-Content-Type-Options'] = 'nosniff'
    return resp


@bp.errorhandler(RateLimitExceeded)
def rate_limited(e):
    resp, status = _error('rate_limited', 'Too many attempts. Please try again later.', 429)
    resp.headers['Retry-After'] = str(e.reset)
    return resp, status


@bp.errorhandler(tokens.TokenError)
def token_error(e):
    current_app.logger.info('download token rejected: %s', e.code)
    return _error(e.code, e.message, e.status)


@bp.errorhandler(DownloadDenied)
def download_denied(e):
    return _error(e.reason.lower(), e.message, e.status)


@bp.errorhandler(bonus_claims.ClaimError)
def claim_error(e):
    return _error(e.code, str(e), e.status)


@bp.post('/codes/validate')
def validate_code():
    check('validate', _ip(), VALIDATE_LIMIT)
    data = request.get_json(silent=True) or {}
    result = codes.validate(data.get('code'))
    if not result.valid:
        return jsonify({'valid': False, 'error': result.error.value, 'message': MESSAGES[result.error]})
    return jsonify({
        'valid': True,
        'code': codes.format_code(result.code.code),
        'type': result.code.type,
        'benefits': list(entitlements.benefits_for(result.code.type)),
        'redemptions_remaining': result.code.redemptions_remaining,
    })


@bp.post('/codes/<code>/redeem')
def redeem(code):
    ident = current_identity()
    if ident is None:
        err = RedemptionError.AUTHENTICATION_REQUIRED
        return _error(err.value, MESSAGES[err], HTTP_STATUS[err])
    check('redeem', _ip(), REDEEM_LIMIT)
    get_or_create_user(ident)

    result = redeem_code(code, ident.user_id)
    if not result.ok:
        current_app.logger.info('redeem failed for %s: %s', ident.user_id, result.error.value)
        return _error(result.error.value, result.message, HTTP_STATUS[result.error])
    return jsonify({
        'ok': True,
        'code_type': result.code_type,
        'benefits': list(result.benefits),
        'entitlement_id': result.entitlement_id,
        'expires_at': result.expires_at.isoformat() if result.expires_at else None,
    })


@bp.get('/entitlements')
def my_entitlements():
    ident = current_identity()
    if ident is None:
        return _error('unauthorized', 'Please sign in.', 401)
    flags = entitlements.resolve(ident.user_id)
    return jsonify({
        'flags': flags.to_dict(),
        'entitlements': [entitlements.to_dict(e) for e in entitlements.active_entitlements(ident.user_id)],
    })


@bp.post('/bonus/claim')
def submit_claim():
    ident = current_identity()
    if ident is None:
        return _error('unauthorized', 'Please sign in.', 401)
    check('claim', _ip(), CLAIM_LIMIT)

    receipt = request.files.get('receipt')
    if receipt is None or not receipt.filename:
        return _error('missing_file', 'Please attach your purchase receipt.', 400)
    email = (request.form.get('email') or ident.email or '').strip()
    if '@' not in email:
        return _error('missing_email', 'A delivery email address is required.', 400)

    get_or_create_user(ident)
    claim = bonus_claims.submit_claim(
        ident.user_id, email, receipt, current_app.config['RECEIPT_UPLOAD_DIR'],
        retailer=request.form.get('retailer'), order_number=request.form.get('order_number'),
    )
    return jsonify({'ok': True, 'claim': bonus_claims.to_dict(claim)}), 201


@bp.get('/bonus/claims/<int:claim_id>')
def claim_status(claim_id: int):
    ident = current_identity()
    if ident is None:
        return _error('unauthorized', 'Please sign in.', 401)
    claim = bonus_claims.get_claim(claim_id)
    if claim.user_id != ident.user_id:
        # Same answer as a missing claim.
        raise bonus_claims.ClaimNotFound(f'claim {claim_id} not found')
    return jsonify({'claim': bonus_claims.to_dict(claim)})


@bp.get('/bonus/download/<asset_id>')
def download(asset_id):
    info = tokens.BONUS_ASSETS.get(asset_id)
    if info is None:
        return _error('unknown_asset', 'Unknown bonus file.', 404)
    token = tokens.extract_token(request.headers.get('Authorization'), request.args.get('token'))
    if not token:
        return _error('missing_token', 'Download link is missing its token. Please use the link from your email.', 401)

    claim = bonus_claims.authorize_download(token, asset_id)
    check('download', f"{claim.delivery_email}:{_ip()}", DOWNLOAD_LIMIT)

    path = _asset_path(current_app.config['BONUS_ASSET_DIR'], info)
    if path is None:
        current_app.logger.error('bonus asset %s missing from %s', asset_id, current_app.config['BONUS_ASSET_DIR'])
        return _error('asset_unavailable', 'This file is temporarily unavailable. Please contact support.', 404)

    # Delivered means a link was honoured, not that the transfer completed.
    bonus_claims.mark_delivered(claim.id)
    current_app.logger.info('bonus asset %s served for claim %s', asset_id, claim.id)
    return _send_asset(path, info)


@bp.get('/excerpt/check-entitlement')
def excerpt_entitlement():
    ident = current_identity()
    if ident is None:
        return _error('unauthorized', 'Please sign in to check excerpt access.', 401)
    grant = None
    if entitlements.resolve(ident.user_id).has_excerpt:
        grant = entitlements.excerpt_grant(ident.user_id)
    if grant is None:
        return jsonify({'has_entitlement': False, 'message': 'No excerpt entitlement found.'})

    url = tokens.excerpt_url(grant.id, ident.email, current_app.config.get('BASE_URL'))
    current_app.logger.info('excerpt link issued to %s', ident.user_id)
    return jsonify({'has_entitlement': True, 'download_url': url, 'message': 'Excerpt access granted.'})


@bp.get('/excerpt/download')
def excerpt_download():
    token = tokens.extract_token(request.headers.get('Authorization'), request.args.get('token'))
    if not token:
        return _error('missing_token', 'Download token is required.', 401)

    grant = entitlements.authorize_excerpt(token)
    check('excerpt', f"{grant.user_id}:{_ip()}", DOWNLOAD_LIMIT)

    info = tokens.EXCERPT_ASSET
    path = _asset_path(current_app.config['EXCERPT_ASSET_DIR'], info)
    if path is None:
        current_app.logger.error('excerpt missing from %s', current_app.config['EXCERPT_ASSET_DIR'])
        return _error('asset_unavailable', 'The excerpt is currently unavailable.', 404)

    current_app.logger.info('excerpt served for entitlement %s', grant.id)
    return _send_asset(path, info)
