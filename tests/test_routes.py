import io
import os
from urllib.parse import urlsplit
from bookpromo.models import db, BonusClaim, ClaimStatus, CodeType, CodeStatus, Entitlement, User
from bookpromo.services import codes, tokens


def _path(url):
    parts = urlsplit(url)
    return f"{parts.path}?{parts.query}"


def _submit(client, headers, data=b'%PDF receipt', email='a@example.com'):
    return client.post('/api/bonus/claim', headers=headers, content_type='multipart/form-data', data={
        'receipt': (io.BytesIO(data), 'receipt.pdf'),
        'email': email,
        'retailer': 'bookshop',
        'order_number': 'A-1',
    })


def test_health_and_pages(client):
    assert client.get('/health').get_json() == {'ok': True}
    assert client.get('/').status_code == 200
    r = client.get('/redeem?code=abc234')
    assert r.status_code == 200
    assert b'ABC-234' in r.data


def test_validate(client, make_code):
    identity = make_code(CodeType.VIP_BONUS, max_redemptions=3)
    r = client.post('/api/codes/validate', json={'code': codes.format_code(identity)})
    data = r.get_json()
    assert data['valid'] is True
    assert data['type'] == CodeType.VIP_BONUS
    assert data['redemptions_remaining'] == 3

    data = client.post('/api/codes/validate', json={'code': 'ZZZZZZ'}).get_json()
    assert data['valid'] is False
    assert data['error'] == 'CODE_INVALID'
    assert data['message']
    assert codes.lookup(identity).redemption_count == 0


def test_validate_is_rate_limited(client):
    for _ in range(10):
        assert client.post('/api/codes/validate', json={'code': 'ZZZZZZ'}).status_code == 200
    r = client.post('/api/codes/validate', json={'code': 'ZZZZZZ'})
    assert r.status_code == 429
    assert r.get_json()['error'] == 'rate_limited'
    assert int(r.headers['Retry-After']) >= 1


def test_redeem_requires_identity(client, make_code):
    r = client.post(f'/api/codes/{make_code()}/redeem')
    assert r.status_code == 401
    assert r.get_json()['error'] == 'AUTHENTICATION_REQUIRED'

    r = client.post(f'/api/codes/{make_code()}/redeem', headers={'Authorization': 'Bearer not-a-jwt'})
    assert r.status_code == 401


def test_redeem_flow(client, make_code, auth_headers):
    identity = make_code(CodeType.VIP_PREVIEW)
    r = client.post(f'/api/codes/{codes.format_code(identity)}/redeem', headers=auth_headers())
    assert r.status_code == 200
    data = r.get_json()
    assert data['ok'] is True
    assert data['benefits'] == ['EARLY_EXCERPT']
    assert db.session.get(User, 'user-a').email == 'a@example.com'

    r = client.get('/api/entitlements', headers=auth_headers())
    body = r.get_json()
    assert body['flags']['has_excerpt'] is True
    assert body['flags']['has_preordered'] is False
    assert len(body['entitlements']) == 1


def test_redeem_error_statuses(client, make_code, auth_headers):
    h = auth_headers('user-b', 'b@example.com')
    assert client.post('/api/codes/AB1/redeem', headers=h).status_code == 400
    assert client.post('/api/codes/ZZZZZZ/redeem', headers=h).status_code == 404

    used = make_code()
    assert client.post(f'/api/codes/{used}/redeem', headers=auth_headers()).status_code == 200
    r = client.post(f'/api/codes/{used}/redeem', headers=h)
    assert r.status_code == 409
    assert r.get_json()['error'] == 'CODE_ALREADY_REDEEMED'

    expired = codes.lookup(make_code())
    expired.status = CodeStatus.EXPIRED
    db.session.commit()
    assert client.post(f'/api/codes/{expired.code}/redeem', headers=h).status_code == 410


def test_redeem_rate_limit(client, auth_headers):
    h = auth_headers()
    for _ in range(10):
        assert client.post('/api/codes/ZZZZZZ/redeem', headers=h).status_code == 404
    assert client.post('/api/codes/ZZZZZZ/redeem', headers=h).status_code == 429


def test_entitlements_requires_identity(client):
    assert client.get('/api/entitlements').status_code == 401


def test_claim_submission_and_status(client, auth_headers):
    r = _submit(client, auth_headers())
    assert r.status_code == 201
    claim_id = r.get_json()['claim']['id']
    assert r.get_json()['claim']['status'] == ClaimStatus.PENDING

    assert client.get(f'/api/bonus/claims/{claim_id}', headers=auth_headers()).status_code == 200
    other = auth_headers('user-b', 'b@example.com')
    assert client.get(f'/api/bonus/claims/{claim_id}', headers=other).status_code == 404

    r = _submit(client, other)
    assert r.status_code == 409
    assert r.get_json()['error'] == 'duplicate_receipt'


def test_claim_requires_file(client, auth_headers):
    r = client.post('/api/bonus/claim', headers=auth_headers(), data={'email': 'a@example.com'})
    assert r.status_code == 400
    assert r.get_json()['error'] == 'missing_file'


def test_claim_rate_limit(client, auth_headers):
    for i in range(3):
        assert _submit(client, auth_headers(), data=f'receipt {i}'.encode()).status_code == 201
    assert _submit(client, auth_headers(), data=b'receipt 4').status_code == 429


def test_admin_requires_key(client):
    assert client.get('/admin/codes').status_code == 401
    assert client.get('/admin/codes', headers={'X-Admin-Key': 'wrong'}).status_code == 401


def test_admin_generate_list_revoke(client, admin_headers):
    r = client.post('/admin/codes/generate', headers=admin_headers,
                    json={'count': 4, 'type': CodeType.PARTNER, 'max_redemptions': 10, 'org_id': None})
    assert r.status_code == 201
    issued = r.get_json()['codes']
    assert len(issued) == 4

    r = client.post('/admin/codes/generate', headers=admin_headers, json={'count': 2, 'type': 'VIP_LAUNCH', 'format': 'csv'})
    assert r.mimetype == 'text/csv'
    assert r.data.decode().startswith('code,type,max_redemptions')

    r = client.post('/admin/codes/generate', headers=admin_headers, json={'count': 0, 'type': 'PARTNER'})
    assert r.status_code == 400
    r = client.post('/admin/codes/generate', headers=admin_headers,
                    json={'count': 1, 'type': 'VIP_PREVIEW', 'max_redemptions': 'lots'})
    assert r.status_code == 400
    assert r.get_json()['message'] == 'max_redemptions must be an integer'

    r = client.get('/admin/codes?type=PARTNER', headers=admin_headers)
    body = r.get_json()
    assert body['total'] == 4
    assert body['stats']['total_codes'] == 4

    r = client.post(f"/admin/codes/{issued[0]['code']}/revoke", headers=admin_headers)
    assert r.get_json()['code']['status'] == CodeStatus.REVOKED
    assert client.post('/admin/codes/ZZZZZZ/revoke', headers=admin_headers).status_code == 404


def test_admin_qr(client, admin_headers, make_code):
    identity = make_code()
    r = client.get(f'/admin/codes/{identity}/qr', headers=admin_headers)
    body = r.get_json()
    assert body['redeem_url'] == f"http://localhost/redeem?code={codes.format_code(identity)}"
    assert body['qr_png_b64']

    r = client.get(f'/admin/codes/{identity}/qr', headers={**admin_headers, 'Accept': 'image/png'})
    assert r.mimetype == 'image/png'
    assert r.data.startswith(b'\x89PNG')
    assert client.get('/admin/codes/ZZZZZZ/qr', headers=admin_headers).status_code == 404


def test_bonus_download_end_to_end(app, client, auth_headers, admin_headers):
    asset_dir = app.config['BONUS_ASSET_DIR']
    os.makedirs(asset_dir, exist_ok=True)
    with open(os.path.join(asset_dir, 'agent-charter-pack.pdf'), 'wb') as f:
        f.write(b'%PDF charter')

    claim_id = _submit(client, auth_headers()).get_json()['claim']['id']
    pending = client.get('/admin/claims?status=PENDING', headers=admin_headers).get_json()
    assert [c['id'] for c in pending['claims']] == [claim_id]

    r = client.post(f'/admin/claims/{claim_id}/approve', headers=admin_headers, json={'reviewer': 'ops'})
    assert r.status_code == 200
    urls = r.get_json()['download_urls']
    assert set(urls) == set(tokens.BONUS_ASSETS)
    assert client.post(f'/admin/claims/{claim_id}/approve', headers=admin_headers).status_code == 409

    r = client.get(_path(urls['agent-charter-pack']))
    assert r.status_code == 200
    assert r.data == b'%PDF charter'
    assert 'no-store' in r.headers['Cache-Control']
    claim = db.session.get(BonusClaim, claim_id, populate_existing=True)
    assert claim.status == ClaimStatus.DELIVERED
    delivered_at = claim.delivered_at

    token = urls['agent-charter-pack'].split('token=', 1)[1]
    r = client.get('/api/bonus/download/agent-charter-pack', headers={'Authorization': f'Bearer {token}'})
    assert r.status_code == 200
    assert db.session.get(BonusClaim, claim_id, populate_existing=True).delivered_at == delivered_at

    # Right token, wrong file
    r = client.get(f'/api/bonus/download/coi-diagnostic?token={token}')
    assert r.status_code == 403
    assert r.get_json()['error'] == 'asset_mismatch'

    # Asset listed but not on disk
    assert client.get(_path(urls['coi-diagnostic'])).status_code == 404


def test_download_refused_after_claim_rejection(app, client, auth_headers, admin_headers):
    claim_id = _submit(client, auth_headers()).get_json()['claim']['id']
    urls = client.post(f'/admin/claims/{claim_id}/approve', headers=admin_headers).get_json()['download_urls']
    r = client.post(f'/admin/claims/{claim_id}/reject', headers=admin_headers, json={'reason': 'refund'})
    assert r.get_json()['claim']['status'] == ClaimStatus.REJECTED

    r = client.get(_path(urls['full-bonus-pack']))
    assert r.status_code == 403
    assert r.get_json()['error'] == 'claim_not_approved'


def test_download_token_errors(client):
    assert client.get('/api/bonus/download/agent-charter-pack').status_code == 401
    assert client.get('/api/bonus/download/nope?token=x').status_code == 404
    r = client.get('/api/bonus/download/agent-charter-pack?token=abc.def')
    assert r.status_code == 401
    assert r.get_json()['error'] == 'signature_invalid'


def test_download_without_secret_is_unavailable(app, client):
    app.config['BONUS_TOKEN_SECRET'] = None
    r = client.get('/api/bonus/download/agent-charter-pack?token=abc.def')
    assert r.status_code == 500
    assert r.get_json()['error'] == 'missing_secret'


def test_admin_receipt_and_entitlement_actions(client, auth_headers, admin_headers, make_code):
    claim = _submit(client, auth_headers()).get_json()['claim']
    r = client.post(f"/admin/receipts/{claim['receipt_id']}/verify", headers=admin_headers)
    assert r.status_code == 200
    assert client.post(f"/admin/receipts/{claim['receipt_id']}/reject", headers=admin_headers).status_code == 409
    assert client.get('/api/entitlements', headers=auth_headers()).get_json()['flags']['has_preordered']

    ent_id = client.post(f'/api/codes/{make_code()}/redeem', headers=auth_headers()).get_json()['entitlement_id']
    assert client.post(f'/admin/entitlements/{ent_id}/revoke', headers=admin_headers).status_code == 200
    assert client.post(f'/admin/entitlements/{ent_id}/revoke', headers=admin_headers).status_code == 409
    assert not client.get('/api/entitlements', headers=auth_headers()).get_json()['flags']['has_excerpt']


def test_approve_without_secret_leaves_claim_pending(app, client, auth_headers, admin_headers):
    claim_id = _submit(client, auth_headers()).get_json()['claim']['id']
    app.config['BONUS_TOKEN_SECRET'] = None

    r = client.post(f'/admin/claims/{claim_id}/approve', headers=admin_headers)
    assert r.status_code == 500
    assert r.get_json()['error'] == 'missing_secret'
    assert db.session.get(BonusClaim, claim_id, populate_existing=True).status == ClaimStatus.PENDING
    assert db.session.scalar(db.select(db.func.count(Entitlement.id))) == 0


def test_approve_refused_after_receipt_rejection(client, auth_headers, admin_headers):
    claim = _submit(client, auth_headers()).get_json()['claim']
    assert client.post(f"/admin/receipts/{claim['receipt_id']}/reject", headers=admin_headers).status_code == 200

    r = client.post(f"/admin/claims/{claim['id']}/approve", headers=admin_headers)
    assert r.status_code == 409
    assert r.get_json()['error'] == 'receipt_rejected'


def test_download_refused_after_entitlement_revoke(app, client, auth_headers, admin_headers):
    asset_dir = app.config['BONUS_ASSET_DIR']
    os.makedirs(asset_dir, exist_ok=True)
    with open(os.path.join(asset_dir, 'agent-charter-pack.pdf'), 'wb') as f:
        f.write(b'%PDF charter')

    claim_id = _submit(client, auth_headers()).get_json()['claim']['id']
    urls = client.post(f'/admin/claims/{claim_id}/approve', headers=admin_headers).get_json()['download_urls']
    ent = db.session.scalars(db.select(Entitlement).where(Entitlement.claim_id == claim_id)).one()
    assert client.post(f'/admin/entitlements/{ent.id}/revoke', headers=admin_headers).status_code == 200

    r = client.get(_path(urls['agent-charter-pack']))
    assert r.status_code == 403
    assert r.get_json()['error'] == 'entitlement_revoked'
    assert db.session.get(BonusClaim, claim_id, populate_existing=True).status == ClaimStatus.APPROVED


def test_excerpt_check_and_download(app, client, auth_headers, admin_headers, make_code):
    excerpt_dir = app.config['EXCERPT_ASSET_DIR']
    os.makedirs(excerpt_dir, exist_ok=True)
    with open(os.path.join(excerpt_dir, tokens.EXCERPT_ASSET.filename), 'wb') as f:
        f.write(b'%PDF excerpt')

    assert client.get('/api/excerpt/check-entitlement').status_code == 401
    body = client.get('/api/excerpt/check-entitlement', headers=auth_headers()).get_json()
    assert body['has_entitlement'] is False
    assert 'download_url' not in body

    ent_id = client.post(f'/api/codes/{make_code(CodeType.VIP_PREVIEW)}/redeem',
                         headers=auth_headers()).get_json()['entitlement_id']
    body = client.get('/api/excerpt/check-entitlement', headers=auth_headers()).get_json()
    assert body['has_entitlement'] is True
    url = body['download_url']
    assert url.startswith('http://localhost/api/excerpt/download?token=')

    r = client.get(_path(url))
    assert r.status_code == 200
    assert r.data == b'%PDF excerpt'
    assert r.mimetype == 'application/pdf'
    assert 'no-store' in r.headers['Cache-Control']

    token = url.split('token=', 1)[1]
    assert client.get('/api/excerpt/download', headers={'Authorization': f'Bearer {token}'}).status_code == 200

    assert client.post(f'/admin/entitlements/{ent_id}/revoke', headers=admin_headers).status_code == 200
    r = client.get(_path(url))
    assert r.status_code == 403
    assert r.get_json()['error'] == 'entitlement_revoked'
    assert client.get('/api/excerpt/check-entitlement', headers=auth_headers()).get_json()['has_entitlement'] is False


def test_excerpt_download_errors(client, auth_headers, make_code):
    assert client.get('/api/excerpt/download').status_code == 401
    r = client.get('/api/excerpt/download?token=abc.def')
    assert r.status_code == 401
    assert r.get_json()['error'] == 'signature_invalid'

    # Bonus-pack tokens are signed under another salt.
    bonus = tokens.issue_asset_token(1, 'a@example.com', tokens.EXCERPT_ASSET_ID)
    assert client.get(f'/api/excerpt/download?token={bonus}').status_code == 401

    client.post(f'/api/codes/{make_code(CodeType.MEDIA)}/redeem', headers=auth_headers())
    url = client.get('/api/excerpt/check-entitlement', headers=auth_headers()).get_json()['download_url']
    r = client.get(_path(url))
    assert r.status_code == 404
    assert r.get_json()['error'] == 'asset_unavailable'
