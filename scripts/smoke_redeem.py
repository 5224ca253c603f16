import os
import pathlib
import sys

# Ensure project root is on PYTHONPATH
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bookpromo import create_app
from bookpromo.services.identity import sign_identity_jwt

# Minimal, self-contained config for a local run
app = create_app({
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'ADMIN_API_KEY': 'test-key',
    'RATE_LIMIT_BACKEND': 'memory',
    'JWT_ALG': 'HS256',
    'JWT_PRIVATE_KEY': 'smoke-secret',
    'JWT_PUBLIC_KEY': 'smoke-secret',
    'BONUS_TOKEN_SECRET': os.environ.get('BONUS_TOKEN_SECRET', 'smoke-token-secret'),
})

with app.app_context():
    client = app.test_client()
    admin = {'X-Admin-Key': 'test-key'}

    # 1) Unauthorized admin call
    r = client.post('/admin/codes/generate', json={'count': 1, 'type': 'VIP_PREVIEW'})
    print('unauthorized_status', r.status_code)

    # 2) Generate one code
    r = client.post('/admin/codes/generate', headers=admin, json={'count': 1, 'type': 'VIP_BONUS'})
    print('generate_status', r.status_code)
    code = r.get_json()['codes'][0]['code']

    # 3) Redeem without and with identity
    r = client.post(f'/api/codes/{code}/redeem')
    print('anon_redeem_status', r.status_code, r.get_json()['error'])
    bearer = {'Authorization': 'Bearer ' + sign_identity_jwt('smoke-user', 'smoke@example.com')}
    r = client.post(f'/api/codes/{code}/redeem', headers=bearer)
    print('redeem_status', r.status_code, r.get_json())
    r = client.post(f'/api/codes/{code}/redeem', headers=bearer)
    print('second_redeem_status', r.status_code, r.get_json()['error'])

    # 4) Flags
    r = client.get('/api/entitlements', headers=bearer)
    print('flags', r.get_json()['flags'])

    # 5) QR PNG
    r = client.get(f'/admin/codes/{code}/qr', headers={**admin, 'Accept': 'image/png'})
    print('png_status', r.status_code, 'mimetype', r.mimetype, 'len', len(r.data))
