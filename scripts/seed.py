import os, sys, pathlib
# Ensure project root is on PYTHONPATH when running directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bookpromo import create_app
from bookpromo.models import db, Org, User, CodeType
from bookpromo.services import codes
from bookpromo.services.codes import format_code
from bookpromo.services.qr import redeem_url

app = create_app()
with app.app_context():
    if db.session.get(Org, 'demo-partner') is None:
        db.session.add(Org(id='demo-partner', name='Demo Partner', type='PARTNER'))
    if db.session.get(User, 'demo-user') is None:
        db.session.add(User(id='demo-user', email='reader@example.com', name='Demo Reader'))
    db.session.commit()

    base = os.environ.get('BASE_URL', 'http://localhost:5000')
    for code_type in (CodeType.VIP_PREVIEW, CodeType.VIP_BONUS, CodeType.VIP_LAUNCH):
        (code,) = codes.generate(1, code_type, description='seed', created_by='seed')
        print(f"{code_type:<12} {format_code(code.code)}  {redeem_url(base, format_code(code.code))}")
    (partner,) = codes.generate(1, CodeType.PARTNER, max_redemptions=25, org_id='demo-partner',
                                description='seed partner', created_by='seed')
    print(f"{CodeType.PARTNER:<12} {format_code(partner.code)}  (25 redemptions)")
