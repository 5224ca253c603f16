import pytest
from bookpromo import create_app
from bookpromo.models import db, User, CodeType
from bookpromo.services import codes, rate_limit
from bookpromo.services.identity import sign_identity_jwt

JWT_SECRET = 'test-identity-secret-0123456789abcdef'
TOKEN_SECRET = 'test-bonus-token-secret-0123456789abcdef'
ADMIN_KEY = 'test-admin-key'


def make_app(tmp_path, db_uri='sqlite:///:memory:', **extra):
    return create_app({
        **extra,
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': db_uri,
        'RATE_LIMIT_BACKEND': 'memory',
        'JWT_ALG': 'HS256',
        'JWT_PRIVATE_KEY': JWT_SECRET,
        'JWT_PUBLIC_KEY': JWT_SECRET,
        'BONUS_TOKEN_SECRET': TOKEN_SECRET,
        'ADMIN_API_KEY': ADMIN_KEY,
        'BASE_URL': 'http://localhost',
        'BONUS_ASSET_DIR': str(tmp_path / 'assets'),
        'EXCERPT_ASSET_DIR': str(tmp_path / 'excerpt'),
        'RECEIPT_UPLOAD_DIR': str(tmp_path / 'receipts'),
    })


@pytest.fixture
def app(tmp_path):
    """App bound to an in-memory SQLite DB and in-process rate limiter."""
    rate_limit.reset()
    app = make_app(tmp_path)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
    rate_limit.reset()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def users(app):
    """Three readers: a, b and c."""
    rows = {
        'a': User(id='user-a', email='a@example.com', name='Reader A'),
        'b': User(id='user-b', email='b@example.com', name='Reader B'),
        'c': User(id='user-c', email='c@example.com', name='Reader C'),
    }
    db.session.add_all(rows.values())
    db.session.commit()
    return {k: u.id for k, u in rows.items()}


@pytest.fixture
def make_code(app):
    """Generate one code and return its identity."""
    def make(code_type=CodeType.VIP_PREVIEW, **kw):
        (code,) = codes.generate(1, code_type, **kw)
        return code.code
    return make


@pytest.fixture
def auth_headers(app):
    def make(user_id='user-a', email='a@example.com'):
        return {'Authorization': 'Bearer ' + sign_identity_jwt(user_id, email)}
    return make


@pytest.fixture
def admin_headers():
    return {'X-Admin-Key': ADMIN_KEY}


@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed SQLite DB so worker threads get real separate connections."""
    rate_limit.reset()
    app = make_app(tmp_path, 'sqlite:///' + str(tmp_path / 'race.db'),
                   SQLALCHEMY_ENGINE_OPTIONS={'connect_args': {'timeout': 30}})
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()
    rate_limit.reset()
