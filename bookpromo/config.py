import os


def _database_url():
    url = os.environ.get('DATABASE_URL', 'sqlite:///local.db')
    # SQLAlchemy requires postgresql:// not postgres://
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    return url


def _read_secret_file(*paths):
    for p in paths:
        try:
            with open(p, 'r') as f:
                value = f.read().strip()
        except OSError:
            continue
        if value:
            return value
    return None


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev')
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_PRIVATE_KEY = os.environ.get('JWT_PRIVATE_KEY')
    JWT_PUBLIC_KEY = os.environ.get('JWT_PUBLIC_KEY')
    JWT_ALG = os.environ.get('JWT_ALG', 'RS256')
    BONUS_TOKEN_SECRET = os.environ.get('BONUS_TOKEN_SECRET')
    BONUS_TOKEN_TTL_HOURS = int(os.environ.get('BONUS_TOKEN_TTL_HOURS', '24'))
    EXCERPT_TOKEN_TTL_DAYS = int(os.environ.get('EXCERPT_TOKEN_TTL_DAYS', '7'))
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    RATE_LIMIT_BACKEND = os.environ.get('RATE_LIMIT_BACKEND', 'redis')
    BASE_URL = os.environ.get('BASE_URL', 'http://localhost:5000')
    ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')
    BONUS_ASSET_DIR = os.environ.get('BONUS_ASSET_DIR', 'bonus-pack')
    EXCERPT_ASSET_DIR = os.environ.get('EXCERPT_ASSET_DIR', 'assets')
    RECEIPT_UPLOAD_DIR = os.environ.get('RECEIPT_UPLOAD_DIR', 'uploads/receipts')
    MAX_CONTENT_LENGTH = 5 * 1024 * 1024

    def __init__(self):
        # Optional fallbacks to support Secret Files on Render (/etc/secrets)
        if not self.JWT_PRIVATE_KEY:
            self.JWT_PRIVATE_KEY = _read_secret_file('/etc/secrets/jwt.key', 'jwt.key')
        if not self.JWT_PUBLIC_KEY:
            self.JWT_PUBLIC_KEY = _read_secret_file('/etc/secrets/jwt.pub', 'jwt.pub')
        if (not self.SECRET_KEY) or self.SECRET_KEY == 'dev':
            self.SECRET_KEY = _read_secret_file('/etc/secrets/secret_key') or self.SECRET_KEY
        # No fallback to SECRET_KEY: an unset token secret must fail closed.
        if not self.BONUS_TOKEN_SECRET:
            self.BONUS_TOKEN_SECRET = _read_secret_file('/etc/secrets/bonus_token_secret')
