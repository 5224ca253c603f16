"""Signed, short-lived download tokens for bonus-pack files and the excerpt.

A token binds a grant id, an email and one asset id to an expiry. For
bonus-pack files the grant is the bonus claim; for the excerpt it is the
entitlement row, signed under its own salt.

Verification order is fixed: secret present, signature, payload shape,
expiry, asset. A token is never sufficient on its own; the download path
re-checks the grant's live status.
"""
import calendar
import hashlib
import hmac
import time
from dataclasses import dataclass
from datetime import timedelta
from collections import namedtuple
from urllib.parse import quote
from flask import current_app
from itsdangerous import URLSafeSerializer, BadData
from itsdangerous.encoding import want_bytes

TOKEN_SALT = 'bonus-asset-download'
EXCERPT_SALT = 'excerpt-download'
TOKEN_VERSION = 1
DEFAULT_TTL = timedelta(hours=24)


class TokenError(Exception):
    code = 'invalid'
    status = 401
    message = 'Invalid download link. Please use the link from your email.'


class TokenMissingSecret(TokenError):
    code = 'missing_secret'
    status = 500
    message = 'Downloads are temporarily unavailable. Please contact support.'


class TokenSignatureInvalid(TokenError):
    code = 'signature_invalid'
    message = 'Invalid download link. Please contact support.'


class TokenMalformed(TokenError):
    code = 'malformed'
    message = 'Malformed download link. Please contact support.'


class TokenExpired(TokenError):
    code = 'expired'
    status = 410
    message = 'This download link has expired. Request a new link from your account.'


class TokenAssetMismatch(TokenError):
    code = 'asset_mismatch'
    status = 403
    message = 'This link is for a different file. Please contact support.'


AssetInfo = namedtuple('AssetInfo', 'filename display_name description content_type size_estimate')

BONUS_ASSETS = {
    'agent-charter-pack': AssetInfo(
        'agent-charter-pack.pdf', 'Agent Charter Pack',
        'VP-agent templates and sub-agent hierarchy framework', 'application/pdf', '2.5 MB'),
    'coi-diagnostic': AssetInfo(
        'cognitive-overhead-index.xlsx', 'Cognitive Overhead Index Diagnostic',
        'Spreadsheet for measuring institutional drag',
        'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet', '850 KB'),
    'vp-agent-templates': AssetInfo(
        'vp-agent-templates.pdf', 'VP-Agent Templates',
        'Templates for top-level autonomous agents', 'application/pdf', '1.2 MB'),
    'sub-agent-ladders': AssetInfo(
        'sub-agent-ladders.pdf', 'Sub-Agent Ladders',
        'Agent organization patterns and delegation protocols', 'application/pdf', '980 KB'),
    'escalation-protocols': AssetInfo(
        'escalation-override-protocols.pdf', 'Escalation & Override Protocols',
        'Human oversight and intervention patterns', 'application/pdf', '750 KB'),
    'implementation-guide': AssetInfo(
        'implementation-guide.pdf', 'Implementation Guide',
        'Setup and deployment instructions', 'application/pdf', '1.5 MB'),
    'full-bonus-pack': AssetInfo(
        'bonus-pack-complete.zip', 'Complete Bonus Pack',
        'All bonus materials in one archive', 'application/zip', '8.5 MB'),
}

EXCERPT_ASSET_ID = 'excerpt'
EXCERPT_ASSET = AssetInfo(
    'ai-born-excerpt.pdf', 'Book Excerpt', 'Early-reader excerpt of the book', 'application/pdf', '1.1 MB')


@dataclass(frozen=True)
class VerifiedToken:
    claim_id: int
    email: str
    asset_id: str
    expires_at: int


def _epoch(now) -> int:
    if now is None:
        return int(time.time())
    if isinstance(now, (int, float)):
        return int(now)
    return calendar.timegm(now.utctimetuple())


class AssetTokenSigner:
    def __init__(self, secret, ttl=DEFAULT_TTL, salt=TOKEN_SALT):
        self.secret = secret
        self.ttl = ttl
        self.salt = salt

    def _serializer(self):
        if not self.secret:
            raise TokenMissingSecret()
        return URLSafeSerializer(self.secret, salt=self.salt, signer_kwargs={'digest_method': hashlib.sha256})

    def issue(self, claim_id, email, asset_id, now=None) -> str:
        serializer = self._serializer()
        iat = _epoch(now)
        payload = {
            'cid': int(claim_id),
            'em': (email or '').strip().lower(),
            'ast': asset_id,
            'iat': iat,
            'exp': iat + int(self.ttl.total_seconds()),
            'v': TOKEN_VERSION,
        }
        return serializer.dumps(payload)

    def verify(self, token, expected_asset_id, now=None) -> VerifiedToken:
        serializer = self._serializer()
        if not isinstance(token, str) or not token:
            raise TokenMalformed()

        # Compare the encoded signature itself so that no alternate encoding
        # of the same digest bytes is accepted.
        value, sep, sig = token.rpartition('.')
        if not sep:
            raise TokenSignatureInvalid()
        expected = serializer.make_signer().get_signature(value)
        if not hmac.compare_digest(expected, want_bytes(sig)):
            raise TokenSignatureInvalid()

        try:
            payload = serializer.load_payload(want_bytes(value))
        except BadData:
            raise TokenMalformed()
        try:
            claim_id = int(payload['cid'])
            email = str(payload['em'])
            asset_id = str(payload['ast'])
            exp = int(payload['exp'])
        except (TypeError, KeyError, ValueError):
            raise TokenMalformed()

        if _epoch(now) >= exp:
            raise TokenExpired()
        if asset_id != expected_asset_id:
            raise TokenAssetMismatch()
        return VerifiedToken(claim_id, email, asset_id, exp)


def signer() -> AssetTokenSigner:
    cfg = current_app.config
    return AssetTokenSigner(cfg.get('BONUS_TOKEN_SECRET'), timedelta(hours=cfg.get('BONUS_TOKEN_TTL_HOURS', 24)))


def issue_asset_token(claim_id, email, asset_id, now=None) -> str:
    return signer().issue(claim_id, email, asset_id, now)


def verify_asset_token(token, expected_asset_id, now=None) -> VerifiedToken:
    return signer().verify(token, expected_asset_id, now)


def extract_token(authorization_header, query_token):
    """Bearer header first, then the ``token`` query parameter."""
    if authorization_header and authorization_header.startswith('Bearer '):
        token = authorization_header[len('Bearer '):].strip()
        if token:
            return token
    return query_token or None


def download_urls(claim_id, email, base_url) -> dict:
    s = signer()
    root = base_url.rstrip('/')
    return {
        asset: f"{root}/api/bonus/download/{asset}?token={quote(s.issue(claim_id, email, asset))}"
        for asset in BONUS_ASSETS
    }


def excerpt_signer() -> AssetTokenSigner:
    cfg = current_app.config
    return AssetTokenSigner(cfg.get('BONUS_TOKEN_SECRET'), timedelta(days=cfg.get('EXCERPT_TOKEN_TTL_DAYS', 7)),
                            salt=EXCERPT_SALT)


def verify_excerpt_token(token, now=None) -> VerifiedToken:
    """``claim_id`` of the result is the excerpt entitlement's id."""
    return excerpt_signer().verify(token, EXCERPT_ASSET_ID, now)


def excerpt_url(entitlement_id, email, base_url, now=None) -> str:
    token = excerpt_signer().issue(entitlement_id, email, EXCERPT_ASSET_ID, now)
    return f"{base_url.rstrip('/')}/api/excerpt/download?token={quote(token)}"
