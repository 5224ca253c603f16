#!/usr/bin/env python3
import os, sys, json, time
import pathlib

# Usage: python scripts/check_token.py <TOKEN> <ASSET_ID> [SECRET|-]
# With '-' or no secret, reads env BONUS_TOKEN_SECRET.

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bookpromo.services.tokens import AssetTokenSigner, TokenError

if len(sys.argv) < 3:
    print("Usage: check_token.py <TOKEN> <ASSET_ID> [SECRET|-]")
    sys.exit(1)

token = sys.argv[1].strip()
asset_id = sys.argv[2].strip()
secret = sys.argv[3].strip() if len(sys.argv) > 3 and sys.argv[3] != '-' else os.environ.get('BONUS_TOKEN_SECRET')

try:
    verified = AssetTokenSigner(secret).verify(token, asset_id)
except TokenError as e:
    print(f"ERROR: {e.code} ({e.status}) {e.message}")
    sys.exit(1)

print(json.dumps({
    'claim_id': verified.claim_id,
    'email': verified.email,
    'asset_id': verified.asset_id,
    'expires_at': verified.expires_at,
    'expires_in_s': verified.expires_at - int(time.time()),
}, indent=2))
