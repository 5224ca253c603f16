#!/usr/bin/env python3
import sys, json, redis

# Usage: python scripts/check_redis.py <REDIS_URL> [SCOPE]
# Lists live rate-limit counters (rl:<scope>:<key>:<window>) and their TTLs

if len(sys.argv) < 2:
    print("Usage: check_redis.py <REDIS_URL> [SCOPE]")
    sys.exit(1)

url = sys.argv[1].strip()
scope = sys.argv[2].strip() if len(sys.argv) > 2 else '*'

r = redis.from_url(url, decode_responses=True)

counters = []
for key in r.scan_iter(match=f"rl:{scope}:*"):
    counters.append({'key': key, 'count': int(r.get(key) or 0), 'ttl_s': r.ttl(key)})

print(json.dumps({
    'redis': url,
    'ping': r.ping(),
    'pattern': f"rl:{scope}:*",
    'counters': sorted(counters, key=lambda c: -c['count']),
}, indent=2))
