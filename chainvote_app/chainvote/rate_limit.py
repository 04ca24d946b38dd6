import hashlib
from collections.abc import Sequence

from django.core.cache import cache


def _cache_key(scope: str, key_parts: Sequence[str]) -> str:
    joined = "\x1f".join(str(part or "").strip().lower() for part in key_parts)
    digest = hashlib.sha256(joined.encode("utf-8")).hexdigest()
    return f"chainvote:rl:{scope}:{digest}"


def allow_request(*, scope: str, key_parts: Sequence[str], limit: int, window_seconds: int) -> bool:
    """Count one hit against (scope, key_parts); False once the limit is exceeded."""
    key = _cache_key(scope, key_parts)
    cache.add(key, 0, timeout=window_seconds)
    try:
        count = int(cache.incr(key))
    except ValueError:
        # Expired between add() and incr().
        cache.set(key, 1, timeout=window_seconds)
        count = 1

    # Some backends drop the TTL on incr(); put it back.
    cache.touch(key, timeout=window_seconds)
    return count <= limit


def limit_reached(*, scope: str, key_parts: Sequence[str], limit: int) -> bool:
    """Check the counter without adding a hit."""
    count = cache.get(_cache_key(scope, key_parts))
    return count is not None and int(count) >= limit
