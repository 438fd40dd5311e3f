"""
Cache key construction.
Keys follow '{domain}:{scope}:{identity}[:{qualifier...}]'.
"""

import hashlib
import json
import re
from typing import Any, Dict, Optional


KEY_SEPARATOR = ':'
FILTER_HASH_LENGTH = 16

_GLOB_SPECIAL = re.compile(r'([\\*?\[\]])')


class CacheKeyError(Exception):
    """Raised when a key cannot be built from the given parts."""
    pass


def _normalize_part(part: Any) -> str:
    text = str(part).strip()
    if not text:
        raise CacheKeyError("Cache key parts must not be empty")
    return text.lower()


def build_key(domain: str, scope: str, identity: Any, *qualifiers: Any) -> str:
    """
    Build a namespaced cache key.

    Parts are lower-cased so addresses in mixed case share one entry.

    Examples:
        build_key('operators', 'detail', '0xAbC') -> 'operators:detail:0xabc'
        build_key('operators', 'list', 'ab12', 20, 0) -> 'operators:list:ab12:20:0'
    """
    parts = [domain, scope, identity, *qualifiers]
    return KEY_SEPARATOR.join(_normalize_part(p) for p in parts)


def filters_hash(filters: Optional[Dict[str, Any]]) -> str:
    """
    Stable short hash of a filter dict.

    None values are dropped so {} and {'x': None} hash the same.
    """
    cleaned = {k: v for k, v in (filters or {}).items() if v is not None}
    encoded = json.dumps(cleaned, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode('utf-8')).hexdigest()[:FILTER_HASH_LENGTH]


def escape_glob(text: str) -> str:
    """Escape Redis glob metacharacters so text matches literally in SCAN."""
    return _GLOB_SPECIAL.sub(r'\\\1', text)


def prefix_pattern(prefix: str) -> str:
    """SCAN MATCH pattern for every key starting with prefix."""
    return escape_glob(prefix) + '*'
