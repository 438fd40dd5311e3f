"""
AVS metadata enrichment.
Fetches metadata documents referenced by AVS metadata URIs, normalises them
and caches successful results. Failures degrade to None enrichment.
"""

import asyncio
import logging
from typing import Dict, Any, Optional, Sequence

import requests

from analysis.records import AvsRecord
from caching.policy import CachePolicy
from caching.store import CacheStore


logger = logging.getLogger(__name__)

IPFS_GATEWAY = 'https://ipfs.io/ipfs/'
ARWEAVE_GATEWAY = 'https://arweave.net/'
DEFAULT_TIMEOUT_S = 10.0

SOCIAL_FIELDS = ('twitter', 'discord', 'telegram')


def resolve_uri(uri: Optional[str]) -> Optional[str]:
    """
    Rewrite content-addressed URIs to HTTPS gateway URLs.

    Args:
        uri: ipfs://, ar://, http(s):// URI or None

    Returns:
        Fetchable URL, or None for empty or unsupported schemes
    """
    if not uri:
        return None

    uri = uri.strip()
    if uri.startswith('ipfs://'):
        return IPFS_GATEWAY + uri[len('ipfs://'):].lstrip('/')
    if uri.startswith('ar://'):
        return ARWEAVE_GATEWAY + uri[len('ar://'):].lstrip('/')
    if uri.startswith('http://') or uri.startswith('https://'):
        return uri
    return None


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def normalize_metadata(document: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """
    Map a raw metadata document onto a fixed set of fields.

    'logo' falls back to 'image' and 'website' to 'url'; social handles are
    read from the top level first, then from a nested 'social' object.
    """
    social = document.get('social') if isinstance(document.get('social'), dict) else {}

    metadata = {
        'name': _clean(document.get('name')),
        'description': _clean(document.get('description')),
        'logo': resolve_uri(_clean(document.get('logo')) or _clean(document.get('image'))),
        'website': _clean(document.get('website')) or _clean(document.get('url')),
    }
    for field in SOCIAL_FIELDS:
        metadata[field] = _clean(document.get(field)) or _clean(social.get(field))

    return metadata


def fetch_metadata_document(uri: str, timeout: float = DEFAULT_TIMEOUT_S) -> Optional[Dict[str, Any]]:
    """
    Download and decode one metadata document.

    Args:
        uri: Metadata URI (any supported scheme)
        timeout: Request timeout in seconds

    Returns:
        Decoded JSON object, or None when the URI is unsupported or the fetch fails
    """
    url = resolve_uri(uri)
    if url is None:
        logger.warning(f"Unsupported metadata URI: {uri}")
        return None

    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        document = response.json()
    except requests.RequestException as e:
        logger.warning(f"Metadata fetch failed for {url}: {e}")
        return None
    except ValueError as e:
        logger.warning(f"Metadata at {url} is not valid JSON: {e}")
        return None

    if not isinstance(document, dict):
        logger.warning(f"Metadata at {url} is not a JSON object")
        return None
    return document


class AvsMetadataResolver:
    """
    Metadata lookup for one request.

    Checks a request-local memo, then the shared cache, then the network.
    Create one per request; the memo never outlives it.
    """

    def __init__(
        self,
        store: CacheStore,
        policy: CachePolicy,
        timeout: float = DEFAULT_TIMEOUT_S
    ):
        self.store = store
        self.policy = policy
        self.timeout = timeout
        self._memo: Dict[str, Optional[Dict[str, Optional[str]]]] = {}

    async def resolve(self, avs: AvsRecord) -> Optional[Dict[str, Optional[str]]]:
        """
        Normalised metadata for one AVS.

        Returns:
            Metadata dict, or None when there is no URI or the fetch failed.
            Failed fetches are not cached so the next request retries.
        """
        key = self.policy.key_for('avs_metadata', avs_id=avs.avs_id)
        if key in self._memo:
            return self._memo[key]

        cached = await self.store.get(key)
        if cached is not None:
            self._memo[key] = cached
            return cached

        if not avs.metadata_uri:
            self._memo[key] = None
            return None

        document = await asyncio.to_thread(fetch_metadata_document, avs.metadata_uri, self.timeout)
        if document is None:
            self._memo[key] = None
            return None

        metadata = normalize_metadata(document)
        await self.store.set(key, metadata, self.policy.ttl_for('avs_metadata'))
        self._memo[key] = metadata
        return metadata

    async def resolve_many(
        self,
        avs_records: Sequence[AvsRecord]
    ) -> Dict[str, Optional[Dict[str, Optional[str]]]]:
        """Resolve several AVSs concurrently, keyed by lower-cased avs_id."""
        results = await asyncio.gather(*(self.resolve(avs) for avs in avs_records))
        return {avs.avs_id.lower(): result for avs, result in zip(avs_records, results)}
