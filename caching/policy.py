"""
Endpoint cache policy.
Loads the endpoint -> key template -> TTL table from YAML and renders keys.
"""

import logging
import os
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, List, Optional

import yaml


logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = Path(__file__).parent / 'cache_policy.yml'


class CachePolicyError(Exception):
    """Raised when the cache policy cannot be loaded or an endpoint is unknown."""
    pass


@dataclass(frozen=True)
class EndpointPolicy:
    name: str
    key_template: str
    ttl_class: str
    ttl_seconds: int
    degraded_ttl_seconds: Optional[int] = None

    @property
    def fields(self) -> List[str]:
        """Placeholder names in the key template, in order."""
        return [
            name for _, name, _, _ in string.Formatter().parse(self.key_template)
            if name
        ]


class CachePolicy:
    """Endpoint cache table: canonical keys and TTLs."""

    def __init__(self, endpoints: Dict[str, EndpointPolicy], ttl_classes: Dict[str, int]):
        self.endpoints = endpoints
        self.ttl_classes = ttl_classes

    def endpoint(self, name: str) -> EndpointPolicy:
        try:
            return self.endpoints[name]
        except KeyError:
            raise CachePolicyError(f"No cache policy for endpoint: {name}")

    def ttl_for(self, name: str) -> int:
        return self.endpoint(name).ttl_seconds

    def degraded_ttl_for(self, name: str) -> int:
        """TTL for a partial result; the normal TTL when no degraded class is set."""
        policy = self.endpoint(name)
        if policy.degraded_ttl_seconds is None:
            return policy.ttl_seconds
        return policy.degraded_ttl_seconds

    def key_for(self, name: str, **params: Any) -> str:
        """
        Render the canonical key for an endpoint.

        Values are lower-cased so mixed-case addresses share one entry.

        Raises:
            CachePolicyError: If the endpoint is unknown or a placeholder is missing
        """
        policy = self.endpoint(name)
        missing = [f for f in policy.fields if params.get(f) is None]
        if missing:
            raise CachePolicyError(f"Missing key parameters for {name}: {missing}")

        rendered = {f: str(params[f]).strip().lower() for f in policy.fields}
        return policy.key_template.format(**rendered)

    def operator_prefixes(self, operator_id: str) -> List[str]:
        """
        Keys or key stems covering every cached entry of one operator.

        Operator-scoped templates are cut right after '{operator_id}', so each
        returned stem is either a full key or followed by ':' and qualifiers.
        """
        identity = operator_id.strip().lower()
        prefixes = []
        for policy in self.endpoints.values():
            template = policy.key_template
            marker = '{operator_id}'
            if marker in template:
                head = template[:template.index(marker)]
                prefixes.append(head + identity)

        return prefixes

    def static_prefix(self, name: str) -> str:
        """Literal part of an endpoint template before its first placeholder."""
        template = self.endpoint(name).key_template
        if '{' not in template:
            return template
        return template[:template.index('{')]


def load_cache_policy(policy_path: Optional[str] = None) -> CachePolicy:
    """
    Load the endpoint cache table from YAML.

    Args:
        policy_path: Path to policy file (defaults to CACHE_POLICY_PATH, then
            the bundled cache_policy.yml)

    Returns:
        CachePolicy

    Raises:
        CachePolicyError: If the file is missing, malformed or references an unknown TTL class
    """
    if policy_path is None:
        policy_path = os.getenv('CACHE_POLICY_PATH') or str(DEFAULT_POLICY_PATH)

    policy_file = Path(policy_path)
    if not policy_file.exists():
        raise CachePolicyError(f"Cache policy file not found: {policy_path}")

    try:
        with open(policy_file, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise CachePolicyError(f"Failed to load cache policy: {e}")

    if not isinstance(config, dict):
        raise CachePolicyError("Cache policy must be a mapping")
    for section in ('ttl_classes', 'endpoints'):
        if section not in config:
            raise CachePolicyError(f"Cache policy missing '{section}' section")

    ttl_classes = {}
    for name, seconds in config['ttl_classes'].items():
        if not isinstance(seconds, int) or seconds <= 0:
            raise CachePolicyError(f"TTL class {name} must be a positive integer, got {seconds}")
        ttl_classes[name] = seconds

    endpoints = {}
    for name, entry in config['endpoints'].items():
        if 'key' not in entry or 'ttl_class' not in entry:
            raise CachePolicyError(f"Endpoint {name} needs 'key' and 'ttl_class'")
        ttl_class = entry['ttl_class']
        if ttl_class not in ttl_classes:
            raise CachePolicyError(f"Endpoint {name} uses unknown TTL class: {ttl_class}")
        degraded_class = entry.get('degraded_ttl_class')
        if degraded_class is not None and degraded_class not in ttl_classes:
            raise CachePolicyError(f"Endpoint {name} uses unknown degraded TTL class: {degraded_class}")
        endpoints[name] = EndpointPolicy(
            name=name,
            key_template=entry['key'],
            ttl_class=ttl_class,
            ttl_seconds=ttl_classes[ttl_class],
            degraded_ttl_seconds=ttl_classes[degraded_class] if degraded_class else None,
        )

    logger.debug(f"Loaded cache policy with {len(endpoints)} endpoints from {policy_file}")
    return CachePolicy(endpoints, ttl_classes)
