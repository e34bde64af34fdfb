"""Cache key computation for builds.

This module handles:
- Canonical serialization of profile data (keys sorted recursively)
- Deterministic hash computation over profile, scripts, ISO checksum, arch
- Cache lookup against the image registry

Two builds with identical cache keys are interchangeable. The key is an
opaque 16-character hex string and must never be parsed.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pim_build.arch import normalize

if TYPE_CHECKING:
    from pim_build.builds.registry import Registry
    from pim_build.builds.scripts import ProvisioningScript

logger = logging.getLogger(__name__)

CACHE_KEY_LENGTH = 16

_CHECKSUM_PREFIX = re.compile(r"^sha\d+:")


def canonical_json(data: Mapping[str, Any]) -> str:
    """Serialize a mapping to canonical JSON (sorted keys, compact)."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def strip_checksum_prefix(checksum: str | None) -> str:
    """Remove an algorithm prefix such as ``sha256:`` from a checksum."""
    return _CHECKSUM_PREFIX.sub("", checksum or "")


def compute_cache_key(
    profile_data: Mapping[str, Any],
    scripts: Iterable[ProvisioningScript],
    source_checksum: str | None,
    arch: str,
) -> str:
    """Compute the cache key for one buildable combination.

    Args:
        profile_data: Merged profile fields.
        scripts: Resolved provisioning scripts, in execution order.
        source_checksum: Checksum of the installer ISO.
        arch: Target architecture (normalized before hashing).

    Returns:
        Cache key as a 16-character hex string.
    """
    components = [hashlib.sha256(canonical_json(profile_data).encode("utf-8")).hexdigest()]
    components.extend(script.digest for script in scripts)
    components.append(strip_checksum_prefix(source_checksum))
    components.append(normalize(arch))

    digest = hashlib.sha256(":".join(components).encode("utf-8")).hexdigest()
    return digest[:CACHE_KEY_LENGTH]


def cached_image(
    registry: Registry,
    profile: str,
    arch: str,
    cache_key: str,
) -> Path | None:
    """Return the cached image path for a profile/arch if still valid.

    A hit requires a registry entry for the pair, an identical cache key,
    and the image file still present on disk. Any failure is a miss.

    Args:
        registry: Image registry.
        profile: Profile name.
        arch: Target architecture.
        cache_key: Cache key computed for the requested build.

    Returns:
        Path to the cached image, or None on a miss.
    """
    try:
        entry = registry.find(profile=profile, arch=normalize(arch))
        if entry is None or entry.cache_key != cache_key:
            return None
        path = Path(entry.path)
        if not path.is_file():
            return None
        return path
    except Exception as e:  # cache lookups never fail a build
        logger.warning("Cache lookup failed for %s-%s: %s", profile, arch, e)
        return None


__all__ = [
    "CACHE_KEY_LENGTH",
    "cached_image",
    "canonical_json",
    "compute_cache_key",
    "strip_checksum_prefix",
]
