from __future__ import annotations

import hashlib


# Bucket math is part of the wire contract with SDKs; changing any constant
# reshuffles every rollout.
_HASH_PREFIX_BYTES = 4
_HASH_MAX = 0xFFFFFFFF


def rollout_hash(feature_key: str, identifier: str) -> int:
    # First four bytes of SHA-256("<featureKey>:<identifier>") as unsigned big-endian.
    digest = hashlib.sha256(f"{feature_key}:{identifier}".encode("utf-8")).digest()
    return int.from_bytes(digest[:_HASH_PREFIX_BYTES], "big", signed=False)


def rollout_bucket(feature_key: str, identifier: str) -> float:
    # Map the hash onto [0, 100]; stable for a given feature/identifier forever.
    return rollout_hash(feature_key, identifier) / _HASH_MAX * 100


def in_rollout(feature_key: str, identifier: str, percentage: float) -> bool:
    return rollout_bucket(feature_key, identifier) < percentage
