#!/usr/bin/env python3
# src/revision.py
"""
Revision hashing and structural diffing for generated workloads.

A revision is the hash of a pod template plus an optional collision
counter. Templates are serialized through canonical JSON (sorted keys,
no insignificant whitespace) so map ordering never changes the result.
"""

import copy
import hashlib
import json
import logging
import struct
from typing import Any, Dict, List, Optional

logger = logging.getLogger("emqx-cluster-manager.revision")

# Same alphabet Kubernetes uses for generated name suffixes: no vowels
# (no accidental words) and no look-alike characters.
SAFE_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"

# Paths removed before comparing a stored object against a desired one
IGNORED_TOP_LEVEL_FIELDS = ("status", "apiVersion", "kind")
IGNORED_METADATA_FIELDS = (
    "resourceVersion",
    "uid",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
    "ownerReferences",
)

# Desired workload as last written, compared instead of the normalized live spec
LAST_APPLIED_ANNOTATION = "apps.emqx.io/last-applied"

# Compared live as well: sync scales replicas in place
LIVE_CHECKED_FIELDS = (("spec", "replicas"),)


def canonical_json(obj: Any) -> str:
    """Order-independent JSON encoding used as hash input."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def safe_encode_string(value: str) -> str:
    """Map every character onto SAFE_ALPHABET, as Kubernetes does for hashes."""
    return "".join(SAFE_ALPHABET[ord(ch) % len(SAFE_ALPHABET)] for ch in value)


def compute_hash(template: Dict[str, Any], collision_count: Optional[int] = None) -> str:
    """Short deterministic fingerprint of a pod template.

    The collision counter only takes part in the hash when it is set; a
    counter of 0 and no counter produce different revisions.
    """
    hasher = hashlib.blake2b(digest_size=4)
    hasher.update(canonical_json(template).encode("utf-8"))
    if collision_count is not None:
        hasher.update(struct.pack("<I", int(collision_count) & 0xFFFFFFFF))
    value = int.from_bytes(hasher.digest(), "little")
    return safe_encode_string(str(value))


# -----------------------------
# Last-applied configuration
# -----------------------------


def last_applied_of(obj: Dict[str, Any]) -> Dict[str, Any]:
    """The part of a desired workload recorded in the last-applied annotation."""
    applied = _strip_ignored(obj)
    annotations = (applied.get("metadata") or {}).get("annotations")
    if annotations:
        annotations.pop(LAST_APPLIED_ANNOTATION, None)
    return applied


def set_last_applied(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Record the desired workload on itself before it is sent to the API server."""
    metadata = obj.setdefault("metadata", {})
    metadata["annotations"] = dict(metadata.get("annotations") or {})
    metadata["annotations"][LAST_APPLIED_ANNOTATION] = canonical_json(last_applied_of(obj))
    return obj


def get_last_applied(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Desired workload a stored object was last written from, if it carries one."""
    raw = (((obj or {}).get("metadata") or {}).get("annotations") or {}).get(LAST_APPLIED_ANNOTATION)
    if not raw:
        return None
    try:
        applied = json.loads(raw)
    except ValueError as e:
        logger.warning(f"Ignoring unreadable {LAST_APPLIED_ANNOTATION} annotation: {e}")
        return None
    return applied if isinstance(applied, dict) else None


# -----------------------------
# Structural diff
# -----------------------------


def _strip_ignored(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a workload without status-only and volume-claim-status fields."""
    stripped = copy.deepcopy(obj or {})
    for field in IGNORED_TOP_LEVEL_FIELDS:
        stripped.pop(field, None)
    metadata = stripped.get("metadata") or {}
    for field in IGNORED_METADATA_FIELDS:
        metadata.pop(field, None)
    for claim in (stripped.get("spec") or {}).get("volumeClaimTemplates") or []:
        claim.pop("status", None)
        claim.pop("apiVersion", None)
        claim.pop("kind", None)
    return stripped


def _diff(current: Any, desired: Any, path: str, changes: List[Dict[str, Any]]):
    """Lenient diff against a live object: fields left unset in desired are skipped."""
    if current is None and desired in ({}, []):
        # The API server drops empty maps and lists
        return
    if isinstance(desired, dict):
        if not isinstance(current, dict):
            changes.append({"path": path, "old": current, "new": desired})
            return
        for key in sorted(desired):
            _diff(current.get(key), desired[key], f"{path}.{key}", changes)
        return
    if isinstance(desired, list):
        if not isinstance(current, list) or len(current) != len(desired):
            changes.append({"path": path, "old": current, "new": desired})
            return
        for i, (cur, des) in enumerate(zip(current, desired)):
            _diff(cur, des, f"{path}[{i}]", changes)
        return
    if desired is None:
        # Unset in the desired object: leave whatever the server defaulted
        return
    if current != desired:
        changes.append({"path": path, "old": current, "new": desired})


def _exact_diff(original: Any, desired: Any, path: str, changes: List[Dict[str, Any]]):
    """Exact diff between two desired objects, removed fields included."""
    if isinstance(original, dict) and isinstance(desired, dict):
        for key in sorted(set(original) | set(desired)):
            _exact_diff(original.get(key), desired.get(key), f"{path}.{key}", changes)
        return
    if isinstance(original, list) and isinstance(desired, list) and len(original) == len(desired):
        for i, (orig, des) in enumerate(zip(original, desired)):
            _exact_diff(orig, des, f"{path}[{i}]", changes)
        return
    if original != desired:
        changes.append({"path": path, "old": original, "new": desired})


def _live_diff(current: Dict[str, Any], desired: Dict[str, Any], changes: List[Dict[str, Any]]):
    for field_path in LIVE_CHECKED_FIELDS:
        cur, des = current, desired
        for key in field_path:
            cur = (cur or {}).get(key)
            des = (des or {}).get(key)
        path = "." + ".".join(field_path)
        if des is not None and cur != des and all(c["path"] != path for c in changes):
            changes.append({"path": path, "old": cur, "new": des})


def calculate_patch(current: Dict[str, Any], desired: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Fields of the desired object that the stored object is out of date on.

    A stored object written by this controller is compared through its
    last-applied annotation, so defaulting and quantity normalization by
    the API server never show up as changes. Fields in LIVE_CHECKED_FIELDS
    are also compared live, since sync scales replicas in place.

    Objects without the annotation fall back to a lenient live diff that
    ignores status, server-managed metadata and fields the desired object
    leaves unset. An empty list means no update.
    """
    changes: List[Dict[str, Any]] = []
    original = get_last_applied(current)
    if original is None:
        _diff(_strip_ignored(current), _strip_ignored(desired), "", changes)
        return changes
    _exact_diff(original, last_applied_of(desired), "", changes)
    _live_diff(current, desired, changes)
    return changes


def _pod_template_spec(obj: Dict[str, Any]) -> Dict[str, Any]:
    template = copy.deepcopy(((obj or {}).get("spec") or {}).get("template") or {})
    template.pop("metadata", None)
    return template


def calculate_pod_template_patch(
    current: Dict[str, Any], desired: Dict[str, Any]
) -> List[Dict[str, Any]]:
    """Diff restricted to the pod template, ignoring name and selector metadata.

    Uses the stored object's last-applied template when it has one.
    """
    changes: List[Dict[str, Any]] = []
    original = get_last_applied(current)
    if original is None:
        _diff(_pod_template_spec(current), _pod_template_spec(desired), ".spec.template", changes)
    else:
        _exact_diff(_pod_template_spec(original), _pod_template_spec(desired), ".spec.template", changes)
    return changes


def format_patch(changes: List[Dict[str, Any]]) -> str:
    """Compact rendering of a diff for debug logging."""
    return canonical_json({c["path"]: c["new"] for c in changes})
