"""
Cache key layout.

Explanations are stored per fingerprint, with set indexes from organization
and announcement to fingerprints so invalidation is a lookup, not a scan.
"""
import hashlib
from uuid import UUID

EXPLANATION_PREFIX = "explanation"


def explanation_fingerprint(organization_id: UUID, announcement_id: UUID, config_name: str) -> str:
    raw = f"{organization_id}|{announcement_id}|{config_name}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def explanation_key(fingerprint: str) -> str:
    return f"{EXPLANATION_PREFIX}:fp:{fingerprint}"


def explanation_org_index(organization_id: UUID) -> str:
    return f"{EXPLANATION_PREFIX}:idx:org:{organization_id}"


def explanation_announcement_index(announcement_id: UUID) -> str:
    return f"{EXPLANATION_PREFIX}:idx:ann:{announcement_id}"


def programs_key() -> str:
    return "programs:active"


def org_profile_key(organization_id: UUID) -> str:
    return f"org:{organization_id}:profile"


def org_matches_key(organization_id: UUID) -> str:
    return f"org:{organization_id}:matches"


def org_pattern(organization_id: UUID) -> str:
    return f"org:{organization_id}:*"


def ai_spend_key(day: str) -> str:
    return f"ai:spend:{day}"
