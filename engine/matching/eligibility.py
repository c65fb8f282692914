"""
Eligibility Filter
Hard filters applied before scoring. Rules only exclude on known data; a
missing field never invents a requirement.
"""
import re
from collections.abc import Iterable
from datetime import datetime
from typing import Optional

from backend.models import AnnouncementStatus, AnnouncementType

from .models import (
    AnnouncementData,
    EligibilityResult,
    ExcludedAnnouncement,
    ExclusionReason,
    OrganizationProfile,
)

_WHITESPACE = re.compile(r"\s+")
_OPEN = r"[\[\(（【]"
_CLOSE = r"[\]\)）】]"
_REPOST_TAG = re.compile(
    rf"^{_OPEN}\s*(?:재공고|재게시|수정공고|정정공고|re-?post(?:ed)?)\s*{_CLOSE}\s*",
    re.IGNORECASE,
)
_YEAR_PREFIX = re.compile(rf"^(?:{_OPEN}\s*20\d{{2}}\s*(?:년도?)?\s*{_CLOSE}|\d{{4}}년도?)\s*")
_TRAILING_PARENTHETICAL = re.compile(r"\s*[\(（][^\(\)（）]*[\)）]\s*$")
_YEAR_SUFFIX = re.compile(rf"[\s_]*{_OPEN}?(?<![0-9A-Za-z])20\d{{2}}(?:년도?)?{_CLOSE}?\s*$")
_ROUND_MARKER = re.compile(r"\d+\s*(?:회차|차)|\d+(?:st|nd|rd|th)\s+round|round\s*\d+", re.IGNORECASE)


def check_eligibility(
    profile: OrganizationProfile,
    announcement: AnnouncementData,
    now: Optional[datetime] = None,
) -> Optional[ExclusionReason]:
    """
    Return the first rule that excludes the announcement, or None if eligible.

    Args:
        profile: Organization profile.
        announcement: Candidate announcement.
        now: Reference time for the deadline rule; skipped when None.
    """
    if announcement.status != AnnouncementStatus.ACTIVE:
        return ExclusionReason.INACTIVE

    if announcement.announcement_type != AnnouncementType.R_D_PROJECT:
        return ExclusionReason.NOT_RD_PROJECT

    targets = {t.strip().upper() for t in announcement.target_types if t and t.strip()}
    if targets and profile.type.value not in targets:
        return ExclusionReason.ORG_TYPE

    allowed = {s.strip().casefold() for s in announcement.allowed_business_structures if s and s.strip()}
    structure = (profile.business_structure or "").strip().casefold()
    if allowed and structure and structure not in allowed:
        return ExclusionReason.BUSINESS_STRUCTURE

    trl = profile.technology_readiness_level
    if trl is not None:
        if announcement.min_trl is not None and trl < announcement.min_trl:
            return ExclusionReason.TRL_RANGE
        if announcement.max_trl is not None and trl > announcement.max_trl:
            return ExclusionReason.TRL_RANGE

    if now is not None and announcement.deadline is not None and announcement.deadline < now:
        return ExclusionReason.DEADLINE_PASSED

    return None


def filter_eligible(
    profile: OrganizationProfile,
    announcements: Iterable[AnnouncementData],
    now: Optional[datetime] = None,
) -> EligibilityResult:
    """
    Split candidates into eligible and excluded announcements.

    Input order is preserved in both lists. No side effects.
    """
    result = EligibilityResult()
    for announcement in announcements:
        reason = check_eligibility(profile, announcement, now)
        if reason is None:
            result.eligible.append(announcement)
        else:
            result.excluded.append(
                ExcludedAnnouncement(announcement_id=announcement.id, reason=reason)
            )
    return result


def normalize_title(title: str) -> str:
    """
    Normalize a title for duplicate detection.

    Drops re-post tags, a leading year ("2025년도", "[2025]"), a trailing
    parenthetical and a trailing year, then folds case and spacing. Round
    markers such as "[1차]" or "(2nd round)" are kept so that separate rounds
    of a program stay distinct.
    """
    normalized = (title or "").strip()
    previous = None
    while previous != normalized:
        previous = normalized
        normalized = _REPOST_TAG.sub("", normalized)
        normalized = _YEAR_PREFIX.sub("", normalized)

    trailing = _TRAILING_PARENTHETICAL.search(normalized)
    if trailing and not _ROUND_MARKER.search(trailing.group(0)):
        normalized = normalized[: trailing.start()]
    normalized = _YEAR_SUFFIX.sub("", normalized)
    return _WHITESPACE.sub(" ", normalized).strip().casefold()


def deduplicate_announcements(announcements: Iterable[AnnouncementData]) -> list[AnnouncementData]:
    """
    Collapse re-posted announcements sharing (agency_id, normalized title).

    Within a group, an announcement with a deadline wins over one without,
    then the earliest published one. Output keeps the position of the first
    occurrence of each group.
    """
    order: list[tuple[str, str]] = []
    best: dict[tuple[str, str], AnnouncementData] = {}

    for announcement in announcements:
        key = (announcement.agency_id, normalize_title(announcement.title))
        if not key[1]:
            key = (announcement.agency_id, str(announcement.id))
        current = best.get(key)
        if current is None:
            order.append(key)
            best[key] = announcement
        elif _dedup_rank(announcement) < _dedup_rank(current):
            best[key] = announcement

    return [best[key] for key in order]


def _dedup_rank(announcement: AnnouncementData) -> tuple:
    published = announcement.published_at.timestamp() if announcement.published_at else float("inf")
    return (announcement.deadline is None, published, str(announcement.id))
