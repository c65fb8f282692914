"""
Organization profile updates.

Every accepted update bumps ``updated_at`` strictly forward, which makes any
explanation cached from the previous profile stale. The organization's
cached entries are invalidated right away, and a material change (one that
affects eligibility or scoring) also drops its unsaved matches.
"""
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.exceptions import OrganizationNotFoundError, StorageFailureError
from backend.models import Organization, OrganizationType
from backend.utils.business_calendar import utcnow
from engine.cache.invalidation import InvalidationController, InvalidationReport

from .models import OrganizationProfile, TRLValue
from .repository import SqlMatchStore

logger = structlog.get_logger().bind(component="profiles")

MATERIAL_FIELDS = frozenset({
    "type",
    "industry_sector",
    "technology_readiness_level",
    "rd_experience",
    "business_structure",
})

# Cannot be cleared by an update; an explicit null is rejected
REQUIRED_FIELDS = frozenset({"name", "type", "rd_experience", "certifications", "research_focus_areas"})


class ProfileUpdate(BaseModel):
    """
    Partial profile update. Unknown fields, non-integer TRL and an explicit
    null for a required field are rejected; an omitted field is left as is.
    """

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1)
    type: Optional[OrganizationType] = None
    industry_sector: Optional[str] = None
    employee_count_band: Optional[str] = None
    technology_readiness_level: Optional[TRLValue] = None
    rd_experience: Optional[bool] = None
    business_structure: Optional[str] = None
    certifications: Optional[list[str]] = None
    research_focus_areas: Optional[list[str]] = None

    @field_validator(*sorted(REQUIRED_FIELDS), mode="before")
    @classmethod
    def reject_clearing_required(cls, value: Any, info: ValidationInfo) -> Any:
        # Defaults are not validated, so this only sees values sent explicitly
        if value is None:
            raise ValueError(f"{info.field_name} is required and cannot be cleared")
        return value


class ProfileUpdateResult(BaseModel):
    profile: OrganizationProfile
    changed_fields: list[str]
    material_change: bool
    matches_removed: int = 0
    invalidation: Optional[InvalidationReport] = None


class ProfileService:
    def __init__(
        self,
        session: Session,
        invalidation: InvalidationController,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.invalidation = invalidation
        self.matches = SqlMatchStore(session)
        self.clock = clock

    def update_profile(self, organization_id: UUID, update: ProfileUpdate) -> ProfileUpdateResult:
        """
        Apply a profile update and invalidate dependent caches.

        Raises:
            OrganizationNotFoundError: Unknown organization.
            StorageFailureError: The update could not be committed.
        """
        organization = self.session.get(Organization, organization_id)
        if organization is None:
            raise OrganizationNotFoundError(str(organization_id))

        values: dict[str, Any] = update.model_dump(exclude_unset=True)
        changed = sorted(
            name for name, value in values.items()
            if getattr(organization, name) != value
        )
        if not changed:
            return ProfileUpdateResult(
                profile=OrganizationProfile.model_validate(organization),
                changed_fields=[],
                material_change=False,
            )

        now = self.clock()
        for name in changed:
            setattr(organization, name, values[name])
        # Strictly increasing even when the clock does not move
        previous = organization.updated_at
        organization.updated_at = now if previous is None or now > previous else previous + timedelta(microseconds=1)
        organization.last_active_at = now

        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("profile_update_failed", organization_id=str(organization_id), error=str(e))
            raise StorageFailureError() from e

        material = bool(MATERIAL_FIELDS.intersection(changed))
        removed = self.matches.delete_unsaved_for_organization(organization_id) if material else 0
        report = self.invalidation.invalidate_organization(organization_id)

        logger.info(
            "profile_updated",
            organization_id=str(organization_id),
            changed_fields=changed,
            material_change=material,
            matches_removed=removed,
        )
        return ProfileUpdateResult(
            profile=OrganizationProfile.model_validate(organization),
            changed_fields=changed,
            material_change=material,
            matches_removed=removed,
            invalidation=report,
        )
