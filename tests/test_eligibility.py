"""
Tests for the eligibility filter and announcement de-duplication.
"""
import uuid
from datetime import timedelta

import pytest

from backend.models import AnnouncementStatus, AnnouncementType
from engine.matching.eligibility import (
    check_eligibility,
    deduplicate_announcements,
    filter_eligible,
    normalize_title,
)
from engine.matching.models import ExclusionReason


class TestCheckEligibility:
    """Hard filters applied before scoring."""

    def test_matching_announcement_is_eligible(self, sample_profile, make_announcement_data, fixed_now):
        assert check_eligibility(sample_profile, make_announcement_data(), fixed_now) is None

    def test_inactive_is_excluded(self, sample_profile, make_announcement_data):
        announcement = make_announcement_data(status=AnnouncementStatus.EXPIRED)
        assert check_eligibility(sample_profile, announcement) == ExclusionReason.INACTIVE

    def test_non_rd_project_is_excluded(self, sample_profile, make_announcement_data):
        announcement = make_announcement_data(announcement_type=AnnouncementType.SURVEY)
        assert check_eligibility(sample_profile, announcement) == ExclusionReason.NOT_RD_PROJECT

    def test_unclassified_announcement_is_excluded(self, sample_profile, make_announcement_data):
        announcement = make_announcement_data(announcement_type=AnnouncementType.UNKNOWN)
        assert check_eligibility(sample_profile, announcement) == ExclusionReason.NOT_RD_PROJECT

    def test_wrong_organization_type_is_excluded(self, sample_profile, make_announcement_data):
        announcement = make_announcement_data(target_types=["UNIVERSITY", "RESEARCH_INSTITUTE"])
        assert check_eligibility(sample_profile, announcement) == ExclusionReason.ORG_TYPE

    def test_target_types_are_case_insensitive(self, sample_profile, make_announcement_data):
        announcement = make_announcement_data(target_types=[" company "])
        assert check_eligibility(sample_profile, announcement) is None

    def test_disallowed_business_structure_is_excluded(self, sample_profile, make_announcement_data):
        announcement = make_announcement_data(allowed_business_structures=["Startup"])
        assert check_eligibility(sample_profile, announcement) == ExclusionReason.BUSINESS_STRUCTURE

    def test_unknown_business_structure_is_not_excluded(self, sample_profile, make_announcement_data):
        profile = sample_profile.model_copy(update={"business_structure": None})
        announcement = make_announcement_data(allowed_business_structures=["Startup"])
        assert check_eligibility(profile, announcement) is None

    def test_trl_outside_range_is_excluded(self, sample_profile, make_announcement_data):
        announcement = make_announcement_data(min_trl=1, max_trl=4)
        assert check_eligibility(sample_profile, announcement) == ExclusionReason.TRL_RANGE

    def test_missing_trl_is_not_excluded(self, sample_profile, make_announcement_data):
        profile = sample_profile.model_copy(update={"technology_readiness_level": None})
        announcement = make_announcement_data(min_trl=1, max_trl=4)
        assert check_eligibility(profile, announcement) is None

    def test_passed_deadline_is_excluded_only_with_reference_time(
        self, sample_profile, make_announcement_data, fixed_now
    ):
        announcement = make_announcement_data(deadline=fixed_now - timedelta(hours=1))

        assert check_eligibility(sample_profile, announcement, fixed_now) == ExclusionReason.DEADLINE_PASSED
        assert check_eligibility(sample_profile, announcement) is None

    def test_first_failing_rule_wins(self, sample_profile, make_announcement_data):
        announcement = make_announcement_data(
            status=AnnouncementStatus.EXPIRED,
            target_types=["UNIVERSITY"],
        )
        assert check_eligibility(sample_profile, announcement) == ExclusionReason.INACTIVE


class TestFilterEligible:
    def test_splits_and_preserves_order(self, sample_profile, make_announcement_data, fixed_now):
        first = make_announcement_data()
        excluded = make_announcement_data(target_types=["UNIVERSITY"])
        second = make_announcement_data()

        result = filter_eligible(sample_profile, [first, excluded, second], fixed_now)

        assert [a.id for a in result.eligible] == [first.id, second.id]
        assert len(result.excluded) == 1
        assert result.excluded[0].announcement_id == excluded.id
        assert result.excluded[0].reason == ExclusionReason.ORG_TYPE

    def test_empty_input(self, sample_profile):
        result = filter_eligible(sample_profile, [])
        assert result.eligible == []
        assert result.excluded == []


class TestDeduplication:
    @pytest.mark.parametrize(
        "title",
        [
            "[Re-post] ICT  Core Program (Notice)",
            "[재공고] ICT Core Program",
            "2025년도 ICT Core Program",
            "[2025] ICT Core Program",
            "ICT Core Program_2025",
            "ICT Core Program (2025)",
        ],
    )
    def test_normalize_title_drops_repost_and_year_decorations(self, title):
        assert normalize_title(title) == "ict core program"

    @pytest.mark.parametrize(
        "first, second",
        [
            ("[1차] ICT Core Program", "[2차] ICT Core Program"),
            ("2025년도 ICT Core Program (1차)", "2025년도 ICT Core Program (2차)"),
            ("ICT Core Program (1st round)", "ICT Core Program (2nd round)"),
        ],
    )
    def test_rounds_stay_distinct(self, make_announcement_data, first, second):
        assert normalize_title(first) != normalize_title(second)

        rounds = [make_announcement_data(title=first), make_announcement_data(title=second)]

        assert len(deduplicate_announcements(rounds)) == 2

    def test_reposts_collapse_to_one(self, make_announcement_data, fixed_now):
        original = make_announcement_data(
            title="ICT Core Program",
            published_at=fixed_now - timedelta(days=10),
        )
        repost = make_announcement_data(
            title="[Re-post] ICT Core Program",
            published_at=fixed_now - timedelta(days=2),
        )

        result = deduplicate_announcements([repost, original])

        assert [a.id for a in result] == [original.id]

    def test_announcement_with_deadline_wins(self, make_announcement_data, fixed_now):
        undated = make_announcement_data(
            title="ICT Core Program",
            deadline=None,
            published_at=fixed_now - timedelta(days=10),
        )
        dated = make_announcement_data(
            title="ICT Core Program",
            published_at=fixed_now - timedelta(days=1),
        )

        result = deduplicate_announcements([undated, dated])

        assert [a.id for a in result] == [dated.id]

    def test_different_agencies_are_kept(self, make_announcement_data):
        keit = make_announcement_data(title="ICT Core Program", agency_id="KEIT")
        iitp = make_announcement_data(title="ICT Core Program", agency_id="IITP")

        result = deduplicate_announcements([keit, iitp])

        assert [a.id for a in result] == [keit.id, iitp.id]

    def test_untitled_announcements_are_not_merged(self, make_announcement_data):
        first = make_announcement_data(title="", id=uuid.uuid4())
        second = make_announcement_data(title="", id=uuid.uuid4())

        assert len(deduplicate_announcements([first, second])) == 2
