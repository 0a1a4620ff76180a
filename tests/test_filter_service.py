"""Unit tests for FilterService — the two-way queue filter predicate."""
import random
from types import SimpleNamespace

import pytest

from protv.models.profile import SCHOOLS
from protv.services.filter_service import FilterService

MAJORS = ["Computer Science", "Economics", "History", "Biology"]
YEARS = [2025, 2026, 2027, 2028]


def ticket(schools=None, years=None, majors=None):
    return SimpleNamespace(school_filter=schools, class_year_filter=years, major_filter=majors)


def profile(school="Harvard University", year=2026, major="Computer Science"):
    return SimpleNamespace(school=school, class_year=year, major=major)


@pytest.fixture
def filters():
    return FilterService()


class TestDimension:
    def test_null_and_empty_are_wildcards(self, filters):
        assert filters.dimension_passes(None, "anything")
        assert filters.dimension_passes([], "anything")

    def test_membership(self, filters):
        assert filters.dimension_passes([2026, 2027], 2026)
        assert not filters.dimension_passes([2026, 2027], 2025)

    def test_major_is_case_insensitive(self, filters):
        assert filters.dimension_passes(["computer science "], "Computer Science")

    def test_missing_value_fails_a_real_filter(self, filters):
        assert not filters.dimension_passes(["Economics"], None)


class TestMutualCompatibility:
    def test_open_user_pairs_with_restrictive_one(self, filters):
        """A has no filters, B only wants Harvard, A is at Harvard."""
        a_ticket, a_profile = ticket(), profile(school="Harvard University")
        b_ticket, b_profile = ticket(schools=["Harvard University"]), profile(school="Brown University")
        assert filters.mutually_compatible(a_ticket, a_profile, b_ticket, b_profile)

    def test_one_sided_rejection_blocks_the_pair(self, filters):
        """A wants Yale, B is at Harvard with no filters."""
        a_ticket, a_profile = ticket(schools=["Yale University"]), profile(school="Princeton University")
        b_ticket, b_profile = ticket(), profile(school="Harvard University")
        assert not filters.mutually_compatible(a_ticket, a_profile, b_ticket, b_profile)
        assert not filters.mutually_compatible(b_ticket, b_profile, a_ticket, a_profile)

    def test_explain_names_failed_dimensions(self, filters):
        a_ticket, a_profile = ticket(years=[2025], majors=["History"]), profile()
        b_ticket, b_profile = ticket(), profile(year=2027, major="Biology")
        report = filters.explain(a_ticket, a_profile, b_ticket, b_profile)
        assert report == {
            "compatible": False,
            "a_rejects_b_on": ["class_year", "major"],
            "b_rejects_a_on": [],
        }


class TestRandomisedProperty:
    """Random filter sets (including wildcards) against random profiles."""

    @staticmethod
    def _random_subset(rng, values):
        if rng.random() < 0.4:
            return rng.choice([None, []])
        return rng.sample(values, rng.randint(1, len(values)))

    def test_symmetric_and_matches_direct_definition(self, filters):
        rng = random.Random(20240601)
        for _ in range(500):
            ta = ticket(
                self._random_subset(rng, list(SCHOOLS)),
                self._random_subset(rng, YEARS),
                self._random_subset(rng, MAJORS),
            )
            tb = ticket(
                self._random_subset(rng, list(SCHOOLS)),
                self._random_subset(rng, YEARS),
                self._random_subset(rng, MAJORS),
            )
            pa = profile(rng.choice(SCHOOLS), rng.choice(YEARS), rng.choice(MAJORS))
            pb = profile(rng.choice(SCHOOLS), rng.choice(YEARS), rng.choice(MAJORS))

            def direct(t, p):
                return (
                    (not t.school_filter or p.school in t.school_filter)
                    and (not t.class_year_filter or p.class_year in t.class_year_filter)
                    and (not t.major_filter or p.major in t.major_filter)
                )

            expected = direct(ta, pb) and direct(tb, pa)
            assert filters.mutually_compatible(ta, pa, tb, pb) is expected
            assert filters.mutually_compatible(tb, pb, ta, pa) is expected
