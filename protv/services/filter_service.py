"""
ProTV — Filter predicate for queue matching.

A waiting ticket may restrict three dimensions of its counterpart's profile:
school, class year and major.  Each restriction is either absent (NULL or an
empty list, meaning "anyone") or a non-empty set the counterpart's attribute
must belong to.

Two users are compatible only when the check passes in BOTH directions:
  accepts(ticket_A, profile_B)  and  accepts(ticket_B, profile_A)

Asymmetric filters are legal: an open user pairs with a restrictive one as
long as the open user satisfies the restriction.
"""

from __future__ import annotations

from typing import Any, Iterable


class FilterService:
    """Pure, side-effect free compatibility checks over (ticket, profile)."""

    # (ticket attribute, profile attribute)
    DIMENSIONS: tuple[tuple[str, str], ...] = (
        ("school_filter", "school"),
        ("class_year_filter", "class_year"),
        ("major_filter", "major"),
    )

    # ── Single dimension ────────────────────────────────────────────

    @staticmethod
    def _normalise(value: Any) -> Any:
        # Majors are free text; compare them case- and whitespace-insensitively.
        if isinstance(value, str):
            return value.strip().casefold()
        return value

    def dimension_passes(self, allowed: Iterable[Any] | None, value: Any) -> bool:
        """True when *value* satisfies the optional *allowed* set."""
        if not allowed:
            return True
        if value is None:
            return False
        return self._normalise(value) in {self._normalise(a) for a in allowed}

    # ── One direction ───────────────────────────────────────────────

    def failed_dimensions(self, ticket: Any, profile: Any) -> list[str]:
        """Names of the dimensions on which *profile* fails *ticket*'s filters."""
        failed: list[str] = []
        for filter_attr, profile_attr in self.DIMENSIONS:
            allowed = getattr(ticket, filter_attr, None)
            value = getattr(profile, profile_attr, None)
            if not self.dimension_passes(allowed, value):
                failed.append(profile_attr)
        return failed

    def accepts(self, ticket: Any, profile: Any) -> bool:
        """Does the owner of *ticket* accept someone with *profile*?"""
        return not self.failed_dimensions(ticket, profile)

    # ── Both directions ─────────────────────────────────────────────

    def mutually_compatible(
        self,
        ticket_a: Any,
        profile_a: Any,
        ticket_b: Any,
        profile_b: Any,
    ) -> bool:
        return self.accepts(ticket_a, profile_b) and self.accepts(ticket_b, profile_a)

    def explain(
        self,
        ticket_a: Any,
        profile_a: Any,
        ticket_b: Any,
        profile_b: Any,
    ) -> dict:
        """Breakdown of a compatibility check, used for debug logging."""
        a_rejects = self.failed_dimensions(ticket_a, profile_b)
        b_rejects = self.failed_dimensions(ticket_b, profile_a)
        return {
            "compatible": not a_rejects and not b_rejects,
            "a_rejects_b_on": a_rejects,
            "b_rejects_a_on": b_rejects,
        }
