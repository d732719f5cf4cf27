"""Safety filters applied to candidates before scoring."""

from .models import ContentCandidate, UserPreferenceProfile
from .scoring import is_blocked


def apply_safety_filters(
    candidates: list[ContentCandidate],
    preferences: UserPreferenceProfile | None,
    restrict_content_types: bool = False,
) -> list[ContentCandidate]:
    """
    Drop candidates the user must not see.

    Removes blocked authors and blocked topics, and content in a language
    the user did not list (content without a language passes). With
    ``restrict_content_types`` only the user's preferred content types are
    kept, when they listed any.
    """
    if preferences is None:
        return list(candidates)

    languages = {lang.lower() for lang in preferences.language_preferences}
    allowed_types = set(preferences.preferred_content_types) if restrict_content_types else set()

    kept = []
    for candidate in candidates:
        if is_blocked(candidate, preferences):
            continue
        if languages and candidate.language and candidate.language.lower() not in languages:
            continue
        if allowed_types and candidate.content_type not in allowed_types:
            continue
        kept.append(candidate)
    return kept


def dedupe_by_id(candidates: list[ContentCandidate]) -> list[ContentCandidate]:
    """Keep the first occurrence of every content id, preserving order."""
    seen_ids: set[str] = set()
    unique = []
    for candidate in candidates:
        if candidate.content_id in seen_ids:
            continue
        seen_ids.add(candidate.content_id)
        unique.append(candidate)
    return unique
