"""Fitness score and match category between a template and an organization.

Scoring (only templates that carry codes):
    LMS match            +40
    English/Maths match  +25
    CRM match            +25
    HR match (bonus)     +10

    Every required slot the template carries (LMS, English/Maths, CRM)
    must equal the organization's code, otherwise the score is 0 and the
    template is excluded. HR never disqualifies.

    Templates with no codes at all are universal: fixed score 25. A single
    English/Maths or CRM match scores the same, so the catalog matcher
    orders universal templates after genuine matches of equal score.

Classification is a separate decision tree over the same per-slot
comparisons and does not look at the numeric score.

Known gap: a template carrying only an HR code has no required slot, so it
scores 0 and classifies as no_match. Kept as-is pending product decision.
"""

from __future__ import annotations

from app.services.provider_codes import ParsedTemplate, ProviderCodes

UNIVERSAL_SCORE = 25

SLOT_WEIGHTS: dict[str, int] = {
    "lms": 40,
    "english_maths": 25,
    "crm": 25,
}
HR_BONUS = 10

MATCH_EXACT = "exact_match"
MATCH_CORE = "core_match"
MATCH_PARTIAL = "partial_match"
MATCH_LMS_ONLY = "lms_only"
MATCH_UNIVERSAL = "universal"
MATCH_NONE = "no_match"

MATCH_TYPES = (
    MATCH_EXACT,
    MATCH_CORE,
    MATCH_PARTIAL,
    MATCH_LMS_ONLY,
    MATCH_UNIVERSAL,
    MATCH_NONE,
)


def _slot_matches(template: ParsedTemplate, org: ProviderCodes, slot: str) -> bool:
    return getattr(template, slot) == getattr(org, slot)


def is_eligible(template: ParsedTemplate, org: ProviderCodes) -> bool:
    """True when every required slot present on the template matches the organization."""
    required = [slot for slot in SLOT_WEIGHTS if getattr(template, slot)]
    if not required:
        return False
    return all(_slot_matches(template, org, slot) for slot in required)


def calculate_match_score(template: ParsedTemplate, org: ProviderCodes) -> int:
    """Return the fitness score; 0 means the template is not eligible."""
    if not template.has_codes:
        return UNIVERSAL_SCORE

    if not is_eligible(template, org):
        return 0

    score = sum(
        weight for slot, weight in SLOT_WEIGHTS.items()
        if getattr(template, slot) and _slot_matches(template, org, slot)
    )
    if template.hr and template.hr == org.hr:
        score += HR_BONUS
    return score


def get_match_type(template: ParsedTemplate, org: ProviderCodes) -> str:
    """Return the match category for filtering and display."""
    if not template.has_codes:
        return MATCH_UNIVERSAL

    lms_match = _slot_matches(template, org, "lms")
    em_match = _slot_matches(template, org, "english_maths")
    crm_match = _slot_matches(template, org, "crm")
    hr_match = _slot_matches(template, org, "hr")

    if lms_match and em_match and crm_match and hr_match and template.hr:
        return MATCH_EXACT
    if lms_match and em_match and crm_match and not template.hr:
        return MATCH_CORE
    if lms_match and em_match and not template.crm:
        return MATCH_PARTIAL
    if lms_match and not template.english_maths and not template.crm:
        return MATCH_LMS_ONLY
    return MATCH_NONE
