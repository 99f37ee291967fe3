"""
Static page catalog for the Get Thin MD quiz funnel (55 live pages).

Page numbers are stable across runs; aggregates key steps by page key and the
catalog number decides display order. Keys that show up in event data but are
not listed here are added at sync time with numbers from DISCOVERED_STEP_OFFSET.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

STEP_CATEGORIES = (
    "question",
    "interstitial",
    "social_proof",
    "health",
    "checkout",
    "conversion",
    "disqualification",
)

# Catalog numbers must stay below this; discovered steps start here.
DISCOVERED_STEP_OFFSET = 1000


@dataclass(frozen=True)
class StepDefinition:
    page_number: int
    page_key: str
    page_name: str
    category: str
    is_conversion_point: bool = False
    is_purchase_complete: bool = False
    is_disqualification: bool = False


def _page(number: int, key: str, name: str, category: str, **flags: bool) -> StepDefinition:
    return StepDefinition(page_number=number, page_key=key, page_name=name, category=category, **flags)


FUNNEL_PAGES: tuple[StepDefinition, ...] = (
    _page(1, "current_height_and_weight", "Current Height and Weight", "question"),
    _page(2, "bmi_goal_weight", "BMI Goal Weight", "question"),
    _page(3, "bmi_goal_weight_dq", "BMI Goal Weight (DQ)", "disqualification", is_disqualification=True),
    _page(4, "sex", "Sex", "question"),
    _page(5, "initial_disqualifiers", "Initial Disqualifiers", "health"),
    _page(6, "specific_effects", "Specific Effects", "question"),
    _page(7, "main_priority", "Main Priority", "question"),
    _page(8, "video_proof", "Video Proof", "social_proof"),
    _page(9, "interstitial_magic_science", "Interstitial: Magic Science", "interstitial"),
    _page(10, "female_social_proof", "Female Social Proof", "social_proof"),
    _page(11, "male_social_proof", "Male Social Proof", "social_proof"),
    _page(12, "how_glp1_works", "How GLP-1 Works", "interstitial"),
    _page(13, "glp_motivation", "GLP Motivation", "question"),
    _page(14, "pace", "Pace", "question"),
    _page(15, "interstitial_works_for_me", "Interstitial: Works For Me", "interstitial"),
    _page(16, "interstitial_i_want_faster", "Interstitial: I Want Faster", "interstitial"),
    _page(17, "interstitial_too_fast", "Interstitial: Too Fast", "interstitial"),
    _page(18, "sleep_overall", "Sleep Overall", "health"),
    _page(19, "sleep_hours", "Sleep Hours", "health"),
    _page(20, "female_social_proof_2", "Female Social Proof 2", "social_proof"),
    _page(21, "male_social_proof_2", "Male Social Proof 2", "social_proof"),
    _page(22, "dq_health_conditions", "DQ Health Conditions", "health"),
    _page(23, "other_health_conditions", "Other Health Conditions", "health"),
    _page(24, "clearance_required", "Clearance Required", "health"),
    _page(25, "dq_health_conditions_by_bmi", "DQ Health Conditions by BMI", "health"),
    _page(26, "heart_conditions", "Heart Conditions", "health"),
    _page(27, "allergies", "Allergies", "health"),
    _page(28, "taking_wl_meds", "Taking WL Meds", "health"),
    _page(29, "taken_wl_meds", "Taken WL Meds", "health"),
    _page(30, "re_gaining_weight", "Re-gaining Weight", "question"),
    _page(31, "glp_details", "GLP Details", "health"),
    _page(32, "taken_opiate_meds", "Taken Opiate Meds", "health"),
    _page(33, "surgeries", "Surgeries", "health"),
    _page(34, "wl_programs", "WL Programs", "question"),
    _page(35, "patient_willing_to", "Patient Willing To", "question"),
    _page(36, "weight_changed", "Weight Changed", "question"),
    _page(37, "social_proof", "Social Proof", "social_proof"),
    _page(38, "avg_blood_pressure", "Avg Blood Pressure", "health"),
    _page(39, "avg_resting_heart", "Avg Resting Heart", "health"),
    _page(40, "current_medications", "Current Medications", "health"),
    _page(41, "state_of_mind", "State of Mind", "question"),
    _page(42, "further_info", "Further Info", "question"),
    _page(43, "concerns", "Concerns", "question"),
    _page(44, "date_of_birth", "Date of Birth", "question"),
    _page(45, "medical_review", "Medical Review", "conversion", is_conversion_point=True),
    _page(46, "lead_capture", "Lead Capture", "conversion", is_conversion_point=True),
    _page(47, "medicine_match", "Medicine Match", "question"),
    _page(48, "micro_medicine_match", "Micro Medicine Match", "question"),
    _page(49, "submission_review", "Submission Review", "conversion"),
    _page(50, "dq_page", "Disqualification Page", "disqualification", is_disqualification=True),
    _page(51, "macro_checkout", "Macro Checkout", "checkout", is_conversion_point=True),
    _page(52, "micro_checkout", "Micro Checkout", "checkout", is_conversion_point=True),
    _page(53, "payment_successful", "Payment Successful", "conversion", is_purchase_complete=True),
    # Key spelling matches what the platform emits.
    _page(54, "asnyc_confirmation_to_redirect", "Async Confirmation", "conversion", is_purchase_complete=True),
    _page(55, "calendar_page", "Calendar Page", "conversion", is_purchase_complete=True),
)

_PAGES_BY_KEY = {page.page_key: page for page in FUNNEL_PAGES}
_PAGES_BY_NUMBER = {page.page_number: page for page in FUNNEL_PAGES}

PURCHASE_COMPLETE_KEYS = frozenset(page.page_key for page in FUNNEL_PAGES if page.is_purchase_complete)
DISQUALIFICATION_KEYS = frozenset(page.page_key for page in FUNNEL_PAGES if page.is_disqualification)
CONVERSION_POINT_KEYS = frozenset(page.page_key for page in FUNNEL_PAGES if page.is_conversion_point)


def get_page_by_key(key: str) -> StepDefinition | None:
    return _PAGES_BY_KEY.get(key)


def get_page_by_number(number: int) -> StepDefinition | None:
    return _PAGES_BY_NUMBER.get(number)


def is_purchase_complete(page_key: str) -> bool:
    return page_key in PURCHASE_COMPLETE_KEYS


def is_disqualification(page_key: str) -> bool:
    return page_key in DISQUALIFICATION_KEYS


def purchase_complete_keys(extra: str | Iterable[str] | None = None) -> frozenset[str]:
    """Catalog purchase-complete keys plus configured extras (comma-separated or iterable)."""
    if extra is None:
        return PURCHASE_COMPLETE_KEYS
    if isinstance(extra, str):
        extra_keys = {part.strip() for part in extra.split(",") if part.strip()}
    else:
        extra_keys = {str(part).strip() for part in extra if str(part).strip()}
    return PURCHASE_COMPLETE_KEYS | frozenset(extra_keys)


def validate_catalog(catalog: Iterable[StepDefinition] = FUNNEL_PAGES) -> None:
    seen_keys: set[str] = set()
    seen_numbers: set[int] = set()
    for page in catalog:
        if page.page_number < 1 or page.page_number >= DISCOVERED_STEP_OFFSET:
            raise ValueError(
                f"catalog page {page.page_key!r} has number {page.page_number}; "
                f"catalog numbers must be in [1, {DISCOVERED_STEP_OFFSET})"
            )
        if page.category not in STEP_CATEGORIES:
            raise ValueError(f"catalog page {page.page_key!r} has unknown category {page.category!r}")
        if page.page_key in seen_keys:
            raise ValueError(f"duplicate catalog key {page.page_key!r}")
        if page.page_number in seen_numbers:
            raise ValueError(f"duplicate catalog number {page.page_number}")
        seen_keys.add(page.page_key)
        seen_numbers.add(page.page_number)


validate_catalog()
