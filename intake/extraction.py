"""
Vendor analysis → typed records.

The vendor's post-call analysis is stringly typed ("true", "95000", "$350,000")
and its field names drift between agent versions. All coercion lives in the
small set of named helpers below so every field gets identical semantics.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from intake.models import ConversationExtraction, QualificationData, utcnow

_NUMERIC_NOISE = re.compile(r"[,$\s]")

# Widest integer column in either store (signed 64-bit)
_INT_MIN = -(2 ** 63)
_INT_MAX = 2 ** 63 - 1

# ── Coercion helpers ────────────────────────────────────────────


def parse_optional_int(value: Any) -> Optional[int]:
    """
    Integer from an int/float/numeric string; anything else is None.
    Values outside the signed 64-bit range are None as well.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if _INT_MIN <= value <= _INT_MAX else None
    if isinstance(value, float):
        return parse_optional_int(int(value)) if value == value and abs(value) != float("inf") else None
    if isinstance(value, str):
        cleaned = _NUMERIC_NOISE.sub("", value)
        if not cleaned:
            return None
        try:
            return parse_optional_int(int(cleaned))
        except ValueError:
            pass
        try:
            return parse_optional_int(float(cleaned))
        except ValueError:
            return None
    return None


def parse_optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = _NUMERIC_NOISE.sub("", value).rstrip("%")
        try:
            return float(cleaned) if cleaned else None
        except ValueError:
            return None
    return None


def parse_loose_bool(value: Any, default: Optional[bool] = None) -> Optional[bool]:
    """
    ``True`` / ``"true"`` (any case) → True; absent → ``default``; anything
    else, including ``"yes"`` and ``"false"``, → False.
    """
    if value is None:
        return default
    if value is True:
        return True
    if isinstance(value, str):
        if not value.strip():
            return default
        return value.strip().lower() == "true"
    return False


def optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    return str(value)


# ── Field tables ────────────────────────────────────────────────
# Each entry: record field -> vendor keys to try, in order.

_INT_FIELDS: dict[str, tuple[str, ...]] = {
    "lead_score": ("lead_score",),
    "property_price": ("property_price",),
    "annual_income": ("annual_income",),
    "monthly_debt_payments": ("monthly_debt_payments",),
    "loan_amount": ("loan_amount",),
    "down_payment_amount": ("down_payment_amount",),
    "down_payment_percentage": ("down_payment_percentage",),
}

_FLOAT_FIELDS: dict[str, tuple[str, ...]] = {
    "debt_to_income_ratio": ("debt_to_income_ratio",),
}

_TEXT_FIELDS: dict[str, tuple[str, ...]] = {
    "pre_approval_status": ("pre_approval_status",),
    "current_lender": ("current_lender",),
    "buying_timeline": ("buying_timeline", "time_frame"),
    "lead_temperature": ("lead_temperature",),
    "lead_qualification_status": ("lead_qualification_status",),
    "call_outcome": ("call_outcome",),
    "property_address": ("property_address",),
    "property_mls_number": ("property_mls_number",),
    "property_type": ("property_type",),
    "property_use": ("property_use",),
    "credit_score_range": ("credit_score_range", "estimated_credit_score"),
    "employment_status": ("employment_status",),
    "employment_length": ("employment_length",),
    "loan_type": ("loan_type",),
    "ready_to_buy_timeline": ("ready_to_buy_timeline",),
    "realtor_name": ("realtor_name",),
    "preferred_contact_method": ("preferred_contact_method",),
    "best_time_to_call": ("best_time_to_call",),
    "conversation_summary": ("conversation_summary", "summary", "call_summary"),
    "follow_up_date": ("follow_up_date",),
}

# field -> (vendor keys, value when the vendor omitted it).
# Profile facts and concern flags stay None when absent: "not mentioned" is not "no".
# Requests/interests the caller has to opt into default to False.
_BOOL_FIELDS: dict[str, tuple[tuple[str, ...], Optional[bool]]] = {
    "multiple_properties_interested": (("multiple_properties_interested",), False),
    "is_self_employed": (("is_self_employed",), None),
    "has_co_borrower": (("has_co_borrower",), None),
    "first_time_buyer": (("first_time_buyer",), None),
    "va_eligible": (("va_eligible",), None),
    "has_realtor": (("has_realtor",), None),
    "wants_credit_review": (("wants_credit_review",), False),
    "wants_down_payment_assistance": (("wants_down_payment_assistance",), False),
    "credit_concerns": (("credit_concerns",), None),
    "debt_concerns": (("debt_concerns",), None),
    "down_payment_concerns": (("down_payment_concerns",), None),
    "job_change_concerns": (("job_change_concerns",), None),
    "interest_rate_concerns": (("interest_rate_concerns",), None),
    "knows_overlays": (("knows_overlays", "knows_about_overlays"), None),
    "overlay_education_completed": (("overlay_education_completed",), False),
}

_STRUCTURED_FIELDS: dict[str, tuple[str, ...]] = {
    "objection_details": ("objection_details", "objections"),
    "next_steps": ("next_steps",),
    "primary_concerns": ("primary_concerns", "concerns"),
    "interested_properties": ("interested_properties", "properties"),
    "requested_actions": ("requested_actions", "actions"),
}


def flatten_analysis(analysis: dict) -> dict:
    """Lift ``custom_analysis_data`` to the top level; custom keys win."""
    flat = {k: v for k, v in analysis.items() if k != "custom_analysis_data"}
    custom = analysis.get("custom_analysis_data")
    if isinstance(custom, dict):
        flat.update(custom)
    return flat


def _first(fields: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        if fields.get(key) is not None:
            return fields[key]
    return None


def map_extraction(
    analysis: dict,
    conversation_id: str,
    lead_id: Optional[str],
    extraction_version: str = "",
) -> ConversationExtraction:
    """Normalise a vendor analysis object into a ``ConversationExtraction``."""
    fields = flatten_analysis(analysis)

    values: dict[str, Any] = {}
    for name, keys in _INT_FIELDS.items():
        values[name] = parse_optional_int(_first(fields, keys))
    for name, keys in _FLOAT_FIELDS.items():
        values[name] = parse_optional_float(_first(fields, keys))
    for name, keys in _TEXT_FIELDS.items():
        values[name] = optional_text(_first(fields, keys))
    for name, (keys, default) in _BOOL_FIELDS.items():
        values[name] = parse_loose_bool(_first(fields, keys), default=default)
    for name, keys in _STRUCTURED_FIELDS.items():
        values[name] = _first(fields, keys)

    return ConversationExtraction(
        conversation_id=conversation_id,
        lead_id=lead_id,
        extraction_timestamp=utcnow(),
        extraction_version=extraction_version,
        raw_extraction_data=analysis,
        **values,
    )


def project_qualification(extraction: ConversationExtraction) -> Optional[QualificationData]:
    """Lead-centric projection of an extraction; None without an owning lead."""
    if not extraction.lead_id:
        return None

    e = extraction
    return QualificationData(
        lead_id=e.lead_id,
        conversation_id=e.conversation_id,
        annual_income=e.annual_income,
        loan_amount=e.loan_amount,
        loan_type=e.loan_type,
        down_payment_percentage=e.down_payment_percentage,
        debt_to_income_ratio=e.debt_to_income_ratio,
        estimated_credit_score=e.credit_score_range,
        is_self_employed=e.is_self_employed,
        has_co_borrower=e.has_co_borrower,
        pre_approval_status=e.pre_approval_status,
        current_lender=e.current_lender,
        first_time_buyer=e.first_time_buyer,
        va_eligible=e.va_eligible,
        property_type=e.property_type,
        property_use=e.property_use,
        property_address=e.property_address,
        property_mls_number=e.property_mls_number,
        property_price=e.property_price,
        has_specific_property=bool(e.property_address or e.property_mls_number),
        multiple_properties_interested=e.multiple_properties_interested,
        lead_temperature=e.lead_temperature,
        time_frame=e.buying_timeline,
        ready_to_buy_timeline=e.ready_to_buy_timeline,
        credit_concerns=e.credit_concerns,
        debt_concerns=e.debt_concerns,
        down_payment_concerns=e.down_payment_concerns,
        job_change_concerns=e.job_change_concerns,
        interest_rate_concerns=e.interest_rate_concerns,
        knows_about_overlays=e.knows_overlays,
        overlay_education_completed=e.overlay_education_completed,
        wants_credit_review=e.wants_credit_review,
        wants_down_payment_assistance=e.wants_down_payment_assistance,
        objection_details=e.objection_details,
        preferred_contact_method=e.preferred_contact_method,
        best_time_to_call=e.best_time_to_call,
        qualifying_notes=e.conversation_summary,
    )
