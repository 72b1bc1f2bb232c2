"""
Verification rules for extracted bills.

Centralizes the decision of whether a bill's date and total can be
trusted, so the pipeline, manual corrections and the nightly re-verify
job all agree on the same status and reason.
"""

from datetime import date
from typing import Any, Dict, Optional
from loguru import logger
from pydantic import BaseModel
from ..core.config import settings

VENDOR_POINTS = 25
DATE_POINTS = 35
TOTAL_POINTS = 40


def compute_quality_score(vendor_name: Optional[str], bill_date: Optional[date | str], total: Optional[float]) -> int:
    """Document quality score 0-100: vendor 25, bill date 35, positive total 40"""
    score = 0
    if vendor_name and str(vendor_name).strip():
        score += VENDOR_POINTS
    if bill_date:
        score += DATE_POINTS
    if total is not None and total > 0:
        score += TOTAL_POINTS
    return score


def normalize_evidence(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def accept_model_field(
    confidence: Optional[float],
    evidence: Optional[str],
    raw_text: Optional[str],
    threshold: Optional[float] = None,
) -> bool:
    """
    A model-extracted field counts as verified evidence when its confidence
    clears the threshold and its evidence appears verbatim in the raw text.
    """
    threshold = settings.verify_conf_threshold if threshold is None else threshold
    if confidence is None or confidence < threshold:
        return False
    needle = normalize_evidence(evidence)
    return bool(needle) and needle in normalize_evidence(raw_text)


class VerificationDecision(BaseModel):
    """Result of verification with explanation"""
    status: str
    reason: Optional[str] = None
    quality_score: int
    checks: Dict[str, bool]
    metadata: Dict[str, Any] = {}


class VerificationRules:
    """
    Encapsulates the verification rules for a bill.

    Status:
    - verified: bill date and total present and both locked
    - needs_review: a reason exists (missing/ambiguous field, low quality, low confidence)
    - unverified: otherwise
    """

    def __init__(self, min_quality: Optional[int] = None, min_ai_confidence: Optional[float] = None):
        self.min_quality = settings.verify_min_quality if min_quality is None else min_quality
        self.min_ai_confidence = settings.verify_min_ai_confidence if min_ai_confidence is None else min_ai_confidence

    def resolve_reason(
        self,
        has_date: bool,
        has_total: bool,
        quality_score: int,
        ai_confidence: Optional[float],
        ambiguous_date: bool,
        multiple_totals: bool,
    ) -> Optional[str]:
        if not has_date and not has_total:
            return "Missing date & total"
        if not has_date:
            return "Missing bill date"
        if ambiguous_date:
            return "Ambiguous date"
        if not has_total:
            return "Missing total"
        if multiple_totals:
            return "Ambiguous total"
        if quality_score < self.min_quality:
            return "Low quality"
        if ai_confidence is not None and ai_confidence < self.min_ai_confidence:
            return "Low AI confidence"
        return None

    def evaluate(
        self,
        vendor_name: Optional[str],
        bill_date: Optional[date | str],
        total: Optional[float],
        bill_date_locked: bool = False,
        total_locked: bool = False,
        ai_confidence: Optional[float] = None,
        ambiguous_date: bool = False,
        multiple_totals: bool = False,
    ) -> VerificationDecision:
        has_date = bool(bill_date)
        has_total = total is not None and total > 0
        quality = compute_quality_score(vendor_name, bill_date, total)

        checks = {
            "has_bill_date": has_date,
            "has_total": has_total,
            "bill_date_locked": bool(bill_date_locked),
            "total_locked": bool(total_locked),
            "quality_sufficient": quality >= self.min_quality,
        }

        # Locked fields are human-confirmed or evidence-backed; ambiguity no longer applies
        reason = self.resolve_reason(
            has_date,
            has_total,
            quality,
            ai_confidence,
            ambiguous_date and not bill_date_locked,
            multiple_totals and not total_locked,
        )

        if has_date and has_total and bill_date_locked and total_locked:
            status = "verified"
            reason = None
        elif reason:
            status = "needs_review"
        else:
            status = "unverified"

        logger.debug("Verification evaluated", status=status, reason=reason, quality_score=quality)
        return VerificationDecision(
            status=status,
            reason=reason,
            quality_score=quality,
            checks=checks,
            metadata={"ai_confidence": ai_confidence, "min_quality": self.min_quality},
        )


def create_verification_rules() -> VerificationRules:
    """Factory using configuration from settings"""
    return VerificationRules()
