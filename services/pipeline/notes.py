"""Human-readable review notes and result messages.

Generated from the same structured stage data the decision used, so the
notes always agree with the outcome.
"""

from collections.abc import Mapping

from services.pipeline.schema import PipelineResult, StageResult


def _pct(value: float) -> str:
    return f"{value * 100:.0f}%"


def build_review_notes(
    stages: Mapping[str, StageResult],
    aggregate: float,
    rejected: bool = False,
) -> str:
    """Summarise every stage and every validation finding."""
    lines = ["Pipeline Processing Summary", f"Overall Confidence: {_pct(aggregate)}", ""]
    if rejected:
        lines += ["REJECTED: Low confidence or critical failures detected", ""]
    else:
        lines += ["MANUAL REVIEW REQUIRED", ""]

    lines.append("Stage Results:")

    extraction = stages["extraction"]
    if extraction.status == "skipped":
        lines.append("- Extraction: Skipped")
    elif extraction.success:
        lines.append(f"[ok] Extraction: {_pct(extraction.confidence)} confidence")
        reason = (extraction.data or {}).get("reason")
        if reason:
            lines.append(f"  {reason}")
    else:
        lines.append(f"[x] Extraction: FAILED - {extraction.error}")

    categorization = stages["categorization"]
    if categorization.status == "skipped":
        lines.append("- Categorization: Skipped")
    elif categorization.success:
        lines.append(f"[ok] Categorization: {_pct(categorization.confidence)} confidence")
        data = categorization.data or {}
        if data.get("category"):
            lines.append(f"  Category: {data['category']}, GST Rate: {data.get('tax_rate')}%")
        if data.get("reason"):
            lines.append(f"  {data['reason']}")
    else:
        lines.append(f"[x] Categorization: FAILED - {categorization.error}")

    validation = stages["validation"]
    if validation.status == "skipped":
        lines.append("- Validation: Skipped")
    elif validation.success:
        lines.append(
            f"[ok] Validation: {_pct(validation.confidence)} confidence ({validation.status})"
        )
        data = validation.data or {}
        for violation in data.get("violations", []):
            lines.append(
                f"  [{violation['severity'].upper()}] {violation['rule']}: {violation['message']}"
            )
        for warning in data.get("warnings", []):
            lines.append(f"  [WARNING] {warning['rule']}: {warning['message']}")
    else:
        lines.append(f"[x] Validation: FAILED - {validation.error}")

    lines.append("")
    if rejected:
        lines.append(
            "Action Required: Please review and correct the errors above before reprocessing."
        )
    else:
        lines.append("Action Required: Admin review and approval needed.")
    return "\n".join(lines)


def result_message(result: PipelineResult) -> str:
    """One-line outcome for API responses."""
    if not result.success:
        first = result.errors[0].message if result.errors else "Unknown error"
        return f"Pipeline failed: {first}"

    confidence = _pct(result.aggregate_confidence)
    if result.final_decision == "auto_approved":
        return f"Invoice auto-approved with {confidence} confidence"
    if result.final_decision == "needs_review":
        return f"Invoice needs manual review ({confidence} confidence)"
    if result.final_decision == "rejected":
        return f"Invoice requires corrections ({confidence} confidence)"
    return f"Invoice processed with {confidence} confidence"
