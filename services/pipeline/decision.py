"""Aggregate confidence and the final pipeline decision.

Both functions are pure: the decision depends only on the stage results and
the thresholds in ``PipelineConfig``.
"""

from collections.abc import Mapping

from services.pipeline.schema import FinalDecision, PipelineConfig, StageResult

AUTO_APPROVABLE_VALIDATION = frozenset({"pass", "skipped"})


def aggregate_confidence(stages: Mapping[str, StageResult], config: PipelineConfig) -> float:
    """Weighted extraction/categorization/validation confidence.

    Extraction failure zeroes it, a broken validator caps it below the
    review threshold, a failed categorization costs 10%.
    """
    extraction = stages["extraction"]
    categorization = stages["categorization"]
    validation = stages["validation"]

    weights = config.stage_weights
    score = (
        extraction.confidence * weights["extraction"]
        + categorization.confidence * weights["categorization"]
        + validation.confidence * weights["validation"]
    )

    if not extraction.success:
        return 0.0
    if not validation.success:
        score = min(score, config.validation_failure_cap)
    if not categorization.success:
        score *= config.categorization_failure_penalty

    return round(max(0.0, min(1.0, score)), 2)


def decide(
    stages: Mapping[str, StageResult], config: PipelineConfig
) -> tuple[float, FinalDecision]:
    """Return ``(aggregate_confidence, final_decision)``.

    Auto-approval needs the threshold, a validator that ran, and a
    validation status of pass (or a skipped validation).
    """
    aggregate = aggregate_confidence(stages, config)
    extraction = stages["extraction"]
    validation = stages["validation"]

    if not extraction.success:
        return aggregate, "pending"

    if (
        aggregate >= config.auto_approve_threshold
        and validation.success
        and validation.status in AUTO_APPROVABLE_VALIDATION
    ):
        return aggregate, "auto_approved"
    if aggregate >= config.review_threshold:
        return aggregate, "needs_review"
    return aggregate, "rejected"
