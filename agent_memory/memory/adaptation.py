"""
Feedback-driven behavior adaptation.

feedback → AdaptationRecord (type + patch) → patched BehaviorRecord.
Effectiveness moves toward the patch target by exponential smoothing:
``new = old * (1 - rate) + target * rate``.
"""

from typing import Any, Dict, List, Mapping, Optional

from .features import extract_context_tags
from .schemas import (
    AdaptationRecord,
    AdaptationType,
    BehaviorRecord,
    Feedback,
    ResponseImprovement,
    TriggerAdjustment,
)

# Highest priority first
ADAPTATION_PRECEDENCE = ("improvement", "correction", "optimization", "personalization")


def determine_adaptation_type(feedback: Feedback) -> AdaptationType:
    for flag in ADAPTATION_PRECEDENCE:
        if getattr(feedback, flag):
            return flag
    return "general"


def improve_response_template(template: Mapping[str, Any], improvement: ResponseImprovement) -> Dict[str, Any]:
    improved = dict(template)
    if improvement.add_structure and improved.get("type") == "text":
        improved["structure"] = {**(improved.get("structure") or {}), "improved": True}
    if improvement.add_details:
        improved["enhanced"] = True
        improved["details"] = improvement.add_details
    return improved


def adjust_triggers(triggers: Mapping[str, Any], adjustment: TriggerAdjustment) -> Dict[str, Any]:
    adjusted = dict(triggers)
    keywords: List[str] = list(adjusted.get("keywords") or [])
    for keyword in adjustment.add_keywords:
        if keyword not in keywords:
            keywords.append(keyword)
    if adjustment.remove_keywords:
        keywords = [k for k in keywords if k not in adjustment.remove_keywords]
    adjusted["keywords"] = keywords
    return adjusted


def generate_changes(record: BehaviorRecord, feedback: Feedback, max_delta: float = 0.5) -> Dict[str, Any]:
    """
    Compute the patch implied by feedback.

    Args:
        record: Current behavior
        feedback: Feedback with adaptation hints
        max_delta: Bound on ``effectiveness_adjustment`` around current effectiveness

    Returns:
        Dict with any of ``response_template``, ``triggers``, ``effectiveness``
    """
    changes: Dict[str, Any] = {}
    if feedback.response_improvement is not None:
        changes["response_template"] = improve_response_template(
            record.response_template, feedback.response_improvement
        )
    if feedback.trigger_adjustment is not None:
        changes["triggers"] = adjust_triggers(record.triggers, feedback.trigger_adjustment)
    if feedback.effectiveness_adjustment is not None:
        delta = max(-max_delta, min(max_delta, feedback.effectiveness_adjustment))
        changes["effectiveness"] = max(0.0, min(1.0, record.effectiveness + delta))
    return changes


def build_adaptation(
    record: BehaviorRecord,
    feedback: Feedback,
    context: Optional[Mapping[str, Any]] = None,
    max_delta: float = 0.5,
) -> AdaptationRecord:
    return AdaptationRecord(
        feedback=feedback.model_dump(exclude_none=True),
        context_tags=extract_context_tags(context),
        adaptation_type=determine_adaptation_type(feedback),
        changes=generate_changes(record, feedback, max_delta),
    )


def smooth(old: float, target: float, rate: float) -> float:
    return max(0.0, min(1.0, old * (1 - rate) + target * rate))


def apply_adaptation(record: BehaviorRecord, adaptation: AdaptationRecord, rate: float = 0.1) -> BehaviorRecord:
    """
    Return a copy of ``record`` with the adaptation applied and logged.

    The input record is not modified.
    """
    changes = adaptation.changes
    update: Dict[str, Any] = {
        "adaptation_history": [*record.adaptation_history, adaptation],
    }
    if "response_template" in changes:
        update["response_template"] = changes["response_template"]
    if "triggers" in changes:
        update["triggers"] = changes["triggers"]
    if "effectiveness" in changes:
        update["effectiveness"] = smooth(record.effectiveness, changes["effectiveness"], rate)
    return record.model_copy(update=update, deep=True)
