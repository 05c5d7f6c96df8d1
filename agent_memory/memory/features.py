"""
Feature extraction for knowledge entries and behavior records.

Pure functions over (content, context); no I/O.
"""

import re
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional

from .rules import KEYWORD_SUFFIX, content_to_text

CONTEXT_SUMMARY_KEYS = ("session_id", "user_initiated", "domain", "task", "goal")

TOOL_KEYWORDS = ("javascript", "python", "react", "node.js", "sql", "git", "docker")
DOMAIN_KEYWORDS = ("web development", "machine learning", "database", "security", "design")

COMMAND_WORDS = ("create", "build", "make", "delete", "update", "run", "execute")
EXPLANATION_WORDS = ("because", "reason", "explain", "why", "how", "means")
ACTION_WORDS = ("click", "type", "select", "choose", "navigate", "open", "close")

_CONCEPT_RE = re.compile(r"[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*")
_WORD_RE = re.compile(r"\b\w+\b")
_VARIABLE_RE = re.compile(r"\{([^}]+)\}")
_NUMBERED_RE = re.compile(r"\d+\.")


def _contains_any(text: str, words) -> bool:
    lowered = text.lower()
    return any(re.search(rf"\b{re.escape(w)}{KEYWORD_SUFFIX}\b", lowered) for w in words)


def summarize_context(context: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Keep only the essential context keys."""
    context = context or {}
    return {key: context[key] for key in CONTEXT_SUMMARY_KEYS if context.get(key) is not None}


def extract_entities(content: Any) -> Dict[str, List[str]]:
    """Lightweight entity extraction: capitalised concepts, known tools and domains."""
    entities: Dict[str, List[str]] = {"concepts": [], "tools": [], "domains": []}
    raw, is_text = content_to_text(content)
    if not is_text:
        return entities

    text = raw.lower()
    entities["concepts"] = list(dict.fromkeys(_CONCEPT_RE.findall(raw)))[:10]
    entities["tools"] = [tool for tool in TOOL_KEYWORDS if tool in text]
    entities["domains"] = [domain for domain in DOMAIN_KEYWORDS if domain in text]
    return entities


# ============================================================================
# Behavior features
# ============================================================================

def has_good_structure(content: str) -> bool:
    """At least two of: list items, labels, numbered items, paragraphs."""
    indicators = [
        "\n-" in content or "\n*" in content,
        ":" in content,
        bool(_NUMBERED_RE.search(content)),
        "\n\n" in content,
    ]
    return sum(indicators) >= 2


def contains_command(content: str) -> bool:
    return _contains_any(content, COMMAND_WORDS)


def contains_explanation(content: str) -> bool:
    return _contains_any(content, EXPLANATION_WORDS)


def contains_actionable(content: str) -> bool:
    return _contains_any(content, ACTION_WORDS)


def infer_interaction_type(content: Any, context: Mapping[str, Any]) -> str:
    if context.get("interaction_type"):
        return str(context["interaction_type"])
    if isinstance(content, str):
        if "?" in content:
            return "question"
        if contains_command(content):
            return "command"
        if contains_explanation(content):
            return "explanation"
    return "general"


def infer_response_style(content: Any, context: Mapping[str, Any]) -> str:
    if context.get("response_style"):
        return str(context["response_style"])
    if isinstance(content, str):
        if has_good_structure(content):
            return "structured"
        if len(content) > 500:
            return "detailed"
        if len(content) < 100:
            return "concise"
    return "standard"


def calculate_complexity(content: Any, context: Mapping[str, Any]) -> float:
    complexity = 0.0
    if isinstance(content, str):
        complexity += min(len(content) / 1000, 1.0)
        complexity += (content.count("\n")) * 0.1
    elif isinstance(content, Mapping):
        complexity += len(content) * 0.1

    domain_complexity = context.get("domain_complexity")
    if isinstance(domain_complexity, (int, float)) and not isinstance(domain_complexity, bool):
        complexity += domain_complexity * 0.5
    return round(max(0.0, min(1.0, complexity)), 3)


def extract_behavior_pattern(content: Any, context: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """
    Feature descriptor used for behavior deduplication.

    Only top-level key equality is compared between descriptors, so every
    value here is a scalar or a sorted list.
    """
    context = context or {}
    text, is_text = content_to_text(content)
    subject = text if is_text else content
    pattern: Dict[str, Any] = {
        "content_type": "text" if is_text else "structured",
        "content_length": len(text),
        "has_structured_data": isinstance(content, (Mapping, list)),
        "context_keys": sorted(str(k) for k in context.keys()),
        "interaction_type": infer_interaction_type(subject, context),
        "response_style": infer_response_style(subject, context),
        "complexity": calculate_complexity(subject, context),
    }
    if is_text:
        pattern["has_questions"] = "?" in text
        pattern["has_commands"] = contains_command(text)
        pattern["has_explanations"] = contains_explanation(text)
    return pattern


def pattern_similarity(a: Mapping[str, Any], b: Mapping[str, Any]) -> float:
    """Fraction of keys (over the union) whose values are equal."""
    keys = set(a) | set(b)
    if not keys:
        return 0.0
    equal = sum(1 for key in keys if key in a and key in b and a[key] == b[key])
    return equal / len(keys)


def extract_trigger_keywords(content: Any, limit: int = 5) -> List[str]:
    """Most frequent words longer than three characters."""
    if not isinstance(content, str):
        return []
    words = [w for w in _WORD_RE.findall(content.lower()) if len(w) > 3]
    return [word for word, _ in Counter(words).most_common(limit)]


def extract_triggers(content: Any, context: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "user_actions": list(context.get("user_actions") or []),
        "context_states": list(context.get("context_states") or []),
        "keywords": extract_trigger_keywords(content),
        "conditions": list(context.get("conditions") or []),
    }


def extract_conditions(context: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "user_type": context.get("user_type") or "general",
        "session_state": context.get("session_state") or "active",
        "domain_context": context.get("domain") or "general",
        "time_constraints": context.get("time_constraints"),
        "prerequisites": list(context.get("prerequisites") or []),
    }


def analyze_text_structure(content: str) -> Dict[str, Any]:
    return {
        "has_list": "\n-" in content or "\n*" in content,
        "has_numbers": any(ch.isdigit() for ch in content),
        "has_questions": "?" in content,
        "paragraphs": len(content.split("\n\n")),
        "sentences": len(re.split(r"[.!?]", content)),
    }


def extract_response_template(content: Any) -> Dict[str, Any]:
    if isinstance(content, str):
        return {
            "type": "text",
            "template": content,
            "variables": _VARIABLE_RE.findall(content),
            "structure": analyze_text_structure(content),
        }
    return {
        "type": "structured",
        "template": content,
        "schema": list(content.keys()) if isinstance(content, Mapping) else [],
        "format": "json",
    }


def extract_context_tags(context: Optional[Mapping[str, Any]]) -> List[str]:
    """``prefix:value`` tags from well-known context keys."""
    context = context or {}
    tags = []
    for key, prefix in (
        ("domain", "domain"),
        ("user_type", "user"),
        ("session_state", "session"),
        ("task_type", "task"),
        ("urgency", "urgency"),
    ):
        if context.get(key):
            tags.append(f"{prefix}:{context[key]}")
    return tags
