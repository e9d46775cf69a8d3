"""
Template scoring engine.

Scores every template whose context rule admits the current context and
picks the best one. Scoring is pure: the caller is responsible for
recording ``last_used_at`` once a template is actually started.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from habitflow.engine.context.context_resolver import RoutineContext
from habitflow.engine.routines.models import DEFAULT_PRIORITY, ContextRule, RoutineTemplate

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

CONTEXT_MATCH_BOOST = 10

_NEVER = datetime.min.replace(tzinfo=timezone.utc)

__all__ = [
    "CONTEXT_MATCH_BOOST",
    "DEFAULT_PRIORITY",
    "ContextRule",
    "TemplateSelection",
    "score_template",
    "select_best_template",
    "explain_selection",
]


@dataclass
class TemplateSelection:
    """The chosen template plus how it was chosen."""
    template: Optional[RoutineTemplate]
    score: Optional[int]
    reason: str
    candidates: List[Tuple[RoutineTemplate, int]] = field(default_factory=list)
    is_fallback: bool = False

    def to_dict(self) -> Dict:
        return {
            "template_id": self.template.id if self.template else None,
            "template_name": self.template.name if self.template else None,
            "score": self.score,
            "reason": self.reason,
            "is_fallback": self.is_fallback,
            "candidates": [
                {"template_id": t.id, "template_name": t.name, "score": s}
                for t, s in self.candidates
            ],
        }


def _matching_dimensions(rule: ContextRule, context: RoutineContext) -> Optional[List[str]]:
    """Names of the constrained dimensions that match, or None if one fails."""
    matched = []
    for name, allowed, value in (
        ("time_slot", rule.time_slots, context.time_slot),
        ("day_category", rule.day_categories, context.day_category),
        ("location_category", rule.location_categories, context.location_category),
    ):
        if not allowed:
            continue
        if value not in allowed:
            return None
        matched.append(name)
    return matched


def score_template(template: RoutineTemplate, context: RoutineContext) -> Optional[int]:
    """Score a template for a context; ``None`` means ineligible."""
    rule = template.context_rule
    if rule is None or not rule.enabled:
        return None
    matched = _matching_dimensions(rule, context)
    if matched is None:
        return None
    return rule.priority + CONTEXT_MATCH_BOOST * len(matched)


def _rank_key(item: Tuple[RoutineTemplate, int]):
    template, score = item
    last_used = template.last_used_at or _NEVER
    # highest score, then most recently used, then id
    return (-score, -last_used.timestamp(), template.id)


def _ranked(templates: Iterable[RoutineTemplate], context: RoutineContext) -> List[Tuple[RoutineTemplate, int]]:
    scored = []
    for template in templates:
        score = score_template(template, context)
        if score is not None:
            scored.append((template, score))
    return sorted(scored, key=_rank_key)


def _default_template(templates: Iterable[RoutineTemplate]) -> Optional[RoutineTemplate]:
    for template in templates:
        if template.is_default:
            return template
    return None


def select_best_template(
    templates: List[RoutineTemplate], context: RoutineContext
) -> Optional[RoutineTemplate]:
    ranked = _ranked(templates, context)
    if ranked:
        return ranked[0][0]
    return _default_template(templates)


def _reason(template: RoutineTemplate, context: RoutineContext) -> str:
    matched = _matching_dimensions(template.context_rule, context) or []
    parts = []
    if "time_slot" in matched:
        parts.append(f"it's {context.time_slot}")
    if "day_category" in matched:
        parts.append(f"it's a {context.day_category}")
    if "location_category" in matched:
        parts.append(f"you're at {context.location_category}")
    if not parts:
        return f"Selected '{template.name}' based on its priority"
    return f"Selected '{template.name}' because " + " and ".join(parts)


def explain_selection(templates: List[RoutineTemplate], context: RoutineContext) -> TemplateSelection:
    """Same choice as ``select_best_template`` with a human-readable reason."""
    ranked = _ranked(templates, context)
    if ranked:
        template, score = ranked[0]
        selection = TemplateSelection(template, score, _reason(template, context), ranked)
    else:
        default = _default_template(templates)
        if default is not None:
            selection = TemplateSelection(
                default, None, f"No routine matches this context; using default '{default.name}'",
                is_fallback=True,
            )
        else:
            selection = TemplateSelection(None, None, "No routine matches this context", is_fallback=True)
    logger.debug("Template selection for %s: %s", context, selection.reason)
    return selection
