"""Declarative filter rules shared by triggers and condition nodes."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

from .contracts import JourneyEdge


def to_string_list(value: Any) -> List[str]:
    """Keep only string entries of ``value``, trimmed. Anything else is ``[]``."""
    if not isinstance(value, (list, tuple)):
        return []
    return [item.strip() for item in value if isinstance(item, str)]


class MatchContext(BaseModel):
    """Event attributes a filter is evaluated against."""

    tags: List[str] = Field(default_factory=list)
    stage: Optional[str] = None
    text: Optional[str] = None


def matches(filter_config: Optional[Mapping[str, Any]], context: MatchContext) -> bool:
    """Return ``True`` when ``context`` satisfies every rule in ``filter_config``.

    Supported rules are ``stages``, ``tagsAny``, ``tagsAll`` and
    ``textIncludes``. Missing or empty rules pass, and a missing config
    matches everything.
    """

    if filter_config is None:
        return True

    tags = set(context.tags)

    stages = to_string_list(filter_config.get("stages"))
    # an event without a stage never satisfies a stage rule
    if stages and context.stage not in stages:
        return False

    tags_any = to_string_list(filter_config.get("tagsAny"))
    if tags_any and not any(tag in tags for tag in tags_any):
        return False

    tags_all = to_string_list(filter_config.get("tagsAll"))
    if tags_all and not all(tag in tags for tag in tags_all):
        return False

    text_includes = to_string_list(filter_config.get("textIncludes"))
    if text_includes:
        text = (context.text or "").casefold()
        if not any(value.casefold() in text for value in text_includes):
            return False

    return True


def evaluate_condition(
    config: Optional[Mapping[str, Any]], context: MatchContext
) -> bool:
    """Evaluate a condition node. Unlike triggers, no config means ``False``."""
    if config is None:
        return False
    return matches(config, context)


EdgeT = TypeVar("EdgeT", bound=JourneyEdge)


def select_edges_for_condition(edges: Sequence[EdgeT], outcome: bool) -> List[EdgeT]:
    """Pick the branch for ``outcome``; unlabelled graphs follow every edge."""
    label = "true" if outcome else "false"
    selected = [edge for edge in edges if (edge.label or "").strip().lower() == label]
    return selected if selected else list(edges)
