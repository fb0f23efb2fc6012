from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from ..identity_context.types import ContextProfile
from .registry import TOOL_DEFS, ToolDef

COMPETENCY_RELEVANCE = 0.6
DOMAIN_RELEVANCE = 0.4
MAX_SUGGESTIONS = 10


@dataclass(frozen=True)
class ToolSuggestion:
    tool: str
    relevance: float
    family: str
    matched_competencies: List[str]
    matched_domains: List[str]


def suggest_tools(
    profile: ContextProfile,
    registry: Optional[Dict[str, ToolDef]] = None,
    limit: int = MAX_SUGGESTIONS,
) -> List[ToolSuggestion]:
    """
    Rank tools by how well they fit the profile's competencies and domains.

    0.6 for any required competency present, plus 0.4 for any required domain.
    Zero-relevance tools are dropped. Ties keep registry order.
    """
    tools = registry if registry is not None else TOOL_DEFS
    competencies = set(profile.competency_names)
    domains = set(profile.domains)

    suggestions: List[ToolSuggestion] = []
    for name, tdef in tools.items():
        comp_hits = sorted(tdef.competencies & competencies)
        dom_hits = sorted(tdef.domains & domains)
        relevance = (COMPETENCY_RELEVANCE if comp_hits else 0.0) + (DOMAIN_RELEVANCE if dom_hits else 0.0)
        if relevance <= 0:
            continue
        suggestions.append(
            ToolSuggestion(
                tool=name,
                relevance=round(relevance, 2),
                family=tdef.family.value,
                matched_competencies=comp_hits,
                matched_domains=dom_hits,
            )
        )

    suggestions.sort(key=lambda s: s.relevance, reverse=True)
    return suggestions[: max(0, int(limit))]
