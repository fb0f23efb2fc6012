from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class ToolFamily(str, Enum):
    PLATFORM = "platform"
    DATA = "data"
    DEVELOPMENT = "development"
    IDENTITY = "identity"
    LEGAL = "legal"
    FINANCE = "finance"
    DOCUMENTATION = "documentation"


@dataclass(frozen=True)
class ToolDef:
    name: str
    family: ToolFamily
    description: str
    competencies: FrozenSet[str]
    domains: FrozenSet[str]


def _tool(name: str, family: ToolFamily, description: str, competencies: tuple, domains: tuple) -> ToolDef:
    return ToolDef(name, family, description, frozenset(competencies), frozenset(domains))


# Static capability registry: what a context must know to make use of each tool.
TOOL_DEFS: Dict[str, ToolDef] = {
    "wrangler": _tool(
        "wrangler", ToolFamily.PLATFORM, "Deploy and manage edge workers",
        ("cloudflare-workers", "deployment"), ("backend-development", "infrastructure"),
    ),
    "d1": _tool(
        "d1", ToolFamily.DATA, "Query the edge SQL database",
        ("d1", "sql", "database"), ("backend-development", "data"),
    ),
    "vectorize": _tool(
        "vectorize", ToolFamily.DATA, "Vector index for embeddings search",
        ("ai", "embeddings", "vector-search"), ("ai-development", "search"),
    ),
    "typescript": _tool(
        "typescript", ToolFamily.DEVELOPMENT, "TypeScript toolchain",
        ("typescript", "javascript"), ("frontend-development", "backend-development"),
    ),
    "git": _tool(
        "git", ToolFamily.DEVELOPMENT, "Version control operations",
        ("git", "version-control"), ("development",),
    ),
    "chittyid_mint": _tool(
        "chittyid_mint", ToolFamily.IDENTITY, "Mint identifiers from the identity authority",
        ("identity", "chittyos"), ("identity-management",),
    ),
    "chitty_evidence_ingest": _tool(
        "chitty_evidence_ingest", ToolFamily.LEGAL, "Ingest evidence documents",
        ("evidence", "legal"), ("legal", "evidence-management"),
    ),
    "chitty_case_create": _tool(
        "chitty_case_create", ToolFamily.LEGAL, "Open a legal case",
        ("legal", "case-management"), ("legal",),
    ),
    "chitty_finance_connect": _tool(
        "chitty_finance_connect", ToolFamily.FINANCE, "Connect banking accounts",
        ("finance", "banking"), ("financial",),
    ),
    "notion_query": _tool(
        "notion_query", ToolFamily.DOCUMENTATION, "Query project documentation",
        ("notion", "documentation"), ("documentation", "project-management"),
    ),
    "neon_query": _tool(
        "neon_query", ToolFamily.DATA, "Query the Postgres database",
        ("postgresql", "sql", "database"), ("backend-development", "data"),
    ),
}


def is_known_tool(tool_name: str) -> bool:
    return tool_name in TOOL_DEFS


def get_tool(tool_name: str) -> Optional[ToolDef]:
    return TOOL_DEFS.get(tool_name)
