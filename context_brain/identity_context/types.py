"""
identity_context/types.py

Typed containers for context rows.

Design goals:
- The store adapter (db.py) is the only place that sees encoded JSON columns.
- Everything above the store works with these dataclasses.
- DNA never carries user preferences; those are not part of a context.

This module is safe to import anywhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


SUPPORT_TYPES = ("development", "operations", "legal", "research", "administrative", "financial")

MIN_TRUST_LEVEL = 0
MAX_TRUST_LEVEL = 5
DEFAULT_TRUST_SCORE = 50.0
DEFAULT_TRUST_LEVEL = 3


class ContextStatus(str, Enum):
    """
    Lifecycle status of a context entity.

    ARCHIVED and DISSOLVED are terminal: the row stays for audit and accepts no mutation.
    """

    ACTIVE = "active"
    DORMANT = "dormant"
    ARCHIVED = "archived"
    DISSOLVED = "dissolved"

    @property
    def is_terminal(self) -> bool:
        return self in (ContextStatus.ARCHIVED, ContextStatus.DISSOLVED)


LIVE_STATUSES = (ContextStatus.ACTIVE.value, ContextStatus.DORMANT.value)


class Issuer(str, Enum):
    """How the entity came to exist."""

    NORMAL = "normal"
    SUPERNOVA = "supernova"
    FISSION = "fission"
    DERIVATIVE = "derivative"
    SUSPENSION = "suspension"


class LifecycleEventType(str, Enum):
    CONTEXT_CREATED = "context_created"
    SUPERNOVA_EXECUTED = "supernova_executed"
    FISSION_EXECUTED = "fission_executed"
    DERIVATIVE_CREATED = "derivative_created"
    SUSPENSION_CREATED = "suspension_created"
    SUSPENSION_DISSOLVED = "suspension_dissolved"
    SOLUTION_CREATED = "solution_created"
    COMBINATION_CREATED = "combination_created"
    COLLABORATION_CREATED = "collaboration_created"
    PAIR_CREATED = "pair_created"


class CollaborationKind(str, Enum):
    DELEGATION = "delegation"
    SOLUTION = "solution"


def to_plain(value: Any) -> Any:
    """Dataclasses/enums to JSON-safe dicts, lists and scalars."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_plain(v) for v in value]
    return value


def clamp_trust_level(level: Any) -> int:
    try:
        value = int(level)
    except (TypeError, ValueError):
        value = MIN_TRUST_LEVEL
    return max(MIN_TRUST_LEVEL, min(MAX_TRUST_LEVEL, value))


@dataclass(frozen=True)
class Competency:
    """
    A named skill with a 1-5 proficiency.
    `sources` is only populated for blended (suspension) competencies.
    """

    name: str
    proficiency: int = 1
    sources: List[str] = field(default_factory=list)


def merge_competencies(*groups: Iterable[Competency]) -> List[Competency]:
    """
    Union competencies by name, keeping the highest proficiency.
    First-seen order is preserved.
    """
    merged: Dict[str, Competency] = {}
    for group in groups:
        for comp in group:
            existing = merged.get(comp.name)
            if existing is None:
                merged[comp.name] = Competency(comp.name, comp.proficiency)
            elif comp.proficiency > existing.proficiency:
                merged[comp.name] = Competency(comp.name, comp.proficiency)
    return list(merged.values())


def union_domains(*groups: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for group in groups:
        for d in group:
            if d and d not in seen:
                seen.add(d)
                out.append(d)
    return out


@dataclass(frozen=True)
class ContextDNA:
    competencies: List[Competency] = field(default_factory=list)
    domains: List[str] = field(default_factory=list)
    total_interactions: int = 0
    total_decisions: int = 0
    success_rate: float = 0.0  # 0.0 - 1.0
    anomaly_count: int = 0
    last_anomaly_at: Optional[str] = None

    @property
    def competency_names(self) -> List[str]:
        return [c.name for c in self.competencies]


@dataclass(frozen=True)
class ContextEntity:
    id: str
    chitty_id: str
    context_hash: str
    project_path: str
    workspace: Optional[str]
    support_type: str
    organization: Optional[str]
    signature: str
    issuer: Issuer
    trust_score: float
    trust_level: int
    status: ContextStatus
    version: int = 1
    total_sessions: int = 0
    last_activity: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class ContextProfile:
    """An entity joined with its DNA. This is what every engine component reads."""

    entity: ContextEntity
    dna: ContextDNA = field(default_factory=ContextDNA)

    @property
    def chitty_id(self) -> str:
        return self.entity.chitty_id

    @property
    def trust_level(self) -> int:
        return self.entity.trust_level

    @property
    def competency_names(self) -> List[str]:
        return self.dna.competency_names

    @property
    def domains(self) -> List[str]:
        return list(self.dna.domains)

    def summary(self) -> Dict[str, Any]:
        return {
            "chitty_id": self.entity.chitty_id,
            "project_path": self.entity.project_path,
            "support_type": self.entity.support_type,
            "trust_level": self.entity.trust_level,
            "total_interactions": self.dna.total_interactions,
            "success_rate": round(self.dna.success_rate * 100) if self.dna.success_rate else None,
            "competencies": self.competency_names[:5],
        }


@dataclass(frozen=True)
class CoherenceHints:
    """Fresh session hints. Any field may be absent."""

    project_path: Optional[str] = None
    workspace: Optional[str] = None
    support_type: Optional[str] = None
    domains: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SessionMetrics:
    interactions: int = 0
    decisions: int = 0
    success_rate: Optional[float] = None
    competencies: List[Competency] = field(default_factory=list)
    domains: List[str] = field(default_factory=list)
    anomalies: int = 0


@dataclass(frozen=True)
class LifecycleEvent:
    id: str
    event_type: str
    source_ids: List[str]
    result_ids: List[str]
    trigger_reason: Optional[str] = None
    analysis: Dict[str, Any] = field(default_factory=dict)
    user_confirmed: bool = False
    created_at: Optional[str] = None


@dataclass(frozen=True)
class ContextPair:
    id: str
    chitty_id_1: str
    chitty_id_2: str
    relationship: str
    complementarity: str
    overlap: List[str] = field(default_factory=list)
    unique_1: List[str] = field(default_factory=list)
    unique_2: List[str] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)
    status: str = "active"
    created_at: Optional[str] = None


@dataclass(frozen=True)
class Collaboration:
    id: str
    kind: CollaborationKind
    parent_chitty_id: Optional[str]
    child_chitty_id: Optional[str]
    project_id: Optional[str]
    scope: Dict[str, Any] = field(default_factory=dict)
    permissions: List[str] = field(default_factory=list)
    status: str = "active"
    started_at: Optional[str] = None
    members: Dict[str, str] = field(default_factory=dict)  # chitty_id -> role
