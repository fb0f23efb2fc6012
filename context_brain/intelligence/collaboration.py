from __future__ import annotations

"""
intelligence/collaboration.py

Collaboration & Pair Manager.

- Collaborators: live contexts ranked by required-competency coverage and trust.
- Delegations: parent hands a scoped permission set to a child (parent trust >= 3).
- Pairs: relationship records between independent contexts with a
  complementarity classification.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..identity_context import db as cdb
from ..identity_context.types import (
    Collaboration,
    CollaborationKind,
    ContextPair,
    ContextProfile,
    LifecycleEventType,
)
from .errors import ContextNotFound, ContextValidationError, PolicyDenied

logger = logging.getLogger(__name__)

DELEGATION_TRUST_FLOOR = 3
COLLABORATOR_TRUST_FLOOR = 2
COLLABORATOR_LIMIT = 10
MATCH_WEIGHT = 2.0
TRUST_WEIGHT = 0.5

COMPLEMENTARY = "complementary"
OVERLAPPING = "overlapping"


@dataclass(frozen=True)
class Collaborator:
    chitty_id: str
    support_type: str
    trust_level: int
    matched_competencies: List[str]
    score: float


@dataclass(frozen=True)
class CompetencyOverlap:
    overlap: List[str] = field(default_factory=list)
    unique_1: List[str] = field(default_factory=list)
    unique_2: List[str] = field(default_factory=list)

    @property
    def complementarity(self) -> str:
        if len(self.unique_1) + len(self.unique_2) > len(self.overlap):
            return COMPLEMENTARY
        return OVERLAPPING


@dataclass(frozen=True)
class PairResult:
    pair: ContextPair
    recommendation: str


@dataclass(frozen=True)
class PairView:
    pair_id: str
    partner: str
    relationship: str
    complementarity: str


def competency_overlap(profile_1: ContextProfile, profile_2: ContextProfile) -> CompetencyOverlap:
    names_1 = profile_1.competency_names
    names_2 = profile_2.competency_names
    set_1, set_2 = set(names_1), set(names_2)
    return CompetencyOverlap(
        overlap=[c for c in names_1 if c in set_2],
        unique_1=[c for c in names_1 if c not in set_2],
        unique_2=[c for c in names_2 if c not in set_1],
    )


def _require_profile(conn: sqlite3.Connection, chitty_id: str) -> ContextProfile:
    profile = cdb.load_profile(conn, chitty_id)
    if profile is None:
        raise ContextNotFound(f"Context {chitty_id} not found", details={"chitty_id": chitty_id})
    return profile


def find_collaborators(
    conn: sqlite3.Connection,
    required_competencies: Sequence[str],
    *,
    limit: int = COLLABORATOR_LIMIT,
) -> List[Collaborator]:
    """Active contexts (trust >= 2) owning at least one required competency, best first."""
    required = [c for c in (required_competencies or []) if c]
    if not required:
        return []

    wanted = set(required)
    out: List[Collaborator] = []
    for profile in cdb.list_active_profiles(conn, min_trust_level=COLLABORATOR_TRUST_FLOOR, limit=200):
        matched = [c for c in profile.competency_names if c in wanted]
        if not matched:
            continue
        out.append(
            Collaborator(
                chitty_id=profile.chitty_id,
                support_type=profile.entity.support_type,
                trust_level=profile.trust_level,
                matched_competencies=matched,
                score=MATCH_WEIGHT * len(matched) + TRUST_WEIGHT * profile.trust_level,
            )
        )

    out.sort(key=lambda c: c.score, reverse=True)
    return out[: max(0, int(limit))]


def create_collaboration(
    conn: sqlite3.Connection,
    *,
    parent_chitty_id: str,
    child_chitty_id: str,
    project_id: Optional[str] = None,
    scope: Optional[Dict[str, Any]] = None,
    permissions: Optional[Sequence[str]] = None,
) -> Collaboration:
    if parent_chitty_id == child_chitty_id:
        raise ContextValidationError(
            "A context cannot delegate to itself",
            details={"chitty_id": parent_chitty_id},
        )

    parent = _require_profile(conn, parent_chitty_id)
    _require_profile(conn, child_chitty_id)

    if parent.trust_level < DELEGATION_TRUST_FLOOR:
        logger.info("Delegation denied: %s has trust level %s", parent_chitty_id, parent.trust_level)
        raise PolicyDenied(
            "Parent context trust level too low for delegation",
            details={
                "chitty_id": parent_chitty_id,
                "trust_level": parent.trust_level,
                "required": DELEGATION_TRUST_FLOOR,
            },
        )

    with cdb.transaction(conn):
        collab = cdb.insert_collaboration(
            conn,
            kind=CollaborationKind.DELEGATION,
            parent_chitty_id=parent_chitty_id,
            child_chitty_id=child_chitty_id,
            project_id=project_id,
            scope=dict(scope or {}),
            permissions=list(permissions or []),
            members={parent_chitty_id: "parent", child_chitty_id: "child"},
        )
        cdb.append_event(
            conn,
            event_type=LifecycleEventType.COLLABORATION_CREATED,
            source_ids=[parent_chitty_id],
            result_ids=[child_chitty_id],
            trigger_reason=f"delegation:{project_id or 'unscoped'}",
            analysis={"collaboration_id": collab.id, "permissions": list(collab.permissions)},
        )

    logger.info("Collaboration %s created: %s -> %s", collab.id, parent_chitty_id, child_chitty_id)
    return collab


def create_pair(
    conn: sqlite3.Connection,
    *,
    chitty_id_1: str,
    chitty_id_2: str,
    relationship: str,
) -> PairResult:
    if chitty_id_1 == chitty_id_2:
        raise ContextValidationError("A context cannot pair with itself", details={"chitty_id": chitty_id_1})
    if not (relationship or "").strip():
        raise ContextValidationError("relationship is required")

    ctx1 = _require_profile(conn, chitty_id_1)
    ctx2 = _require_profile(conn, chitty_id_2)
    sets = competency_overlap(ctx1, ctx2)

    with cdb.transaction(conn):
        pair = cdb.insert_pair(
            conn,
            chitty_id_1=chitty_id_1,
            chitty_id_2=chitty_id_2,
            relationship=relationship.strip(),
            complementarity=sets.complementarity,
            overlap=sets.overlap,
            unique_1=sets.unique_1,
            unique_2=sets.unique_2,
        )
        cdb.append_event(
            conn,
            event_type=LifecycleEventType.PAIR_CREATED,
            source_ids=[chitty_id_1, chitty_id_2],
            result_ids=[],
            trigger_reason=f"pair:{pair.relationship}",
            analysis={"pair_id": pair.id, "complementarity": pair.complementarity},
        )

    if pair.complementarity == COMPLEMENTARY:
        recommendation = "Great pairing - contexts bring different strengths"
    else:
        recommendation = "Consider if both contexts are needed - significant overlap"
    return PairResult(pair=pair, recommendation=recommendation)


def list_pairs(conn: sqlite3.Connection, chitty_id: str) -> List[PairView]:
    return [
        PairView(
            pair_id=p.id,
            partner=p.chitty_id_2 if p.chitty_id_1 == chitty_id else p.chitty_id_1,
            relationship=p.relationship,
            complementarity=p.complementarity,
        )
        for p in cdb.list_pairs(conn, chitty_id)
    ]
