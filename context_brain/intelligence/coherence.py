"""
intelligence/coherence.py

Coherence Analyzer: does the current work still belong to the bound context?

Scoring (each present hint adds its weight to the denominator):
- project path   weight 3: exact 3, prefix-related 1.5, else 0
- workspace      weight 1: exact only
- support type   weight 2: exact only
No hints at all scores 0.5.

Decision order: continue, expand, switch, new, confirm.
Reads only; safe to run concurrently with anything.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..identity_context import db as cdb
from ..identity_context.types import CoherenceHints, ContextProfile
from .errors import ContextNotFound

PROJECT_WEIGHT = 3.0
PROJECT_RELATED_SCORE = 1.5
WORKSPACE_WEIGHT = 1.0
SUPPORT_TYPE_WEIGHT = 2.0
NO_HINTS_SCORE = 0.5

CONTINUE_THRESHOLD = 0.7
EXPAND_THRESHOLD = 0.4
NEW_THRESHOLD = 0.3
SWITCH_MARGIN = 0.2
ALTERNATIVE_FLOOR = 0.3


class CoherenceRecommendation(str, Enum):
    CONTINUE = "continue"
    EXPAND = "expand"
    SWITCH = "switch"
    NEW = "new"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class DriftIndicators:
    new_domains: List[str] = field(default_factory=list)
    project_changed: bool = False
    is_expansion: bool = False
    is_drift: bool = False


@dataclass(frozen=True)
class Alternative:
    chitty_id: str
    score: float
    support_type: Optional[str] = None
    project_path: Optional[str] = None


@dataclass(frozen=True)
class CoherenceResult:
    recommendation: CoherenceRecommendation
    coherence_score: float
    reason: Optional[str] = None
    confirm: bool = False
    expansion_areas: List[str] = field(default_factory=list)
    suggested_context: Optional[Alternative] = None
    drift: Optional[DriftIndicators] = None
    alternatives: List[Alternative] = field(default_factory=list)


def paths_related(path1: Optional[str], path2: Optional[str]) -> bool:
    if not path1 or not path2:
        return False
    return path1.startswith(path2) or path2.startswith(path1)


def calculate_coherence(profile: ContextProfile, hints: CoherenceHints) -> float:
    score = 0.0
    weights = 0.0
    entity = profile.entity

    if hints.project_path:
        weights += PROJECT_WEIGHT
        if entity.project_path == hints.project_path:
            score += PROJECT_WEIGHT
        elif paths_related(entity.project_path, hints.project_path):
            score += PROJECT_RELATED_SCORE

    if hints.workspace:
        weights += WORKSPACE_WEIGHT
        if entity.workspace == hints.workspace:
            score += WORKSPACE_WEIGHT

    if hints.support_type:
        weights += SUPPORT_TYPE_WEIGHT
        if entity.support_type == hints.support_type:
            score += SUPPORT_TYPE_WEIGHT

    return score / weights if weights > 0 else NO_HINTS_SCORE


def detect_drift(profile: ContextProfile, hints: CoherenceHints) -> DriftIndicators:
    existing = set(profile.domains)
    new_domains: List[str] = []
    for d in hints.domains or []:
        if d not in existing and d not in new_domains:
            new_domains.append(d)

    project_changed = bool(hints.project_path) and profile.entity.project_path != hints.project_path
    return DriftIndicators(
        new_domains=new_domains,
        project_changed=project_changed,
        is_expansion=(not project_changed) and 1 <= len(new_domains) <= 2,
        is_drift=project_changed or len(new_domains) > 3,
    )


def find_alternatives(
    conn: sqlite3.Connection,
    hints: CoherenceHints,
    *,
    exclude_chitty_id: str,
) -> List[Alternative]:
    """Live contexts sharing project path or support type, scored above the floor, best first."""
    candidates = cdb.find_alternatives(
        conn,
        exclude_chitty_id=exclude_chitty_id,
        project_path=hints.project_path,
        support_type=hints.support_type,
    )
    scored = [
        Alternative(
            chitty_id=p.chitty_id,
            score=calculate_coherence(p, hints),
            support_type=p.entity.support_type,
            project_path=p.entity.project_path,
        )
        for p in candidates
    ]
    scored = [a for a in scored if a.score > ALTERNATIVE_FLOOR]
    scored.sort(key=lambda a: a.score, reverse=True)
    return scored


def decide(score: float, drift: DriftIndicators, alternatives: List[Alternative]) -> CoherenceResult:
    if score >= CONTINUE_THRESHOLD:
        return CoherenceResult(
            recommendation=CoherenceRecommendation.CONTINUE,
            coherence_score=score,
            reason="Work aligns with context",
        )

    if score >= EXPAND_THRESHOLD and drift.is_expansion:
        return CoherenceResult(
            recommendation=CoherenceRecommendation.EXPAND,
            coherence_score=score,
            reason="Work extends the context into new domains",
            confirm=True,
            expansion_areas=list(drift.new_domains),
        )

    if alternatives and alternatives[0].score > score + SWITCH_MARGIN:
        return CoherenceResult(
            recommendation=CoherenceRecommendation.SWITCH,
            coherence_score=score,
            reason="Another context fits this work better",
            suggested_context=alternatives[0],
        )

    if score < NEW_THRESHOLD:
        return CoherenceResult(
            recommendation=CoherenceRecommendation.NEW,
            coherence_score=score,
            reason="Work differs significantly",
        )

    return CoherenceResult(
        recommendation=CoherenceRecommendation.CONFIRM,
        coherence_score=score,
        reason="Ambiguous fit; caller should decide",
        confirm=True,
        drift=drift,
        alternatives=list(alternatives),
    )


def analyze_coherence(conn: sqlite3.Connection, chitty_id: str, hints: CoherenceHints) -> CoherenceResult:
    profile = cdb.load_profile(conn, chitty_id)
    if profile is None:
        raise ContextNotFound(f"Context {chitty_id} not found", details={"chitty_id": chitty_id})

    score = calculate_coherence(profile, hints)
    drift = detect_drift(profile, hints)
    alternatives = find_alternatives(conn, hints, exclude_chitty_id=chitty_id)
    return decide(score, drift, alternatives)
