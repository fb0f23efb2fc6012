from __future__ import annotations

"""
intelligence/session.py

Session commit and the per-session decision bundle.

commit_session folds one session's metrics into the context's DNA.
session_decisions is read-only: everything a session layer needs to know
about the bound context in one call.
"""

import logging
import sqlite3
from typing import Any, Dict

from ..identity_context import db as cdb
from ..identity_context.types import (
    CoherenceHints,
    ContextDNA,
    ContextProfile,
    SessionMetrics,
    merge_competencies,
    to_plain,
    union_domains,
)
from ..tools.advisor import suggest_tools
from .autonomy import determine_autonomy, determine_guardrails, determine_routing
from .coherence import analyze_coherence
from .collaboration import list_pairs
from .errors import ContextNotFound, ContextValidationError

logger = logging.getLogger(__name__)


def _require(conn: sqlite3.Connection, chitty_id: str) -> ContextProfile:
    profile = cdb.load_profile(conn, chitty_id)
    if profile is None:
        raise ContextNotFound(f"Context {chitty_id} not found", details={"chitty_id": chitty_id})
    return profile


def _validate_metrics(metrics: SessionMetrics) -> None:
    problems: Dict[str, Any] = {}
    if metrics.interactions < 0:
        problems["interactions"] = metrics.interactions
    if metrics.decisions < 0:
        problems["decisions"] = metrics.decisions
    if metrics.anomalies < 0:
        problems["anomalies"] = metrics.anomalies
    if metrics.success_rate is not None and not 0.0 <= metrics.success_rate <= 1.0:
        problems["success_rate"] = metrics.success_rate
    if problems:
        raise ContextValidationError("Invalid session metrics", details=problems)


def fold_metrics(dna: ContextDNA, metrics: SessionMetrics, now_iso: str) -> ContextDNA:
    """
    New DNA after one session.

    The success rate moves toward the session's rate in proportion to the
    session's share of all interactions seen so far.
    """
    total_interactions = dna.total_interactions + metrics.interactions
    success_rate = dna.success_rate
    if metrics.success_rate is not None:
        weight = metrics.interactions / max(total_interactions, 1)
        if dna.total_interactions == 0:
            weight = 1.0
        success_rate = dna.success_rate * (1 - weight) + metrics.success_rate * weight

    return ContextDNA(
        competencies=merge_competencies(dna.competencies, metrics.competencies),
        domains=union_domains(dna.domains, metrics.domains),
        total_interactions=total_interactions,
        total_decisions=dna.total_decisions + metrics.decisions,
        success_rate=round(success_rate, 6),
        anomaly_count=dna.anomaly_count + metrics.anomalies,
        last_anomaly_at=now_iso if metrics.anomalies > 0 else dna.last_anomaly_at,
    )


def commit_session(conn: sqlite3.Connection, chitty_id: str, metrics: SessionMetrics) -> ContextProfile:
    _validate_metrics(metrics)

    with cdb.transaction(conn):
        # Read under the write lock so concurrent commits fold one after another.
        profile = _require(conn, chitty_id)
        dna = fold_metrics(profile.dna, metrics, cdb.utc_now_iso())
        cdb.update_dna(conn, entity=profile.entity, dna=dna)
        cdb.record_session(conn, entity=profile.entity)

    if metrics.anomalies:
        logger.info("Session on %s reported %s anomalies", chitty_id, metrics.anomalies)
    updated = cdb.load_profile(conn, chitty_id)
    return updated if updated is not None else profile


def session_decisions(conn: sqlite3.Connection, chitty_id: str, hints: CoherenceHints) -> Dict[str, Any]:
    profile = _require(conn, chitty_id)
    return {
        "profile": profile.summary(),
        "coherence": to_plain(analyze_coherence(conn, chitty_id, hints)),
        "tools": to_plain(suggest_tools(profile)),
        "autonomy": to_plain(determine_autonomy(profile)),
        "guardrails": to_plain(determine_guardrails(profile)),
        "routing": determine_routing(profile),
        "pairs": to_plain(list_pairs(conn, chitty_id)),
        "timestamp": cdb.utc_now_iso(),
    }
