"""
Pytest configuration and shared fixtures for context brain tests.
"""
import os
import tempfile
from typing import Any, Dict, List, Optional

import pytest

from context_brain.identity_context import db as cdb
from context_brain.identity_context.types import (
    Competency,
    ContextDNA,
    ContextEntity,
    ContextProfile,
    ContextStatus,
    Issuer,
)
from context_brain.intelligence.lifecycle import LifecycleOrchestrator
from context_brain.minter import MintResult


class FakeMinter:
    """Deterministic stand-in for the identity authority client."""

    def __init__(self, authoritative: bool = True) -> None:
        self.authoritative = authoritative
        self.calls: List[Dict[str, Any]] = []

    def mint(self, entity_type: str = "P", metadata: Optional[Dict[str, Any]] = None) -> MintResult:
        self.calls.append({"entity_type": entity_type, "metadata": dict(metadata or {})})
        chitty_id = f"01-1-TST-{len(self.calls):04d}-{entity_type}-2601-0-01"
        return MintResult(
            chitty_id=chitty_id,
            authoritative=self.authoritative,
            fallback_reason=None if self.authoritative else "authority offline",
            metadata=dict(metadata or {}),
        )


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture
def conn(temp_db):
    connection = cdb.connect(temp_db)
    yield connection
    connection.close()


@pytest.fixture
def minter():
    return FakeMinter()


@pytest.fixture
def orchestrator(conn, minter):
    return LifecycleOrchestrator(conn, minter)


@pytest.fixture
def make_context(conn, orchestrator):
    """
    Create a live context and shape it for a test.

    Returns the reloaded profile.
    """

    def _make(
        project_path: str = "/srv/app",
        support_type: str = "development",
        *,
        workspace: Optional[str] = None,
        organization: Optional[str] = None,
        trust_level: int = 3,
        trust_score: float = 50.0,
        competencies: Optional[List[Any]] = None,
        domains: Optional[List[str]] = None,
        anomaly_count: int = 0,
        success_rate: float = 0.0,
        total_decisions: int = 0,
        total_interactions: int = 0,
        status: Optional[str] = None,
    ) -> ContextProfile:
        created = orchestrator.create_context(
            project_path=project_path,
            support_type=support_type,
            workspace=workspace,
            organization=organization,
        )
        chitty_id = created.profile.chitty_id
        comps = [c if isinstance(c, Competency) else Competency(c, 3) for c in (competencies or [])]
        with cdb.transaction(conn):
            conn.execute(
                "UPDATE context_entities SET trust_level = ?, trust_score = ? WHERE chitty_id = ?",
                (trust_level, trust_score, chitty_id),
            )
            cdb.update_dna(
                conn,
                entity=created.profile.entity,
                dna=ContextDNA(
                    competencies=comps,
                    domains=list(domains or []),
                    total_interactions=total_interactions,
                    total_decisions=total_decisions,
                    success_rate=success_rate,
                    anomaly_count=anomaly_count,
                ),
            )
            if status:
                conn.execute("UPDATE context_entities SET status = ? WHERE chitty_id = ?", (status, chitty_id))
        return cdb.load_profile(conn, chitty_id, include_terminal=True)

    return _make


@pytest.fixture
def profile_factory():
    """In-memory profiles for the pure scoring functions (no store)."""

    def _profile(
        project_path: str = "/srv/app",
        support_type: str = "development",
        *,
        workspace: Optional[str] = None,
        trust_level: int = 3,
        competencies: Optional[List[str]] = None,
        domains: Optional[List[str]] = None,
        anomaly_count: int = 0,
        success_rate: float = 0.0,
        total_decisions: int = 0,
        chitty_id: str = "01-1-TST-9999-P-2601-0-01",
    ) -> ContextProfile:
        entity = ContextEntity(
            id="row-" + chitty_id,
            chitty_id=chitty_id,
            context_hash="hash-" + chitty_id,
            project_path=project_path,
            workspace=workspace,
            support_type=support_type,
            organization=None,
            signature="test",
            issuer=Issuer.NORMAL,
            trust_score=50.0,
            trust_level=trust_level,
            status=ContextStatus.ACTIVE,
        )
        dna = ContextDNA(
            competencies=[Competency(c, 3) for c in (competencies or [])],
            domains=list(domains or []),
            anomaly_count=anomaly_count,
            success_rate=success_rate,
            total_decisions=total_decisions,
        )
        return ContextProfile(entity=entity, dna=dna)

    return _profile


@pytest.fixture
def fallback_minter():
    """Minter whose authority is unreachable: every identifier is locally minted."""
    return FakeMinter(authoritative=False)
