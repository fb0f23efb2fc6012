from __future__ import annotations

"""
identity_context/router.py

HTTP surface for contexts and context intelligence.

- /contexts      create/resolve, profiles, session commit, events, pairs,
                 collaborations, collaborator search, reconciliation queue
- /intelligence  coherence, autonomy, tools, session decisions and every
                 lifecycle analyze/execute

One SQLite connection per request, always closed in finally.
ContextError subclasses map onto HTTP status codes with a structured detail.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..config import load_settings
from ..intelligence import collaboration as collab
from ..intelligence.autonomy import autonomy_for, determine_routing
from ..intelligence.coherence import analyze_coherence
from ..intelligence.errors import ContextError, ContextErrorClass
from ..intelligence.lifecycle import FissionSplit, LifecycleOrchestrator
from ..intelligence.session import commit_session, session_decisions
from ..minter import IdentityMinter
from ..tools.advisor import suggest_tools
from . import db as cdb
from .types import CoherenceHints, Competency, SessionMetrics, to_plain

logger = logging.getLogger(__name__)

STATUS_BY_CLASS: Dict[ContextErrorClass, int] = {
    ContextErrorClass.NOT_FOUND: 404,
    ContextErrorClass.VALIDATION: 400,
    ContextErrorClass.POLICY_DENIED: 403,
    ContextErrorClass.CONFLICT: 409,
    ContextErrorClass.STORE_FAILURE: 500,
}


def _db_path_from_request(request: Request) -> str:
    # main.py sets app.state.db_path; fall back to env settings.
    state = getattr(getattr(request, "app", None), "state", None)
    candidate = getattr(state, "db_path", None) if state else None
    return str(candidate or load_settings().db_path)


def _connect(request: Request) -> sqlite3.Connection:
    return cdb.connect(_db_path_from_request(request))


def _minter_from_request(request: Request) -> IdentityMinter:
    minter = getattr(request.app.state, "minter", None)
    if minter is None:
        settings = load_settings()
        minter = IdentityMinter(
            settings.chittyid_service_url,
            token=settings.chittyid_token,
            timeout=settings.chittyid_timeout,
            retry_after_seconds=settings.chittyid_retry_after_seconds,
        )
        request.app.state.minter = minter
    return minter


def _orchestrator(request: Request, conn: sqlite3.Connection) -> LifecycleOrchestrator:
    ttl = getattr(request.app.state, "suspension_ttl_seconds", None) or load_settings().suspension_ttl_seconds
    return LifecycleOrchestrator(conn, _minter_from_request(request), suspension_ttl_seconds=ttl)


def _http_error(exc: ContextError) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_CLASS.get(exc.failure_class, 400), detail=to_plain(exc.to_dict()))


# ----------------------------
# Request models
# ----------------------------

class CompetencyIn(BaseModel):
    name: str = Field(..., min_length=1)
    proficiency: int = Field(1, ge=1, le=5)


class HintsIn(BaseModel):
    project_path: Optional[str] = None
    workspace: Optional[str] = None
    support_type: Optional[str] = None
    domains: List[str] = Field(default_factory=list)

    def to_hints(self) -> CoherenceHints:
        return CoherenceHints(
            project_path=self.project_path,
            workspace=self.workspace,
            support_type=self.support_type,
            domains=list(self.domains),
        )


class CreateContextRequest(BaseModel):
    project_path: str = Field(..., min_length=1)
    support_type: str = Field(..., min_length=1)
    workspace: Optional[str] = None
    organization: Optional[str] = None


class ResolveContextRequest(BaseModel):
    project_path: Optional[str] = None
    workspace: Optional[str] = None
    support_type: Optional[str] = None
    organization: Optional[str] = None


class SessionCommitRequest(BaseModel):
    interactions: int = Field(0, ge=0)
    decisions: int = Field(0, ge=0)
    success_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    competencies: List[CompetencyIn] = Field(default_factory=list)
    domains: List[str] = Field(default_factory=list)
    anomalies: int = Field(0, ge=0)


class PairRequest(BaseModel):
    chitty_id_1: str
    chitty_id_2: str
    relationship: str = Field(..., min_length=1)


class CollaborationRequest(BaseModel):
    parent_chitty_id: str
    child_chitty_id: str
    project_id: Optional[str] = None
    scope: Dict[str, Any] = Field(default_factory=dict)
    permissions: List[str] = Field(default_factory=list)


class SupernovaRequest(BaseModel):
    chitty_id_1: str
    chitty_id_2: str
    confirmation_token: Optional[str] = None


class FissionSplitIn(BaseModel):
    label: str = Field(..., min_length=1)
    domains: List[str] = Field(default_factory=list)
    competencies: List[CompetencyIn] = Field(default_factory=list)
    support_type: Optional[str] = None


class FissionRequest(BaseModel):
    chitty_id: str
    split_by: str = "domain"
    families: Optional[Dict[str, List[str]]] = None
    confirmation_token: Optional[str] = None
    splits: Optional[List[FissionSplitIn]] = None


class DerivativeRequest(BaseModel):
    source_chitty_id: str
    label: Optional[str] = None
    project_path: Optional[str] = None
    support_type: Optional[str] = None
    inherit_competencies: bool = True
    inherit_domains: bool = True


class SuspensionRequest(BaseModel):
    context_ids: List[str]
    task_description: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, gt=0)


class SolutionRequest(BaseModel):
    context_ids: List[str]
    problem_description: Optional[str] = None
    roles: Dict[str, str] = Field(default_factory=dict)


class CombinationRequest(BaseModel):
    chitty_id_1: str
    chitty_id_2: str
    share_direction: str = "bidirectional"
    share_domains: bool = True


def _competencies(items: List[CompetencyIn]) -> List[Competency]:
    return [Competency(name=c.name, proficiency=c.proficiency) for c in items]


# Routers (names used by main.py includes)
contexts_router = APIRouter(prefix="/contexts", tags=["contexts"])
intelligence_router = APIRouter(prefix="/intelligence", tags=["intelligence"])


# ----------------------------
# Context APIs
# ----------------------------

@contexts_router.post("")
def create_context(request: Request, body: CreateContextRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        result = _orchestrator(request, conn).create_context(
            project_path=body.project_path,
            support_type=body.support_type,
            workspace=body.workspace,
            organization=body.organization,
        )
        return {
            "ok": True,
            "created": result.created,
            "authoritative": result.authoritative,
            "profile": to_plain(result.profile),
        }
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@contexts_router.post("/resolve")
def resolve_context(request: Request, body: ResolveContextRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        resolution = _orchestrator(request, conn).resolve_context(
            project_path=body.project_path,
            workspace=body.workspace,
            support_type=body.support_type,
            organization=body.organization,
        )
        return {"ok": True, **to_plain(resolution)}
    finally:
        conn.close()


@contexts_router.get("/reconciliation")
def reconciliation_queue(
    request: Request,
    pending_only: bool = Query(default=True),
    limit: int = Query(default=200, ge=1, le=1000),
) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        items = cdb.list_reconciliation(conn, pending_only=pending_only, limit=limit)
        return {"items": items, "meta": {"count": len(items), "pending_only": pending_only}}
    finally:
        conn.close()


@contexts_router.get("/collaborators")
def find_collaborators(
    request: Request,
    competency: List[str] = Query(default=[]),
) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        items = collab.find_collaborators(conn, competency)
        return {"items": to_plain(items), "meta": {"count": len(items)}}
    finally:
        conn.close()


@contexts_router.post("/pairs")
def create_pair(request: Request, body: PairRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        result = collab.create_pair(
            conn,
            chitty_id_1=body.chitty_id_1,
            chitty_id_2=body.chitty_id_2,
            relationship=body.relationship,
        )
        return {"ok": True, **to_plain(result)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@contexts_router.post("/collaborations")
def create_collaboration(request: Request, body: CollaborationRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        result = collab.create_collaboration(
            conn,
            parent_chitty_id=body.parent_chitty_id,
            child_chitty_id=body.child_chitty_id,
            project_id=body.project_id,
            scope=body.scope,
            permissions=body.permissions,
        )
        return {"ok": True, "collaboration": to_plain(result)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@contexts_router.get("/collaborations/{collaboration_id}")
def get_collaboration(request: Request, collaboration_id: str) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        found = cdb.get_collaboration(conn, collaboration_id)
        if not found:
            raise HTTPException(status_code=404, detail="Collaboration not found")
        return to_plain(found)
    finally:
        conn.close()


@contexts_router.get("/{chitty_id}")
def get_profile(
    request: Request,
    chitty_id: str,
    include_terminal: bool = Query(default=False),
) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        profile = cdb.load_profile(conn, chitty_id, include_terminal=include_terminal)
        if not profile:
            raise HTTPException(status_code=404, detail="Context not found")
        return {"profile": to_plain(profile), "summary": profile.summary()}
    finally:
        conn.close()


@contexts_router.post("/{chitty_id}/sessions")
def commit_session_route(request: Request, chitty_id: str, body: SessionCommitRequest) -> Dict[str, Any]:
    metrics = SessionMetrics(
        interactions=body.interactions,
        decisions=body.decisions,
        success_rate=body.success_rate,
        competencies=_competencies(body.competencies),
        domains=list(body.domains),
        anomalies=body.anomalies,
    )
    conn = _connect(request)
    try:
        profile = commit_session(conn, chitty_id, metrics)
        return {"ok": True, "profile": to_plain(profile)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@contexts_router.get("/{chitty_id}/events")
def list_events(
    request: Request,
    chitty_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        items = cdb.list_lifecycle_events(conn, chitty_id=chitty_id, limit=limit)
        return {"items": to_plain(items), "meta": {"count": len(items), "chitty_id": chitty_id}}
    finally:
        conn.close()


@contexts_router.get("/{chitty_id}/pairs")
def list_pairs(request: Request, chitty_id: str) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        items = collab.list_pairs(conn, chitty_id)
        return {"items": to_plain(items), "meta": {"count": len(items)}}
    finally:
        conn.close()


@contexts_router.get("/{chitty_id}/collaborations")
def list_collaborations(request: Request, chitty_id: str) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        items = cdb.list_collaborations(conn, chitty_id)
        return {"items": to_plain(items), "meta": {"count": len(items)}}
    finally:
        conn.close()


# ----------------------------
# Intelligence APIs (read-only)
# ----------------------------

@intelligence_router.post("/{chitty_id}/coherence")
def coherence(request: Request, chitty_id: str, body: Optional[HintsIn] = None) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        return to_plain(analyze_coherence(conn, chitty_id, (body or HintsIn()).to_hints()))
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.get("/{chitty_id}/autonomy")
def autonomy(request: Request, chitty_id: str) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        decision, guardrails = autonomy_for(conn, chitty_id)
        profile = cdb.load_profile(conn, chitty_id)
        return {
            "autonomy": to_plain(decision),
            "guardrails": to_plain(guardrails),
            "routing": determine_routing(profile) if profile else None,
        }
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.get("/{chitty_id}/tools")
def tools(
    request: Request,
    chitty_id: str,
    limit: int = Query(default=10, ge=1, le=10),
) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        profile = cdb.load_profile(conn, chitty_id)
        if not profile:
            raise HTTPException(status_code=404, detail="Context not found")
        items = suggest_tools(profile, limit=limit)
        return {"items": to_plain(items), "meta": {"count": len(items)}}
    finally:
        conn.close()


@intelligence_router.post("/{chitty_id}/decisions")
def decisions(request: Request, chitty_id: str, body: Optional[HintsIn] = None) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        return session_decisions(conn, chitty_id, (body or HintsIn()).to_hints())
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


# ----------------------------
# Lifecycle APIs
# ----------------------------

@intelligence_router.post("/supernova/analyze")
def supernova_analyze(request: Request, body: SupernovaRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        return to_plain(_orchestrator(request, conn).analyze_supernova(body.chitty_id_1, body.chitty_id_2))
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.post("/supernova/execute")
def supernova_execute(request: Request, body: SupernovaRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        result = _orchestrator(request, conn).execute_supernova(
            body.chitty_id_1, body.chitty_id_2, body.confirmation_token
        )
        return {"ok": True, **to_plain(result)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.post("/fission/analyze")
def fission_analyze(request: Request, body: FissionRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        return to_plain(
            _orchestrator(request, conn).analyze_fission(body.chitty_id, split_by=body.split_by, families=body.families)
        )
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.post("/fission/execute")
def fission_execute(request: Request, body: FissionRequest) -> Dict[str, Any]:
    splits = None
    if body.splits is not None:
        splits = [
            FissionSplit(
                label=s.label,
                domains=list(s.domains),
                competencies=_competencies(s.competencies),
                support_type=s.support_type,
            )
            for s in body.splits
        ]
    conn = _connect(request)
    try:
        result = _orchestrator(request, conn).execute_fission(
            body.chitty_id,
            body.confirmation_token,
            splits=splits,
            split_by=body.split_by,
            families=body.families,
        )
        return {"ok": True, **to_plain(result)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.post("/derivative")
def derivative(request: Request, body: DerivativeRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        result = _orchestrator(request, conn).create_derivative(
            body.source_chitty_id,
            label=body.label,
            project_path=body.project_path,
            support_type=body.support_type,
            inherit_competencies=body.inherit_competencies,
            inherit_domains=body.inherit_domains,
        )
        return {"ok": True, **to_plain(result)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.get("/suspension/expired")
def suspension_expired(request: Request) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        items = _orchestrator(request, conn).expired_suspensions()
        return {"items": to_plain(items), "meta": {"count": len(items)}}
    finally:
        conn.close()


@intelligence_router.post("/suspension")
def suspension_create(request: Request, body: SuspensionRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        result = _orchestrator(request, conn).create_suspension(
            body.context_ids,
            task_description=body.task_description,
            expires_in=body.expires_in,
        )
        return {"ok": True, **to_plain(result)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.post("/suspension/{suspension_chitty_id}/dissolve")
def suspension_dissolve(request: Request, suspension_chitty_id: str) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        result = _orchestrator(request, conn).dissolve_suspension(suspension_chitty_id)
        return {"ok": True, "dissolved": True, **to_plain(result)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.post("/solution")
def solution_create(request: Request, body: SolutionRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        result = _orchestrator(request, conn).create_solution(
            body.context_ids,
            problem_description=body.problem_description,
            roles=body.roles,
        )
        return {"ok": True, **to_plain(result)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.get("/solution/{solution_id}")
def solution_get(request: Request, solution_id: str) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        return to_plain(_orchestrator(request, conn).get_solution(solution_id))
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()


@intelligence_router.post("/combination")
def combination(request: Request, body: CombinationRequest) -> Dict[str, Any]:
    conn = _connect(request)
    try:
        result = _orchestrator(request, conn).create_combination(
            body.chitty_id_1,
            body.chitty_id_2,
            share_direction=body.share_direction,
            share_domains=body.share_domains,
        )
        return {"ok": True, **to_plain(result)}
    except ContextError as exc:
        raise _http_error(exc) from exc
    finally:
        conn.close()
