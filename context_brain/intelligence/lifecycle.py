from __future__ import annotations

"""
intelligence/lifecycle.py

Lifecycle Orchestrator: creation and the six lifecycle operators.

- supernova   destructive merge of two contexts (confirmation-gated)
- fission     destructive split of one context (confirmation-gated)
- derivative  non-destructive fork at reduced trust
- suspension  temporary blend of >= 2 contexts, dissolved explicitly
- solution    ad hoc team record, no new identity
- combination soft merge: a pair record plus optional domain sharing

Contract:
- analyze_* calls never write.
- Identifiers come from the minter, before the write transaction opens.
- Each execute writes entities, DNA, archives and its lifecycle event in one
  transaction. Sources leave active/dormant only through a version-checked
  transition, so two racing operations cannot both archive the same row.
- Locally minted (fallback) identifiers are queued for reconciliation in the
  same transaction as the entity that uses them.
"""

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..identity_context import db as cdb
from ..identity_context.types import (
    DEFAULT_TRUST_LEVEL,
    DEFAULT_TRUST_SCORE,
    SUPPORT_TYPES,
    CollaborationKind,
    Competency,
    ContextDNA,
    ContextPair,
    ContextProfile,
    ContextStatus,
    Issuer,
    LifecycleEvent,
    LifecycleEventType,
    merge_competencies,
    to_plain,
    union_domains,
)
from ..minter import CONTEXT_ENTITY_TYPE, IdentityMinter, MintResult
from .coherence import paths_related
from .collaboration import competency_overlap
from .errors import ContextNotFound, ContextValidationError, PolicyDenied

logger = logging.getLogger(__name__)

DEFAULT_SUSPENSION_TTL_SECONDS = 86400

# Supernova risk thresholds
TRUST_DILUTION_GAP = 2
ANOMALY_ACCUMULATION_LIMIT = 5

SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"

RISK_CRITICAL = "critical"
RISK_WARNING = "warning"
RISK_INFO = "info"

RECOMMEND_DISCOURAGE = "discourage"
RECOMMEND_CAUTION = "caution"
RECOMMEND_CONSIDER = "consider"

SPLIT_BY_DOMAIN = "domain"
SPLIT_BY_SUPPORT_TYPE = "support_type"

# Keyword families for domain fission. A domain joins the first family whose
# keyword it contains; the rest fall into "other".
DEFAULT_DOMAIN_FAMILIES: Dict[str, Tuple[str, ...]] = {
    "development": ("development", "api"),
    "operations": ("operations", "infrastructure"),
}
OTHER_FAMILY = "other"

# Competency -> domain keywords it serves. Competencies not listed match a
# domain that contains their own name.
COMPETENCY_DOMAIN_MAP: Dict[str, Tuple[str, ...]] = {
    "typescript": ("development", "frontend-development", "backend-development"),
    "javascript": ("development", "frontend-development", "backend-development"),
    "react": ("frontend-development",),
    "api-design": ("api", "backend-development"),
    "deployment": ("operations", "infrastructure"),
    "kubernetes": ("operations", "infrastructure"),
    "monitoring": ("operations",),
}

# Fixed support-type split: which competencies each side keeps.
SUPPORT_TYPE_SPLITS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("development", ("typescript", "javascript", "react", "api-design")),
    ("operations", ("deployment", "monitoring", "infrastructure")),
)

SHARE_DIRECTIONS = ("bidirectional", "1to2", "2to1")

# Role inference for solution members, first match wins.
ROLE_COMPETENCY_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("architect", ("architecture", "system-design", "api-design")),
    ("reviewer", ("testing", "qa", "code-review")),
    ("security", ("security",)),
)
ROLE_BY_SUPPORT_TYPE: Dict[str, str] = {
    "development": "implementer",
    "operations": "operator",
    "legal": "counsel",
    "research": "researcher",
    "financial": "analyst",
    "administrative": "coordinator",
}
DEFAULT_ROLE = "contributor"


# ----------------------------
# Results
# ----------------------------

@dataclass(frozen=True)
class SourceSummary:
    chitty_id: str
    support_type: str
    trust_level: int
    version: int


@dataclass(frozen=True)
class SupernovaRisk:
    type: str
    severity: str


@dataclass(frozen=True)
class MergePreview:
    competencies: List[Competency]
    domains: List[str]
    trust_level: int


@dataclass(frozen=True)
class SupernovaAnalysis:
    contexts: List[SourceSummary]
    risks: List[SupernovaRisk]
    risk_level: str
    merged_preview: MergePreview
    recommendation: str


@dataclass(frozen=True)
class SupernovaResult:
    merged_chitty_id: str
    source_contexts: List[str]
    analysis: SupernovaAnalysis
    authoritative: bool
    event: LifecycleEvent


@dataclass(frozen=True)
class FissionSplit:
    label: str
    domains: List[str] = field(default_factory=list)
    competencies: List[Competency] = field(default_factory=list)
    support_type: Optional[str] = None


@dataclass(frozen=True)
class FissionAnalysis:
    source_context: SourceSummary
    split_by: str
    proposed_splits: List[FissionSplit]
    recommendation: str = "viable"
    warning: str = "Fission will archive the original context and create new ones"


@dataclass(frozen=True)
class FissionChild:
    chitty_id: str
    label: str
    authoritative: bool


@dataclass(frozen=True)
class FissionResult:
    source_archived: str
    new_contexts: List[FissionChild]
    event: LifecycleEvent


@dataclass(frozen=True)
class DerivativeResult:
    derivative_chitty_id: str
    source_chitty_id: str
    label: str
    inherited: Dict[str, bool]
    trust_level: int
    trust_score: float
    authoritative: bool
    event: LifecycleEvent


@dataclass(frozen=True)
class SuspensionResult:
    suspension_chitty_id: str
    source_contexts: List[str]
    task: Optional[str]
    expires_in: int
    expires_at: int
    blended_competencies: List[Competency]
    blended_domains: List[str]
    trust_level: int
    authoritative: bool
    event: LifecycleEvent


@dataclass(frozen=True)
class DissolveResult:
    suspension_chitty_id: str
    restored_contexts: List[str]
    event: LifecycleEvent


@dataclass(frozen=True)
class ExpiredSuspension:
    chitty_id: str
    expires_at: int
    source_contexts: List[str]


@dataclass(frozen=True)
class SolutionMember:
    chitty_id: str
    role: str
    trust_level: Optional[int] = None
    strengths: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SolutionResult:
    solution_id: str
    problem: Optional[str]
    members: List[SolutionMember]
    status: str = "active"


@dataclass(frozen=True)
class CombinationResult:
    combination_id: str
    contexts: List[str]
    share_direction: str
    share_domains: bool
    pair: ContextPair
    note: str = "Contexts remain separate but now share insights"


@dataclass(frozen=True)
class ContextCreation:
    profile: ContextProfile
    created: bool
    authoritative: bool = True
    event: Optional[LifecycleEvent] = None


@dataclass(frozen=True)
class ContextResolution:
    action: str  # bind_existing | create_new
    context_hash: str
    anchors: Dict[str, str]
    profile: Optional[ContextProfile] = None
    requires_confirmation: bool = False


# ----------------------------
# Pure helpers
# ----------------------------

def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def context_anchors(
    project_path: Optional[str],
    workspace: Optional[str],
    support_type: Optional[str],
    organization: Optional[str],
) -> Dict[str, str]:
    raw = {
        "project_path": project_path,
        "workspace": workspace,
        "support_type": support_type,
        "organization": organization,
    }
    return {k: str(v).strip() for k, v in sorted(raw.items()) if v and str(v).strip()}


def anchor_hash(anchors: Mapping[str, str]) -> str:
    """Stable founding hash: same anchors, same hash, regardless of order."""
    return _sha256(json.dumps(dict(sorted(anchors.items())), separators=(",", ":"), sort_keys=True))


def lifecycle_hash(operation: str, *parts: str) -> str:
    return _sha256(":".join([operation, *[p for p in parts if p]]))


def classify_risk(risks: Sequence[SupernovaRisk]) -> str:
    high = sum(1 for r in risks if r.severity == SEVERITY_HIGH)
    if high > 1:
        return RISK_CRITICAL
    if len(risks) > 2:
        return RISK_WARNING
    return RISK_INFO


def recommendation_for(risk_level: str) -> str:
    if risk_level == RISK_CRITICAL:
        return RECOMMEND_DISCOURAGE
    if risk_level == RISK_WARNING:
        return RECOMMEND_CAUTION
    return RECOMMEND_CONSIDER


def group_domains(
    domains: Sequence[str],
    families: Optional[Mapping[str, Sequence[str]]] = None,
) -> List[Tuple[str, List[str]]]:
    """Bucket domains by keyword family. Empty buckets are dropped."""
    table = families if families is not None else DEFAULT_DOMAIN_FAMILIES
    buckets: Dict[str, List[str]] = {name: [] for name in table}
    buckets[OTHER_FAMILY] = buckets.get(OTHER_FAMILY, [])
    for domain in domains:
        target = OTHER_FAMILY
        for name, keywords in table.items():
            if any(k in domain for k in keywords):
                target = name
                break
        buckets[target].append(domain)
    return [(name, members) for name, members in buckets.items() if members]


def competency_matches_domains(competency: str, domains: Sequence[str]) -> bool:
    keywords = COMPETENCY_DOMAIN_MAP.get(competency, (competency,))
    return any(k in d for k in keywords for d in domains)


def blend_competencies(profiles: Sequence[ContextProfile]) -> List[Competency]:
    """Per name: highest proficiency across sources, with every contributing source."""
    blended: Dict[str, Tuple[int, List[str]]] = {}
    for profile in profiles:
        for comp in profile.dna.competencies:
            level, sources = blended.get(comp.name, (1, []))
            blended[comp.name] = (max(level, int(comp.proficiency or 1)), sources + [profile.chitty_id])
    return [Competency(name, level, sources) for name, (level, sources) in blended.items()]


def infer_role(profile: ContextProfile) -> str:
    names = set(profile.competency_names)
    for role, keywords in ROLE_COMPETENCY_KEYWORDS:
        if names.intersection(keywords):
            return role
    if any("documentation" in d for d in profile.domains):
        return "documenter"
    return ROLE_BY_SUPPORT_TYPE.get(profile.entity.support_type, DEFAULT_ROLE)


def _summary(profile: ContextProfile) -> SourceSummary:
    return SourceSummary(
        chitty_id=profile.chitty_id,
        support_type=profile.entity.support_type,
        trust_level=profile.trust_level,
        version=profile.entity.version,
    )


def _distinct_ids(ids: Sequence[str], minimum: int, what: str) -> List[str]:
    out: List[str] = []
    for cid in ids or []:
        cid = (cid or "").strip()
        if cid and cid not in out:
            out.append(cid)
    if len(out) < minimum:
        raise ContextValidationError(
            f"Need at least {minimum} distinct contexts for {what}",
            details={"received": list(ids or [])},
        )
    return out


def _validate_support_type(support_type: Optional[str]) -> None:
    if support_type is not None and support_type not in SUPPORT_TYPES:
        raise ContextValidationError(
            f"Unknown support type: {support_type}",
            details={"support_type": support_type, "allowed": list(SUPPORT_TYPES)},
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------
# Orchestrator
# ----------------------------

class LifecycleOrchestrator:
    """
    Runs lifecycle operators against one store connection.

    The connection and the minter are owned by the caller; `now` is injected
    so suspension expiry is testable.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        minter: IdentityMinter,
        suspension_ttl_seconds: int = DEFAULT_SUSPENSION_TTL_SECONDS,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.conn = conn
        self.minter = minter
        self.suspension_ttl_seconds = int(suspension_ttl_seconds)
        self._now = now

    # ---- internals ----

    def _require(self, chitty_id: str) -> ContextProfile:
        profile = cdb.load_profile(self.conn, chitty_id)
        if profile is None:
            raise ContextNotFound(f"Context {chitty_id} not found", details={"chitty_id": chitty_id})
        return profile

    def _mint(
        self,
        operation: str,
        *,
        support_type: str,
        project_path: str,
        organization: Optional[str],
        source_contexts: Sequence[str],
    ) -> MintResult:
        return self.minter.mint(
            CONTEXT_ENTITY_TYPE,
            {
                "lifecycle": operation,
                "operation": operation,
                "support_type": support_type,
                "project_path": project_path,
                "organization": organization,
                "source_contexts": list(source_contexts),
            },
        )

    def _persist(
        self,
        minted: MintResult,
        *,
        context_hash: str,
        project_path: str,
        workspace: Optional[str],
        support_type: str,
        organization: Optional[str],
        signature: str,
        issuer: Issuer,
        trust_score: float,
        trust_level: int,
        dna: ContextDNA,
    ) -> ContextProfile:
        """Entity + DNA (+ reconciliation row). Must run inside a transaction."""
        entity = cdb.insert_entity(
            self.conn,
            chitty_id=minted.chitty_id,
            context_hash=context_hash,
            project_path=project_path,
            workspace=workspace,
            support_type=support_type,
            organization=organization,
            signature=signature,
            issuer=issuer,
            trust_score=trust_score,
            trust_level=trust_level,
        )
        cdb.insert_dna(self.conn, entity=entity, dna=dna)
        if not minted.authoritative:
            cdb.record_reconciliation(
                self.conn,
                chitty_id=minted.chitty_id,
                entity_type=CONTEXT_ENTITY_TYPE,
                metadata={**minted.metadata, "fallback_reason": minted.fallback_reason},
            )
        return ContextProfile(entity=entity, dna=dna)

    def _require_confirmation(self, operation: str, token: Optional[str], analysis: Any) -> None:
        if not (token or "").strip():
            logger.info("%s denied: confirmation token missing", operation)
            raise PolicyDenied(
                f"Confirmation required for {operation}",
                details={"operation": operation, "analysis": to_plain(analysis)},
            )

    # ---- creation ----

    def resolve_context(
        self,
        *,
        project_path: Optional[str],
        workspace: Optional[str] = None,
        support_type: Optional[str] = None,
        organization: Optional[str] = None,
    ) -> ContextResolution:
        anchors = context_anchors(project_path, workspace, support_type, organization)
        chash = anchor_hash(anchors)
        existing = cdb.find_by_hash(self.conn, chash)
        if existing is not None:
            return ContextResolution(action="bind_existing", context_hash=chash, anchors=anchors, profile=existing)
        return ContextResolution(action="create_new", context_hash=chash, anchors=anchors, requires_confirmation=True)

    def create_context(
        self,
        *,
        project_path: str,
        support_type: str,
        workspace: Optional[str] = None,
        organization: Optional[str] = None,
    ) -> ContextCreation:
        if not (project_path or "").strip():
            raise ContextValidationError("project_path is required")
        if not support_type:
            raise ContextValidationError("support_type is required")
        _validate_support_type(support_type)

        anchors = context_anchors(project_path, workspace, support_type, organization)
        chash = anchor_hash(anchors)
        existing = cdb.find_by_hash(self.conn, chash)
        if existing is not None:
            return ContextCreation(profile=existing, created=False)

        minted = self._mint(
            "normal",
            support_type=support_type,
            project_path=anchors["project_path"],
            organization=anchors.get("organization"),
            source_contexts=[],
        )

        with cdb.transaction(self.conn):
            # Re-check under the write lock; a concurrent create may have won.
            existing = cdb.find_by_hash(self.conn, chash)
            if existing is not None:
                logger.info("Context for %s created concurrently; minted %s unused", chash[:12], minted.chitty_id)
                return ContextCreation(profile=existing, created=False)

            profile = self._persist(
                minted,
                context_hash=chash,
                project_path=anchors["project_path"],
                workspace=anchors.get("workspace"),
                support_type=support_type,
                organization=anchors.get("organization"),
                signature=f"normal:{support_type}@{anchors['project_path']}",
                issuer=Issuer.NORMAL,
                trust_score=DEFAULT_TRUST_SCORE,
                trust_level=DEFAULT_TRUST_LEVEL,
                dna=ContextDNA(),
            )
            event = cdb.append_event(
                self.conn,
                event_type=LifecycleEventType.CONTEXT_CREATED,
                source_ids=[],
                result_ids=[profile.chitty_id],
                trigger_reason="normal",
                analysis={"anchors": anchors, "authoritative": minted.authoritative},
            )

        logger.info("Context created: %s (authoritative=%s)", profile.chitty_id, minted.authoritative)
        return ContextCreation(profile=profile, created=True, authoritative=minted.authoritative, event=event)

    # ---- supernova ----

    def _supernova_analysis(self, ctx1: ContextProfile, ctx2: ContextProfile) -> SupernovaAnalysis:
        trust_diff = abs(ctx1.trust_level - ctx2.trust_level)
        same_support = ctx1.entity.support_type == ctx2.entity.support_type
        related = paths_related(ctx1.entity.project_path, ctx2.entity.project_path)
        total_anomalies = ctx1.dna.anomaly_count + ctx2.dna.anomaly_count

        risks: List[SupernovaRisk] = []
        if trust_diff > TRUST_DILUTION_GAP:
            risks.append(SupernovaRisk("trust_dilution", SEVERITY_HIGH))
        if not same_support:
            risks.append(SupernovaRisk("role_conflict", SEVERITY_MEDIUM))
        if total_anomalies > ANOMALY_ACCUMULATION_LIMIT:
            risks.append(SupernovaRisk("anomaly_accumulation", SEVERITY_HIGH))
        if not related:
            risks.append(SupernovaRisk("identity_confusion", SEVERITY_HIGH))

        risk_level = classify_risk(risks)
        return SupernovaAnalysis(
            contexts=[_summary(ctx1), _summary(ctx2)],
            risks=risks,
            risk_level=risk_level,
            merged_preview=MergePreview(
                competencies=merge_competencies(ctx1.dna.competencies, ctx2.dna.competencies),
                domains=union_domains(ctx1.domains, ctx2.domains),
                trust_level=min(ctx1.trust_level, ctx2.trust_level),
            ),
            recommendation=recommendation_for(risk_level),
        )

    def analyze_supernova(self, chitty_id_1: str, chitty_id_2: str) -> SupernovaAnalysis:
        ids = _distinct_ids([chitty_id_1, chitty_id_2], 2, "supernova")
        return self._supernova_analysis(self._require(ids[0]), self._require(ids[1]))

    def execute_supernova(
        self,
        chitty_id_1: str,
        chitty_id_2: str,
        confirmation_token: Optional[str],
    ) -> SupernovaResult:
        ids = _distinct_ids([chitty_id_1, chitty_id_2], 2, "supernova")
        ctx1, ctx2 = self._require(ids[0]), self._require(ids[1])
        analysis = self._supernova_analysis(ctx1, ctx2)

        self._require_confirmation("supernova", confirmation_token, analysis)
        if analysis.recommendation == RECOMMEND_DISCOURAGE:
            logger.info("Supernova %s + %s denied: %s", ids[0], ids[1], analysis.risk_level)
            raise PolicyDenied("Supernova discouraged", details={"analysis": to_plain(analysis)})

        minted = self._mint(
            "supernova",
            support_type=ctx1.entity.support_type,
            project_path=ctx1.entity.project_path,
            organization=ctx1.entity.organization,
            source_contexts=ids,
        )
        dna = ContextDNA(
            competencies=analysis.merged_preview.competencies,
            domains=analysis.merged_preview.domains,
            total_interactions=ctx1.dna.total_interactions + ctx2.dna.total_interactions,
            total_decisions=ctx1.dna.total_decisions + ctx2.dna.total_decisions,
            success_rate=(ctx1.dna.success_rate + ctx2.dna.success_rate) / 2,
            anomaly_count=ctx1.dna.anomaly_count + ctx2.dna.anomaly_count,
            last_anomaly_at=max(
                [t for t in (ctx1.dna.last_anomaly_at, ctx2.dna.last_anomaly_at) if t],
                default=None,
            ),
        )

        with cdb.transaction(self.conn):
            merged = self._persist(
                minted,
                context_hash=lifecycle_hash("supernova", ctx1.entity.context_hash, ctx2.entity.context_hash, minted.chitty_id),
                project_path=ctx1.entity.project_path,
                workspace=ctx1.entity.workspace,
                support_type=ctx1.entity.support_type,
                organization=ctx1.entity.organization,
                signature=f"supernova:{ids[0]}+{ids[1]}",
                issuer=Issuer.SUPERNOVA,
                trust_score=(ctx1.entity.trust_score + ctx2.entity.trust_score) / 2,
                trust_level=analysis.merged_preview.trust_level,
                dna=dna,
            )
            for source in (ctx1, ctx2):
                cdb.transition_status(
                    self.conn,
                    chitty_id=source.chitty_id,
                    expected_version=source.entity.version,
                    new_status=ContextStatus.ARCHIVED,
                )
            event = cdb.append_event(
                self.conn,
                event_type=LifecycleEventType.SUPERNOVA_EXECUTED,
                source_ids=ids,
                result_ids=[merged.chitty_id],
                trigger_reason="supernova",
                analysis=analysis,
                user_confirmed=True,
            )

        logger.info("Supernova executed: %s -> %s", ids, merged.chitty_id)
        return SupernovaResult(
            merged_chitty_id=merged.chitty_id,
            source_contexts=ids,
            analysis=analysis,
            authoritative=minted.authoritative,
            event=event,
        )

    # ---- fission ----

    def _fission_analysis(
        self,
        ctx: ContextProfile,
        split_by: str,
        families: Optional[Mapping[str, Sequence[str]]],
    ) -> FissionAnalysis:
        if split_by == SPLIT_BY_DOMAIN:
            if len(ctx.domains) < 2:
                raise ContextValidationError(
                    "Not enough domains to split",
                    details={"chitty_id": ctx.chitty_id, "domains": ctx.domains},
                )
            splits = [
                FissionSplit(
                    label=name,
                    domains=group,
                    competencies=[c for c in ctx.dna.competencies if competency_matches_domains(c.name, group)],
                )
                for name, group in group_domains(ctx.domains, families)
            ]
        elif split_by == SPLIT_BY_SUPPORT_TYPE:
            table = families if families is not None else DEFAULT_DOMAIN_FAMILIES
            splits = []
            for support_type, keep in SUPPORT_TYPE_SPLITS:
                keywords = tuple(table.get(support_type, (support_type,)))
                splits.append(
                    FissionSplit(
                        label=support_type,
                        support_type=support_type,
                        domains=[d for d in ctx.domains if any(k in d for k in keywords)],
                        competencies=[c for c in ctx.dna.competencies if c.name in keep],
                    )
                )
            splits = [s for s in splits if s.domains or s.competencies]
        else:
            raise ContextValidationError(
                f"Unknown split_by: {split_by}",
                details={"allowed": [SPLIT_BY_DOMAIN, SPLIT_BY_SUPPORT_TYPE]},
            )

        if len(splits) < 2:
            raise ContextValidationError(
                "Context does not separate into at least two groups",
                details={"chitty_id": ctx.chitty_id, "split_by": split_by, "groups": len(splits)},
            )
        return FissionAnalysis(source_context=_summary(ctx), split_by=split_by, proposed_splits=splits)

    def analyze_fission(
        self,
        chitty_id: str,
        split_by: str = SPLIT_BY_DOMAIN,
        families: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> FissionAnalysis:
        return self._fission_analysis(self._require(chitty_id), split_by, families)

    def execute_fission(
        self,
        chitty_id: str,
        confirmation_token: Optional[str],
        splits: Optional[Sequence[FissionSplit]] = None,
        split_by: str = SPLIT_BY_DOMAIN,
        families: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> FissionResult:
        ctx = self._require(chitty_id)

        if splits is None:
            analysis: Any = self._fission_analysis(ctx, split_by, families)
            self._require_confirmation("fission", confirmation_token, analysis)
            chosen = list(analysis.proposed_splits)
        else:
            chosen = list(splits)
            analysis = {"source_context": _summary(ctx), "split_by": "custom", "proposed_splits": chosen}
            self._require_confirmation("fission", confirmation_token, analysis)

        if len(chosen) < 2:
            raise ContextValidationError("Fission needs at least two splits", details={"splits": len(chosen)})
        labels = [s.label for s in chosen]
        if any(not lbl for lbl in labels) or len(set(labels)) != len(labels):
            raise ContextValidationError("Split labels must be present and unique", details={"labels": labels})
        for s in chosen:
            _validate_support_type(s.support_type)

        minted = [
            (
                split,
                self._mint(
                    "fission",
                    support_type=split.support_type or ctx.entity.support_type,
                    project_path=ctx.entity.project_path,
                    organization=ctx.entity.organization,
                    source_contexts=[chitty_id],
                ),
            )
            for split in chosen
        ]

        children: List[FissionChild] = []
        with cdb.transaction(self.conn):
            for split, mint in minted:
                child = self._persist(
                    mint,
                    context_hash=lifecycle_hash("fission", ctx.entity.context_hash, split.label, mint.chitty_id),
                    project_path=ctx.entity.project_path,
                    workspace=ctx.entity.workspace,
                    support_type=split.support_type or ctx.entity.support_type,
                    organization=ctx.entity.organization,
                    signature=f"fission:{chitty_id}",
                    issuer=Issuer.FISSION,
                    trust_score=ctx.entity.trust_score,
                    trust_level=ctx.trust_level,
                    dna=ContextDNA(
                        competencies=merge_competencies(split.competencies),
                        domains=union_domains(split.domains),
                    ),
                )
                children.append(FissionChild(child.chitty_id, split.label, mint.authoritative))

            cdb.transition_status(
                self.conn,
                chitty_id=chitty_id,
                expected_version=ctx.entity.version,
                new_status=ContextStatus.ARCHIVED,
            )
            event = cdb.append_event(
                self.conn,
                event_type=LifecycleEventType.FISSION_EXECUTED,
                source_ids=[chitty_id],
                result_ids=[c.chitty_id for c in children],
                trigger_reason="fission",
                analysis=analysis,
                user_confirmed=True,
            )

        logger.info("Fission executed: %s -> %s", chitty_id, [c.chitty_id for c in children])
        return FissionResult(source_archived=chitty_id, new_contexts=children, event=event)

    # ---- derivative ----

    def create_derivative(
        self,
        source_chitty_id: str,
        *,
        label: Optional[str] = None,
        project_path: Optional[str] = None,
        support_type: Optional[str] = None,
        inherit_competencies: bool = True,
        inherit_domains: bool = True,
    ) -> DerivativeResult:
        source = self._require(source_chitty_id)
        _validate_support_type(support_type)
        label = (label or "fork").strip()
        target_support = support_type or source.entity.support_type
        target_path = project_path or source.entity.project_path

        minted = self._mint(
            "derivative",
            support_type=target_support,
            project_path=target_path,
            organization=source.entity.organization,
            source_contexts=[source_chitty_id],
        )
        trust_score = source.entity.trust_score * 0.8
        trust_level = max(1, source.trust_level - 1)

        with cdb.transaction(self.conn):
            child = self._persist(
                minted,
                context_hash=lifecycle_hash("derivative", source.entity.context_hash, label, minted.chitty_id),
                project_path=target_path,
                workspace=source.entity.workspace,
                support_type=target_support,
                organization=source.entity.organization,
                signature=f"derivative:{source_chitty_id}",
                issuer=Issuer.DERIVATIVE,
                trust_score=trust_score,
                trust_level=trust_level,
                dna=ContextDNA(
                    competencies=list(source.dna.competencies) if inherit_competencies else [],
                    domains=list(source.dna.domains) if inherit_domains else [],
                ),
            )
            event = cdb.append_event(
                self.conn,
                event_type=LifecycleEventType.DERIVATIVE_CREATED,
                source_ids=[source_chitty_id],
                result_ids=[child.chitty_id],
                trigger_reason=f"derivative:{label}",
                analysis={"inherit_competencies": inherit_competencies, "inherit_domains": inherit_domains},
            )

        logger.info("Derivative created: %s -> %s", source_chitty_id, child.chitty_id)
        return DerivativeResult(
            derivative_chitty_id=child.chitty_id,
            source_chitty_id=source_chitty_id,
            label=label,
            inherited={"competencies": inherit_competencies, "domains": inherit_domains},
            trust_level=child.trust_level,
            trust_score=child.entity.trust_score,
            authoritative=minted.authoritative,
            event=event,
        )

    # ---- suspension ----

    def create_suspension(
        self,
        context_ids: Sequence[str],
        *,
        task_description: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> SuspensionResult:
        ids = _distinct_ids(context_ids, 2, "suspension")
        ttl = self.suspension_ttl_seconds if expires_in is None else int(expires_in)
        if ttl <= 0:
            raise ContextValidationError("expires_in must be positive", details={"expires_in": ttl})

        sources = [self._require(cid) for cid in ids]
        first = sources[0]
        competencies = blend_competencies(sources)
        domains = union_domains(*[p.domains for p in sources])
        trust_level = min(p.trust_level for p in sources)
        expires_at = int(self._now().timestamp()) + ttl

        minted = self._mint(
            "suspension",
            support_type=first.entity.support_type,
            project_path=first.entity.project_path,
            organization=first.entity.organization,
            source_contexts=ids,
        )

        with cdb.transaction(self.conn):
            blend = self._persist(
                minted,
                context_hash=lifecycle_hash("suspension", *[p.entity.context_hash for p in sources], minted.chitty_id),
                project_path=first.entity.project_path,
                workspace=first.entity.workspace,
                support_type=first.entity.support_type,
                organization=first.entity.organization,
                signature="suspension:" + "+".join(ids),
                issuer=Issuer.SUSPENSION,
                trust_score=min(p.entity.trust_score for p in sources),
                trust_level=trust_level,
                dna=ContextDNA(competencies=competencies, domains=domains),
            )
            cdb.add_suspension_members(self.conn, suspension_chitty_id=blend.chitty_id, member_ids=ids)
            event = cdb.append_event(
                self.conn,
                event_type=LifecycleEventType.SUSPENSION_CREATED,
                source_ids=ids,
                result_ids=[blend.chitty_id],
                trigger_reason=task_description,
                analysis={"task_description": task_description, "expires_at": expires_at, "expires_in": ttl},
            )

        logger.info("Suspension created: %s from %s", blend.chitty_id, ids)
        return SuspensionResult(
            suspension_chitty_id=blend.chitty_id,
            source_contexts=ids,
            task=task_description,
            expires_in=ttl,
            expires_at=expires_at,
            blended_competencies=competencies,
            blended_domains=domains,
            trust_level=trust_level,
            authoritative=minted.authoritative,
            event=event,
        )

    def _suspension_sources(self, suspension_chitty_id: str) -> List[str]:
        return cdb.get_suspension_members(self.conn, suspension_chitty_id)

    def dissolve_suspension(self, suspension_chitty_id: str) -> DissolveResult:
        blend = cdb.load_profile(self.conn, suspension_chitty_id)
        if blend is None or blend.entity.issuer != Issuer.SUSPENSION:
            raise ContextNotFound(
                f"Suspension {suspension_chitty_id} not found",
                details={"chitty_id": suspension_chitty_id},
            )

        sources = self._suspension_sources(suspension_chitty_id)
        with cdb.transaction(self.conn):
            cdb.transition_status(
                self.conn,
                chitty_id=suspension_chitty_id,
                expected_version=blend.entity.version,
                new_status=ContextStatus.DISSOLVED,
            )
            event = cdb.append_event(
                self.conn,
                event_type=LifecycleEventType.SUSPENSION_DISSOLVED,
                source_ids=[suspension_chitty_id],
                result_ids=sources,
                trigger_reason="task_complete_or_expired",
            )

        logger.info("Suspension dissolved: %s (sources %s)", suspension_chitty_id, sources)
        return DissolveResult(suspension_chitty_id=suspension_chitty_id, restored_contexts=sources, event=event)

    def expired_suspensions(self, now: Optional[datetime] = None) -> List[ExpiredSuspension]:
        """Active suspensions past their expiry. Listing only; dissolving stays explicit."""
        cutoff = int((now or self._now()).timestamp())
        out: List[ExpiredSuspension] = []
        for blend in cdb.list_active_suspensions(self.conn):
            created = cdb.find_creation_event(
                self.conn,
                result_chitty_id=blend.chitty_id,
                event_type=LifecycleEventType.SUSPENSION_CREATED,
            )
            if created is None:
                continue
            try:
                expires_at = int(created.analysis.get("expires_at"))
            except (TypeError, ValueError):
                continue
            if expires_at <= cutoff:
                out.append(ExpiredSuspension(blend.chitty_id, expires_at, self._suspension_sources(blend.chitty_id)))
        return out

    # ---- solution ----

    def create_solution(
        self,
        context_ids: Sequence[str],
        *,
        problem_description: Optional[str] = None,
        roles: Optional[Mapping[str, str]] = None,
    ) -> SolutionResult:
        ids = _distinct_ids(context_ids, 2, "a solution")
        given = dict(roles or {})
        unknown = [cid for cid in given if cid not in ids]
        if unknown:
            raise ContextValidationError("Roles given for non-members", details={"unknown": unknown})

        profiles = [self._require(cid) for cid in ids]
        inactive = [p.chitty_id for p in profiles if p.entity.status != ContextStatus.ACTIVE]
        if inactive:
            raise ContextValidationError("Solution members must be active", details={"inactive": inactive})

        members = [
            SolutionMember(
                chitty_id=p.chitty_id,
                role=(given.get(p.chitty_id) or "").strip() or infer_role(p),
                trust_level=p.trust_level,
                strengths=p.competency_names[:3],
            )
            for p in profiles
        ]

        with cdb.transaction(self.conn):
            collab = cdb.insert_collaboration(
                self.conn,
                kind=CollaborationKind.SOLUTION,
                parent_chitty_id=None,
                child_chitty_id=None,
                project_id=problem_description,
                scope={"type": "solution", "problem": problem_description},
                permissions=["collaborate"],
                members={m.chitty_id: m.role for m in members},
            )
            cdb.append_event(
                self.conn,
                event_type=LifecycleEventType.SOLUTION_CREATED,
                source_ids=ids,
                result_ids=[],
                trigger_reason=problem_description,
                analysis={"solution_id": collab.id, "roles": {m.chitty_id: m.role for m in members}},
            )

        logger.info("Solution %s created with %s", collab.id, ids)
        return SolutionResult(solution_id=collab.id, problem=problem_description, members=members)

    def get_solution(self, solution_id: str) -> SolutionResult:
        collab = cdb.get_collaboration(self.conn, solution_id, kind=CollaborationKind.SOLUTION)
        if collab is None:
            raise ContextNotFound(f"Solution {solution_id} not found", details={"solution_id": solution_id})

        members: List[SolutionMember] = []
        for cid, role in collab.members.items():
            profile = cdb.load_profile(self.conn, cid, include_terminal=True)
            members.append(
                SolutionMember(
                    chitty_id=cid,
                    role=role,
                    trust_level=profile.trust_level if profile else None,
                    strengths=profile.competency_names[:3] if profile else [],
                )
            )
        return SolutionResult(
            solution_id=collab.id,
            problem=collab.scope.get("problem", collab.project_id),
            members=members,
            status=collab.status,
        )

    # ---- combination ----

    def create_combination(
        self,
        chitty_id_1: str,
        chitty_id_2: str,
        *,
        share_direction: str = "bidirectional",
        share_domains: bool = True,
    ) -> CombinationResult:
        ids = _distinct_ids([chitty_id_1, chitty_id_2], 2, "combination")
        if share_direction not in SHARE_DIRECTIONS:
            raise ContextValidationError(
                f"Unknown share_direction: {share_direction}",
                details={"allowed": list(SHARE_DIRECTIONS)},
            )
        with cdb.transaction(self.conn):
            # Read under the write lock; the domain union must start from current DNA.
            ctx1, ctx2 = self._require(ids[0]), self._require(ids[1])
            sets = competency_overlap(ctx1, ctx2)

            flows: List[Tuple[ContextProfile, ContextProfile]] = []
            if share_domains and share_direction in ("bidirectional", "1to2"):
                flows.append((ctx1, ctx2))
            if share_domains and share_direction in ("bidirectional", "2to1"):
                flows.append((ctx2, ctx1))

            pair = cdb.insert_pair(
                self.conn,
                chitty_id_1=ids[0],
                chitty_id_2=ids[1],
                relationship="combination",
                complementarity="synergistic",
                overlap=sets.overlap,
                unique_1=sets.unique_1,
                unique_2=sets.unique_2,
                settings={"share_direction": share_direction, "share_domains": share_domains},
            )
            shared: Dict[str, List[str]] = {}
            for source, target in flows:
                added = [d for d in source.domains if d not in target.domains]
                if not added:
                    continue
                cdb.update_dna(
                    self.conn,
                    entity=target.entity,
                    dna=ContextDNA(
                        competencies=target.dna.competencies,
                        domains=union_domains(target.domains, source.domains),
                        total_interactions=target.dna.total_interactions,
                        total_decisions=target.dna.total_decisions,
                        success_rate=target.dna.success_rate,
                        anomaly_count=target.dna.anomaly_count,
                        last_anomaly_at=target.dna.last_anomaly_at,
                    ),
                )
                shared[target.chitty_id] = added
            cdb.append_event(
                self.conn,
                event_type=LifecycleEventType.COMBINATION_CREATED,
                source_ids=ids,
                result_ids=[],
                trigger_reason=f"combination:{share_direction}",
                analysis={"pair_id": pair.id, "domains_added": shared},
            )

        logger.info("Combination %s created: %s <-> %s (%s)", pair.id, ids[0], ids[1], share_direction)
        return CombinationResult(
            combination_id=pair.id,
            contexts=ids,
            share_direction=share_direction,
            share_domains=share_domains,
            pair=pair,
        )
