from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from ..identity_context import db as cdb
from ..identity_context.types import ContextProfile, clamp_trust_level
from .errors import ContextNotFound


# Risk per operation category (0 = harmless, 5 = irreversible external effect)
OPERATION_RISKS: Dict[str, int] = {
    "read": 0,
    "write": 1,
    "deploy_staging": 2,
    "delete": 3,
    "data_export": 3,
    "deploy_production": 4,
    "secret_access": 4,
    "permission_change": 4,
    "financial_transaction": 5,
    "legal_filing": 5,
}

# Base max risk and baseline auto-approve set by trust level
AUTONOMY_THRESHOLDS: Dict[int, Tuple[int, Tuple[str, ...]]] = {
    0: (0, ()),
    1: (0, ("read",)),
    2: (1, ("read", "write")),
    3: (2, ("read", "write", "deploy_staging")),
    4: (3, ("read", "write", "deploy_staging", "delete")),
    5: (4, ("read", "write", "deploy_staging", "deploy_production", "delete", "data_export")),
}

MUTATING_SCOPE = "all_writes"

ROUTES: Dict[str, str] = {
    "development": "chittyconnect",
    "operations": "chittymonitor",
    "legal": "chittycases",
    "financial": "chittyfinance",
}
DEFAULT_ROUTE = "chittyconnect"


@dataclass(frozen=True)
class ConfirmRequirement:
    operation: str
    risk: int


@dataclass(frozen=True)
class AutonomyDecision:
    trust_level: int
    base_max_risk: int
    max_risk: int
    baseline: List[str] = field(default_factory=list)
    auto_approve: List[str] = field(default_factory=list)
    requires_confirm: List[ConfirmRequirement] = field(default_factory=list)


@dataclass(frozen=True)
class Guardrail:
    type: str
    scope: str


def adjusted_max_risk(base: int, anomaly_count: int, success_rate: float, total_decisions: int) -> int:
    max_risk = base
    if anomaly_count > 5:
        max_risk = max(0, max_risk - 2)
    elif anomaly_count > 2:
        max_risk = max(0, max_risk - 1)
    if success_rate > 0.9 and total_decisions > 50:
        max_risk = min(5, max_risk + 1)
    return max_risk


def determine_autonomy(profile: ContextProfile) -> AutonomyDecision:
    """Split operation categories into auto-approved and confirm-required for this profile."""
    trust_level = clamp_trust_level(profile.trust_level)
    base, baseline = AUTONOMY_THRESHOLDS[trust_level]
    dna = profile.dna
    max_risk = adjusted_max_risk(base, dna.anomaly_count, dna.success_rate, dna.total_decisions)

    auto_approve = [op for op, risk in OPERATION_RISKS.items() if risk <= max_risk]
    requires_confirm = [ConfirmRequirement(op, risk) for op, risk in OPERATION_RISKS.items() if risk > max_risk]

    return AutonomyDecision(
        trust_level=trust_level,
        base_max_risk=base,
        max_risk=max_risk,
        baseline=list(baseline),
        auto_approve=auto_approve,
        requires_confirm=requires_confirm,
    )


def determine_guardrails(profile: ContextProfile) -> List[Guardrail]:
    # Independent rules; more than one may apply.
    dna = profile.dna
    guardrails: List[Guardrail] = []
    if profile.trust_level < 2:
        guardrails.append(Guardrail("confirmation_required", MUTATING_SCOPE))
    if dna.anomaly_count > 3:
        guardrails.append(Guardrail("enhanced_logging", "all_operations"))
    if dna.success_rate < 0.5 and dna.total_decisions > 10:
        guardrails.append(Guardrail("additional_validation", "complex_operations"))
    return guardrails


def determine_routing(profile: ContextProfile) -> Dict[str, str]:
    return {"primary": ROUTES.get(profile.entity.support_type, DEFAULT_ROUTE)}


def autonomy_for(conn: sqlite3.Connection, chitty_id: str) -> Tuple[AutonomyDecision, List[Guardrail]]:
    profile = cdb.load_profile(conn, chitty_id)
    if profile is None:
        raise ContextNotFound(f"Context {chitty_id} not found", details={"chitty_id": chitty_id})
    return determine_autonomy(profile), determine_guardrails(profile)
