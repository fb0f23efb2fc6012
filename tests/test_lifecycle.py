import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from context_brain.identity_context import db as cdb
from context_brain.identity_context.types import (
    Competency,
    ContextStatus,
    Issuer,
    LifecycleEventType,
    SessionMetrics,
)
from context_brain.intelligence import lifecycle
from context_brain.intelligence.errors import (
    ContextNotFound,
    ContextValidationError,
    LifecycleConflict,
    PolicyDenied,
    StoreFailure,
)
from context_brain.intelligence.lifecycle import (
    FissionSplit,
    LifecycleOrchestrator,
    SupernovaRisk,
    anchor_hash,
    classify_risk,
    context_anchors,
    group_domains,
)
from context_brain.intelligence.session import commit_session


# ----------------------------
# Creation
# ----------------------------

def test_create_context_is_idempotent_per_anchor_set(conn, orchestrator, minter):
    first = orchestrator.create_context(project_path="/srv/app", support_type="development", workspace="main")
    again = orchestrator.create_context(project_path="/srv/app", support_type="development", workspace="main")

    assert first.created
    assert not again.created
    assert again.profile.chitty_id == first.profile.chitty_id
    assert len(minter.calls) == 1
    assert minter.calls[0]["metadata"]["lifecycle"] == "normal"

    entity = first.profile.entity
    assert entity.trust_score == 50.0
    assert entity.trust_level == 3
    assert entity.issuer == Issuer.NORMAL
    assert first.event.event_type == "context_created"
    assert first.event.result_ids == [entity.chitty_id]


def test_create_context_validates_input(orchestrator):
    with pytest.raises(ContextValidationError):
        orchestrator.create_context(project_path="", support_type="development")
    with pytest.raises(ContextValidationError):
        orchestrator.create_context(project_path="/srv/app", support_type="astrology")


def test_anchor_hash_ignores_order_and_empty_values():
    a = context_anchors("/srv/app", None, "development", "")
    b = {"support_type": "development", "project_path": "/srv/app"}

    assert a == {"project_path": "/srv/app", "support_type": "development"}
    assert anchor_hash(a) == anchor_hash(b)


def test_resolve_context(orchestrator):
    pending = orchestrator.resolve_context(project_path="/srv/app", support_type="development")
    assert pending.action == "create_new"
    assert pending.requires_confirmation

    created = orchestrator.create_context(project_path="/srv/app", support_type="development")
    bound = orchestrator.resolve_context(project_path="/srv/app", support_type="development")
    assert bound.action == "bind_existing"
    assert bound.profile.chitty_id == created.profile.chitty_id
    assert bound.context_hash == pending.context_hash


def test_fallback_identifiers_are_queued_for_reconciliation(conn, fallback_minter):
    orchestrator = LifecycleOrchestrator(conn, fallback_minter)

    created = orchestrator.create_context(project_path="/srv/app", support_type="development")

    assert not created.authoritative
    queue = cdb.list_reconciliation(conn)
    assert [q["chitty_id"] for q in queue] == [created.profile.chitty_id]
    assert queue[0]["metadata"]["fallback_reason"] == "authority offline"


# ----------------------------
# Supernova
# ----------------------------

def test_risk_classification():
    high = SupernovaRisk("trust_dilution", "high")
    medium = SupernovaRisk("role_conflict", "medium")

    assert classify_risk([]) == "info"
    assert classify_risk([medium]) == "info"
    assert classify_risk([high]) == "info"
    assert classify_risk([high, medium]) == "info"
    assert classify_risk([high, medium, medium]) == "warning"
    assert classify_risk([high, SupernovaRisk("identity_confusion", "high")]) == "critical"


def test_supernova_trust_gap_alone_is_informational(orchestrator, make_context):
    low = make_context("/srv/app", trust_level=1)
    high = make_context("/srv/app/api", trust_level=5)

    analysis = orchestrator.analyze_supernova(low.chitty_id, high.chitty_id)

    assert [r.type for r in analysis.risks] == ["trust_dilution"]
    assert analysis.risk_level == "info"
    assert analysis.recommendation == "consider"
    assert analysis.merged_preview.trust_level == 1


def test_supernova_unrelated_and_noisy_is_discouraged(orchestrator, make_context):
    a = make_context("/srv/app", anomaly_count=4)
    b = make_context("/home/legal", "legal", anomaly_count=3)

    analysis = orchestrator.analyze_supernova(a.chitty_id, b.chitty_id)

    assert {r.type for r in analysis.risks} == {"role_conflict", "anomaly_accumulation", "identity_confusion"}
    assert analysis.risk_level == "critical"
    assert analysis.recommendation == "discourage"

    with pytest.raises(PolicyDenied) as err:
        orchestrator.execute_supernova(a.chitty_id, b.chitty_id, "yes")
    assert err.value.details["analysis"]["recommendation"] == "discourage"


def test_supernova_requires_confirmation(orchestrator, make_context, minter):
    a = make_context("/srv/app")
    b = make_context("/srv/app/api")
    calls_before = len(minter.calls)

    with pytest.raises(PolicyDenied) as err:
        orchestrator.execute_supernova(a.chitty_id, b.chitty_id, None)

    assert err.value.details["analysis"]["risk_level"] == "info"
    assert len(minter.calls) == calls_before


def test_supernova_execute(conn, orchestrator, make_context, minter):
    a = make_context(
        "/srv/app",
        trust_level=2,
        trust_score=40.0,
        competencies=[Competency("typescript", 2), Competency("sql", 3)],
        domains=["backend-development"],
        total_interactions=10,
        success_rate=0.8,
        anomaly_count=1,
    )
    b = make_context(
        "/srv/app/api",
        trust_level=4,
        trust_score=80.0,
        competencies=[Competency("typescript", 4), Competency("git", 1)],
        domains=["api", "backend-development"],
        total_interactions=30,
        success_rate=0.6,
        anomaly_count=2,
    )

    result = orchestrator.execute_supernova(a.chitty_id, b.chitty_id, "confirmed")

    merged = cdb.load_profile(conn, result.merged_chitty_id)
    assert merged.entity.issuer == Issuer.SUPERNOVA
    assert merged.trust_level == 2
    assert merged.entity.trust_score == pytest.approx(60.0)
    assert merged.dna.competencies == [Competency("typescript", 4), Competency("sql", 3), Competency("git", 1)]
    assert merged.domains == ["backend-development", "api"]
    assert merged.dna.total_interactions == 40
    assert merged.dna.success_rate == pytest.approx(0.7)
    assert merged.dna.anomaly_count == 3
    assert minter.calls[-1]["metadata"]["lifecycle"] == "supernova"
    assert minter.calls[-1]["metadata"]["source_contexts"] == [a.chitty_id, b.chitty_id]

    for source in (a, b):
        assert cdb.load_profile(conn, source.chitty_id) is None
        assert cdb.load_profile(conn, source.chitty_id, include_terminal=True).entity.status == ContextStatus.ARCHIVED

    assert result.event.user_confirmed
    assert result.event.source_ids == [a.chitty_id, b.chitty_id]
    assert result.event.result_ids == [merged.chitty_id]

    # Sources are gone; a second merge cannot reuse them.
    with pytest.raises(ContextNotFound):
        orchestrator.execute_supernova(a.chitty_id, b.chitty_id, "confirmed")


def test_supernova_needs_two_distinct_contexts(orchestrator, make_context):
    a = make_context()
    with pytest.raises(ContextValidationError):
        orchestrator.analyze_supernova(a.chitty_id, a.chitty_id)


def test_supernova_loses_race_on_stale_version(conn, orchestrator, make_context, monkeypatch):
    a = make_context("/srv/app")
    b = make_context("/srv/app/api")

    real_load = cdb.load_profile

    def stale_load(c, chitty_id, **kwargs):
        profile = real_load(c, chitty_id, **kwargs)
        # Another writer touches the row between our read and our archive.
        if chitty_id == b.chitty_id:
            conn.execute("UPDATE context_entities SET version = version + 1 WHERE chitty_id = ?", (chitty_id,))
        return profile

    monkeypatch.setattr(cdb, "load_profile", stale_load)

    with pytest.raises(LifecycleConflict):
        orchestrator.execute_supernova(a.chitty_id, b.chitty_id, "confirmed")

    monkeypatch.undo()
    # Nothing was written: both sources are still live, no merged entity exists.
    assert cdb.load_profile(conn, a.chitty_id).entity.status == ContextStatus.ACTIVE
    assert cdb.load_profile(conn, b.chitty_id).entity.status == ContextStatus.ACTIVE
    assert cdb.list_lifecycle_events(conn, event_type=LifecycleEventType.SUPERNOVA_EXECUTED) == []
    issuers = {r["issuer"] for r in conn.execute("SELECT issuer FROM context_entities")}
    assert issuers == {"normal"}


def test_store_failure_leaves_no_partial_writes(conn, orchestrator, make_context, monkeypatch):
    a = make_context("/srv/app")
    b = make_context("/srv/app/api")

    def broken_append(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(cdb, "append_event", broken_append)

    with pytest.raises(StoreFailure):
        orchestrator.execute_supernova(a.chitty_id, b.chitty_id, "confirmed")

    assert cdb.load_profile(conn, a.chitty_id) is not None
    assert cdb.load_profile(conn, b.chitty_id) is not None
    assert conn.execute("SELECT COUNT(*) FROM context_entities").fetchone()[0] == 2


# ----------------------------
# Fission
# ----------------------------

def test_group_domains_default_and_custom_families():
    domains = ["frontend-development", "infrastructure", "legal-research", "api"]

    assert group_domains(domains) == [
        ("development", ["frontend-development", "api"]),
        ("operations", ["infrastructure"]),
        ("other", ["legal-research"]),
    ]
    assert group_domains(domains, {"legal": ("legal",)}) == [
        ("legal", ["legal-research"]),
        ("other", ["frontend-development", "infrastructure", "api"]),
    ]


def test_fission_needs_two_domains(orchestrator, make_context):
    ctx = make_context(domains=["backend-development"])

    with pytest.raises(ContextValidationError) as err:
        orchestrator.analyze_fission(ctx.chitty_id)
    assert "Not enough domains" in err.value.message


def test_fission_needs_two_groups(orchestrator, make_context):
    ctx = make_context(domains=["frontend-development", "backend-development"])

    with pytest.raises(ContextValidationError):
        orchestrator.analyze_fission(ctx.chitty_id)


def test_fission_analysis_by_domain(orchestrator, make_context):
    ctx = make_context(
        competencies=["typescript", "kubernetes", "contracts"],
        domains=["frontend-development", "infrastructure", "contracts-review"],
    )

    analysis = orchestrator.analyze_fission(ctx.chitty_id)

    splits = {s.label: s for s in analysis.proposed_splits}
    assert set(splits) == {"development", "operations", "other"}
    assert [c.name for c in splits["development"].competencies] == ["typescript"]
    assert [c.name for c in splits["operations"].competencies] == ["kubernetes"]
    assert [c.name for c in splits["other"].competencies] == ["contracts"]
    assert analysis.recommendation == "viable"


def test_fission_analysis_by_support_type(orchestrator, make_context):
    ctx = make_context(
        competencies=["typescript", "react", "deployment", "monitoring", "contracts"],
        domains=["frontend-development", "operations"],
    )

    analysis = orchestrator.analyze_fission(ctx.chitty_id, split_by="support_type")

    assert [s.support_type for s in analysis.proposed_splits] == ["development", "operations"]
    assert [c.name for c in analysis.proposed_splits[0].competencies] == ["typescript", "react"]
    assert [c.name for c in analysis.proposed_splits[1].competencies] == ["deployment", "monitoring"]


def test_fission_rejects_unknown_split_mode(orchestrator, make_context):
    ctx = make_context(domains=["a", "b"])
    with pytest.raises(ContextValidationError):
        orchestrator.analyze_fission(ctx.chitty_id, split_by="mood")


def test_fission_execute_preserves_trust(conn, orchestrator, make_context):
    ctx = make_context(
        trust_level=4,
        trust_score=72.0,
        competencies=["typescript", "kubernetes"],
        domains=["frontend-development", "infrastructure"],
    )

    with pytest.raises(PolicyDenied):
        orchestrator.execute_fission(ctx.chitty_id, None)

    result = orchestrator.execute_fission(ctx.chitty_id, "confirmed")

    assert [c.label for c in result.new_contexts] == ["development", "operations"]
    for child in result.new_contexts:
        profile = cdb.load_profile(conn, child.chitty_id)
        assert profile.entity.issuer == Issuer.FISSION
        assert profile.trust_level == 4
        assert profile.entity.trust_score == 72.0
    dev = cdb.load_profile(conn, result.new_contexts[0].chitty_id)
    assert dev.domains == ["frontend-development"]
    assert dev.competency_names == ["typescript"]

    assert cdb.load_profile(conn, ctx.chitty_id) is None
    assert result.event.source_ids == [ctx.chitty_id]
    assert result.event.result_ids == [c.chitty_id for c in result.new_contexts]
    assert result.event.user_confirmed


def test_fission_execute_with_edited_splits(conn, orchestrator, make_context):
    ctx = make_context(competencies=["typescript"], domains=["a"])
    splits = [
        FissionSplit(label="web", domains=["a"], competencies=[Competency("typescript", 3)]),
        FissionSplit(label="ops", domains=["b"], support_type="operations"),
    ]

    result = orchestrator.execute_fission(ctx.chitty_id, "confirmed", splits=splits)

    ops = cdb.load_profile(conn, result.new_contexts[1].chitty_id)
    assert ops.entity.support_type == "operations"
    assert ops.domains == ["b"]


def test_fission_edited_splits_are_validated(orchestrator, make_context):
    ctx = make_context(domains=["a"])
    with pytest.raises(ContextValidationError):
        orchestrator.execute_fission(ctx.chitty_id, "ok", splits=[FissionSplit(label="only")])
    with pytest.raises(ContextValidationError):
        orchestrator.execute_fission(ctx.chitty_id, "ok", splits=[FissionSplit(label="x"), FissionSplit(label="x")])


# ----------------------------
# Derivative
# ----------------------------

@pytest.mark.parametrize("source_level, expected", [(5, 4), (3, 2), (1, 1), (0, 1)])
def test_derivative_trust(conn, orchestrator, make_context, source_level, expected):
    source = make_context(trust_level=source_level, trust_score=60.0)

    result = orchestrator.create_derivative(source.chitty_id, label="experiment")

    fork = cdb.load_profile(conn, result.derivative_chitty_id)
    assert fork.trust_level == expected
    assert fork.entity.trust_score == pytest.approx(48.0)
    assert fork.entity.issuer == Issuer.DERIVATIVE


def test_derivative_inherits_competencies_verbatim(conn, orchestrator, make_context):
    source = make_context(
        competencies=[Competency("sql", 5), Competency("git", 2)],
        domains=["data"],
    )

    result = orchestrator.create_derivative(source.chitty_id)

    fork = cdb.load_profile(conn, result.derivative_chitty_id)
    assert fork.dna.competencies == source.dna.competencies
    assert fork.domains == ["data"]
    # Source untouched.
    after = cdb.load_profile(conn, source.chitty_id)
    assert after.entity.status == ContextStatus.ACTIVE
    assert after.entity.version == source.entity.version
    assert result.event.trigger_reason == "derivative:fork"


def test_derivative_can_start_empty(conn, orchestrator, make_context):
    source = make_context(competencies=["sql"], domains=["data"])

    result = orchestrator.create_derivative(
        source.chitty_id,
        label="clean",
        project_path="/srv/new",
        inherit_competencies=False,
        inherit_domains=False,
    )

    fork = cdb.load_profile(conn, result.derivative_chitty_id)
    assert fork.dna.competencies == []
    assert fork.domains == []
    assert fork.entity.project_path == "/srv/new"
    assert result.inherited == {"competencies": False, "domains": False}


# ----------------------------
# Suspension
# ----------------------------

def test_suspension_blend_and_dissolve(conn, orchestrator, make_context):
    a = make_context("/srv/a", trust_level=2, trust_score=40.0, competencies=[Competency("sql", 2)], domains=["data"])
    b = make_context("/srv/b", trust_level=4, trust_score=80.0, competencies=[Competency("sql", 5), Competency("git", 1)])
    c = make_context("/srv/c", trust_level=1, trust_score=20.0, domains=["ops", "data"])

    result = orchestrator.create_suspension([a.chitty_id, b.chitty_id, c.chitty_id], task_description="incident")

    assert result.trust_level == 1
    blend = cdb.load_profile(conn, result.suspension_chitty_id)
    assert blend.entity.issuer == Issuer.SUSPENSION
    assert blend.entity.trust_score == 20.0
    assert blend.dna.competencies == [
        Competency("sql", 5, [a.chitty_id, b.chitty_id]),
        Competency("git", 1, [b.chitty_id]),
    ]
    assert blend.domains == ["data", "ops"]
    assert result.event.analysis["task_description"] == "incident"
    assert result.event.analysis["expires_in"] == 86400

    dissolved = orchestrator.dissolve_suspension(result.suspension_chitty_id)

    assert dissolved.restored_contexts == [a.chitty_id, b.chitty_id, c.chitty_id]
    assert dissolved.event.event_type == "suspension_dissolved"
    assert dissolved.event.result_ids == [a.chitty_id, b.chitty_id, c.chitty_id]
    gone = cdb.load_profile(conn, result.suspension_chitty_id, include_terminal=True)
    assert gone.entity.status == ContextStatus.DISSOLVED
    # Sources were never archived.
    for source in (a, b, c):
        assert cdb.load_profile(conn, source.chitty_id) is not None

    with pytest.raises(ContextNotFound):
        orchestrator.dissolve_suspension(result.suspension_chitty_id)


def test_suspension_needs_two_contexts(orchestrator, make_context):
    a = make_context()
    with pytest.raises(ContextValidationError):
        orchestrator.create_suspension([a.chitty_id])
    with pytest.raises(ContextValidationError):
        orchestrator.create_suspension([a.chitty_id, a.chitty_id])
    with pytest.raises(ContextNotFound):
        orchestrator.create_suspension([a.chitty_id, "missing"])


def test_only_suspensions_can_be_dissolved(orchestrator, make_context):
    a = make_context()
    with pytest.raises(ContextNotFound):
        orchestrator.dissolve_suspension(a.chitty_id)


def test_expired_suspensions_are_listed_not_swept(conn, minter, make_context):
    clock = {"now": datetime(2026, 1, 1, tzinfo=timezone.utc)}
    orchestrator = LifecycleOrchestrator(conn, minter, suspension_ttl_seconds=3600, now=lambda: clock["now"])
    a = make_context("/srv/a")
    b = make_context("/srv/b")

    short = orchestrator.create_suspension([a.chitty_id, b.chitty_id])
    long = orchestrator.create_suspension([a.chitty_id, b.chitty_id], expires_in=7200)

    assert orchestrator.expired_suspensions() == []

    clock["now"] += timedelta(seconds=3600)
    expired = orchestrator.expired_suspensions()
    assert [e.chitty_id for e in expired] == [short.suspension_chitty_id]
    assert expired[0].source_contexts == [a.chitty_id, b.chitty_id]
    assert cdb.load_profile(conn, short.suspension_chitty_id) is not None

    later = clock["now"] + timedelta(hours=2)
    assert {e.chitty_id for e in orchestrator.expired_suspensions(later)} == {
        short.suspension_chitty_id,
        long.suspension_chitty_id,
    }


def test_suspension_rejects_non_positive_ttl(orchestrator, make_context):
    a = make_context("/srv/a")
    b = make_context("/srv/b")
    with pytest.raises(ContextValidationError):
        orchestrator.create_suspension([a.chitty_id, b.chitty_id], expires_in=0)


# ----------------------------
# Solution
# ----------------------------

def test_solution_roles_given_and_inferred(conn, orchestrator, make_context, minter):
    arch = make_context("/srv/a", competencies=["system-design", "typescript"])
    ops = make_context("/srv/b", "operations", competencies=["deployment"])
    lawyer = make_context("/srv/c", "legal")
    calls_before = len(minter.calls)

    result = orchestrator.create_solution(
        [arch.chitty_id, ops.chitty_id, lawyer.chitty_id],
        problem_description="ship the release",
        roles={lawyer.chitty_id: "approver"},
    )

    roles = {m.chitty_id: m.role for m in result.members}
    assert roles == {arch.chitty_id: "architect", ops.chitty_id: "operator", lawyer.chitty_id: "approver"}
    assert len(minter.calls) == calls_before
    assert conn.execute("SELECT COUNT(*) FROM context_entities").fetchone()[0] == 3

    fetched = orchestrator.get_solution(result.solution_id)
    assert fetched.problem == "ship the release"
    assert {m.chitty_id: m.role for m in fetched.members} == roles
    assert fetched.status == "active"


def test_infer_role_table(profile_factory):
    assert lifecycle.infer_role(profile_factory(competencies=["code-review"])) == "reviewer"
    assert lifecycle.infer_role(profile_factory(competencies=["security"])) == "security"
    assert lifecycle.infer_role(profile_factory(domains=["documentation"])) == "documenter"
    assert lifecycle.infer_role(profile_factory(support_type="research")) == "researcher"
    assert lifecycle.infer_role(profile_factory(support_type="unknown")) == "contributor"


def test_solution_members_must_be_active(orchestrator, make_context):
    a = make_context("/srv/a")
    b = make_context("/srv/b", status="dormant")

    with pytest.raises(ContextValidationError):
        orchestrator.create_solution([a.chitty_id, b.chitty_id])
    with pytest.raises(ContextValidationError):
        orchestrator.create_solution([a.chitty_id])


def test_unknown_solution(orchestrator):
    with pytest.raises(ContextNotFound):
        orchestrator.get_solution("nope")


# ----------------------------
# Combination
# ----------------------------

def test_combination_bidirectional_shares_domains(conn, orchestrator, make_context):
    a = make_context("/srv/a", competencies=["sql", "git"], domains=["data"])
    b = make_context("/srv/b", competencies=["git"], domains=["ops"])

    result = orchestrator.create_combination(a.chitty_id, b.chitty_id)

    assert result.pair.relationship == "combination"
    assert result.pair.complementarity == "synergistic"
    assert result.pair.overlap == ["git"]
    assert result.pair.unique_1 == ["sql"]
    assert cdb.load_profile(conn, a.chitty_id).domains == ["data", "ops"]
    assert cdb.load_profile(conn, b.chitty_id).domains == ["ops", "data"]
    # Identities stay independent.
    assert cdb.load_profile(conn, a.chitty_id).competency_names == ["sql", "git"]


def test_combination_one_way(conn, orchestrator, make_context):
    a = make_context("/srv/a", domains=["data"])
    b = make_context("/srv/b", domains=["ops"])

    orchestrator.create_combination(a.chitty_id, b.chitty_id, share_direction="1to2")

    assert cdb.load_profile(conn, a.chitty_id).domains == ["data"]
    assert cdb.load_profile(conn, b.chitty_id).domains == ["ops", "data"]


def test_combination_starts_from_current_dna(temp_db, conn, orchestrator, make_context):
    a = make_context("/srv/a", domains=["data"])
    b = make_context("/srv/b", domains=["ops"])

    other = cdb.connect(temp_db)
    try:
        commit_session(other, a.chitty_id, SessionMetrics(interactions=4, domains=["ml"]))
    finally:
        other.close()

    orchestrator.create_combination(a.chitty_id, b.chitty_id)

    merged_a = cdb.load_profile(conn, a.chitty_id)
    assert merged_a.domains == ["data", "ml", "ops"]
    assert merged_a.dna.total_interactions == 4
    assert cdb.load_profile(conn, b.chitty_id).domains == ["ops", "data", "ml"]


def test_combination_without_sharing(conn, orchestrator, make_context):
    a = make_context("/srv/a", domains=["data"])
    b = make_context("/srv/b", domains=["ops"])

    result = orchestrator.create_combination(a.chitty_id, b.chitty_id, share_domains=False)

    assert cdb.load_profile(conn, b.chitty_id).domains == ["ops"]
    assert result.pair.settings == {"share_direction": "bidirectional", "share_domains": False}


def test_combination_rejects_unknown_direction(orchestrator, make_context):
    a = make_context("/srv/a")
    b = make_context("/srv/b")
    with pytest.raises(ContextValidationError):
        orchestrator.create_combination(a.chitty_id, b.chitty_id, share_direction="sideways")
