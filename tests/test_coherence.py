import pytest

from context_brain.identity_context.types import CoherenceHints
from context_brain.intelligence.coherence import (
    Alternative,
    CoherenceRecommendation,
    DriftIndicators,
    analyze_coherence,
    calculate_coherence,
    decide,
    detect_drift,
    paths_related,
)
from context_brain.intelligence.errors import ContextNotFound


def test_exact_match_on_every_hint_scores_one(profile_factory):
    profile = profile_factory("/srv/app", "development", workspace="main")
    hints = CoherenceHints(project_path="/srv/app", workspace="main", support_type="development")

    assert calculate_coherence(profile, hints) == 1.0


def test_no_hints_scores_half(profile_factory):
    assert calculate_coherence(profile_factory(), CoherenceHints()) == 0.5


def test_related_project_path_scores_half_weight(profile_factory):
    profile = profile_factory("/srv/app")
    assert calculate_coherence(profile, CoherenceHints(project_path="/srv/app/api")) == pytest.approx(0.5)
    assert calculate_coherence(profile, CoherenceHints(project_path="/srv")) == pytest.approx(0.5)
    assert calculate_coherence(profile, CoherenceHints(project_path="/home/other")) == 0.0


def test_paths_related_needs_both_paths():
    assert paths_related("/a/b", "/a")
    assert not paths_related(None, "/a")
    assert not paths_related("/a", "")


def test_drift_expansion_and_drift(profile_factory):
    profile = profile_factory("/srv/app", domains=["backend-development"])

    expansion = detect_drift(profile, CoherenceHints(project_path="/srv/app", domains=["backend-development", "data"]))
    assert expansion.new_domains == ["data"]
    assert expansion.is_expansion
    assert not expansion.is_drift

    moved = detect_drift(profile, CoherenceHints(project_path="/srv/other", domains=["data"]))
    assert moved.project_changed
    assert moved.is_drift
    assert not moved.is_expansion

    many = detect_drift(profile, CoherenceHints(domains=["a", "b", "c", "d"]))
    assert many.is_drift
    assert not many.project_changed


def test_decide_policy_order():
    no_drift = DriftIndicators()
    assert decide(0.7, no_drift, []).recommendation == CoherenceRecommendation.CONTINUE

    expansion = DriftIndicators(new_domains=["data"], is_expansion=True)
    expand = decide(0.5, expansion, [])
    assert expand.recommendation == CoherenceRecommendation.EXPAND
    assert expand.confirm
    assert expand.expansion_areas == ["data"]

    better = Alternative(chitty_id="other", score=0.9)
    switch = decide(0.5, no_drift, [better])
    assert switch.recommendation == CoherenceRecommendation.SWITCH
    assert switch.suggested_context == better

    assert decide(0.2, no_drift, []).recommendation == CoherenceRecommendation.NEW

    close = Alternative(chitty_id="other", score=0.6)
    confirm = decide(0.5, no_drift, [close])
    assert confirm.recommendation == CoherenceRecommendation.CONFIRM
    assert confirm.alternatives == [close]


def test_analyze_continue_for_matching_work(conn, make_context):
    ctx = make_context("/srv/app", "development", workspace="main")
    hints = CoherenceHints(project_path="/srv/app", workspace="main", support_type="development")

    result = analyze_coherence(conn, ctx.chitty_id, hints)

    assert result.recommendation == CoherenceRecommendation.CONTINUE
    assert result.coherence_score == 1.0


def test_analyze_expand_when_domains_grow(conn, make_context):
    ctx = make_context("/srv/app", "development", domains=["backend-development"])
    hints = CoherenceHints(project_path="/srv/app", support_type="operations", domains=["monitoring"])

    result = analyze_coherence(conn, ctx.chitty_id, hints)

    assert result.coherence_score == pytest.approx(0.6)
    assert result.recommendation == CoherenceRecommendation.EXPAND
    assert result.expansion_areas == ["monitoring"]


def test_analyze_switch_to_better_context(conn, make_context):
    bound = make_context("/srv/app", "development")
    better = make_context("/srv/ops", "operations")

    result = analyze_coherence(conn, bound.chitty_id, CoherenceHints(project_path="/srv/ops", support_type="operations"))

    assert result.recommendation == CoherenceRecommendation.SWITCH
    assert result.suggested_context.chitty_id == better.chitty_id
    assert result.suggested_context.score == 1.0


def test_analyze_new_when_nothing_fits(conn, make_context):
    bound = make_context("/srv/app", "development")

    result = analyze_coherence(conn, bound.chitty_id, CoherenceHints(project_path="/home/legal", support_type="legal"))

    assert result.coherence_score == 0.0
    assert result.recommendation == CoherenceRecommendation.NEW


def test_archived_alternatives_are_ignored(conn, make_context):
    bound = make_context("/srv/app", "development")
    make_context("/srv/ops", "operations", status="archived")

    result = analyze_coherence(conn, bound.chitty_id, CoherenceHints(project_path="/srv/ops", support_type="operations"))

    assert result.recommendation == CoherenceRecommendation.NEW


def test_analyze_unknown_context(conn):
    with pytest.raises(ContextNotFound):
        analyze_coherence(conn, "missing", CoherenceHints())
