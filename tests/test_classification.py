import json
import warnings

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SAWarning

from workforce_api.agents.classification import service
from workforce_api.agents.classification.analyzer import (
    AppAnalysis,
    analyze_app_usage,
    get_low_confidence_apps,
    get_unclassified_apps,
)
from workforce_api.agents.classification.classifier import classify_app, classify_app_for_context
from workforce_api.agents.classification.feedback import (
    get_adjusted_confidence_thresholds,
    get_feedback_stats,
    get_frequently_overridden_apps,
)
from workforce_api.services.llm import LLMError
from workforce_db.schema import agent_audit_log, classification_feedback, classification_rules, pending_classifications


def _verdict(classification="neutral", confidence=0.6, reasoning="Unknown tool", factors=("usage",)):
    return json.dumps({
        "classification": classification,
        "confidence": confidence,
        "reasoning": reasoning,
        "factors": list(factors),
    })


def _rows(engine, table):
    with engine.connect() as conn:
        return [dict(r._mapping) for r in conn.execute(select(table))]


@pytest.fixture
def pending_mystery(seeded, fake_llm, as_user):
    """Mystery App suggested by an engineering employee and queued for review."""
    fake_llm(_verdict())
    return service.classify_new_app("Mystery App", as_user("eng_employee"))


# ── analyzer ──────────────────────────────────────────────────────────────────

def test_analyze_app_usage_profiles_sessions(seeded):
    analysis = analyze_app_usage("mystery app")
    assert analysis.total_sessions == 7
    assert analysis.total_usage_minutes == 315
    assert analysis.unique_users == 1
    assert analysis.avg_duration_per_session == 45.0
    assert analysis.team_distribution == {"Marketing Team 1": 7}
    assert analysis.role_distribution == {"employee": 7}
    assert analysis.existing_similar_apps == []


def test_analyze_finds_similar_rules_by_first_word(seeded):
    analysis = analyze_app_usage("VS Code Insiders")
    assert analysis.total_sessions == 0
    assert analysis.existing_similar_apps == [{"name": "VS Code", "classification": "productive", "similarity": 0.5}]


def test_unclassified_and_low_confidence_apps(seeded):
    with warnings.catch_warnings():
        warnings.simplefilter("error", SAWarning)
        assert get_unclassified_apps() == ["Mystery App"]
    assert get_low_confidence_apps() == [{"appName": "Netflix", "classification": "unproductive", "confidence": 0.6}]
    assert get_low_confidence_apps(threshold=0.5) == []


# ── classifier ────────────────────────────────────────────────────────────────

def test_classify_app_reads_fenced_json(fake_llm):
    fake = fake_llm("```json\n" + _verdict("Productive", 0.93, factors=["development"]) + "\n```")
    result = classify_app(AppAnalysis(app_name="Zed"))
    assert result.classification == "productive"
    assert result.confidence == 0.93
    assert result.factors == ["development"]
    assert "Application Name: Zed" in fake.calls[0]["messages"][1].content


def test_classify_app_normalises_odd_values(fake_llm):
    fake_llm(json.dumps({"classification": "great", "confidence": 0, "reasoning": ""}))
    result = classify_app(AppAnalysis(app_name="Zed"))
    assert result.classification == "neutral"
    assert result.confidence == 0.5
    assert result.reasoning == "No reasoning provided"

    fake_llm(json.dumps({"classification": "unproductive", "confidence": 3}))
    assert classify_app(AppAnalysis(app_name="Zed")).confidence == 1.0


def test_classify_app_unparseable_reply_needs_review(fake_llm):
    fake_llm("It is probably fine")
    result = classify_app(AppAnalysis(app_name="Zed"))
    assert result.classification == "neutral"
    assert result.confidence == 0.3
    assert result.factors == ["parsing_error"]


def test_classify_app_propagates_unreachable_model(fake_llm):
    fake_llm(RuntimeError("connection refused"))
    with pytest.raises(LLMError):
        classify_app(AppAnalysis(app_name="Zed"))


def test_context_boost_for_widely_used_apps(fake_llm):
    busy = AppAnalysis(app_name="Slack", unique_users=12, team_distribution={"Engineering Team 1": 150})
    fake_llm(_verdict("productive", 0.8), _verdict("productive", 0.8), _verdict("productive", 0.95))
    assert classify_app_for_context(busy).confidence == 0.8
    assert classify_app_for_context(busy, team_id="t-1").confidence == 0.9
    assert classify_app_for_context(busy, role="manager").confidence == 1.0


# ── suggestion ────────────────────────────────────────────────────────────────

def test_existing_rule_is_returned_without_llm(seeded, fake_llm, as_user):
    fake = fake_llm()
    suggestion = service.classify_new_app("vs code", as_user("eng_employee"))
    assert suggestion.id == seeded["vscode_rule"]
    assert suggestion.factors == ["existing_rule"]
    assert suggestion.requires_approval is False
    assert fake.calls == []


def test_low_confidence_suggestion_is_queued(pending_mystery, seeded, engine, fake_llm, as_user):
    assert pending_mystery.requires_approval is True
    assert pending_mystery.suggested_classification == "neutral"

    (pending,) = _rows(engine, pending_classifications)
    assert pending["team_id"] == seeded["eng"]
    assert pending["status"] == "pending"

    (audit,) = _rows(engine, agent_audit_log)
    assert audit["query"] == "Classify app: Mystery App"
    assert audit["response"] == "Suggested: neutral (confidence: 0.6)"

    # asking again returns the open review instead of a duplicate
    fake = fake_llm()
    again = service.classify_new_app("Mystery App", as_user("eng_manager"))
    assert again.id == pending_mystery.id
    assert again.factors == ["pending_review"]
    assert fake.calls == []
    assert len(_rows(engine, pending_classifications)) == 1


def test_confident_suggestion_becomes_global_rule(seeded, engine, fake_llm, as_user):
    fake_llm(_verdict("unproductive", 0.96, "Streaming"))
    suggestion = service.classify_new_app("Mystery App", as_user("mkt_employee"))

    assert suggestion.requires_approval is False
    assert _rows(engine, pending_classifications) == []
    rule = next(r for r in _rows(engine, classification_rules) if r["app_name"] == "Mystery App")
    assert rule["team_id"] is None
    assert rule["classification"] == "unproductive"
    assert get_unclassified_apps() == []


def test_unreachable_model_is_audited_and_raised(seeded, engine, fake_llm, as_user):
    fake_llm(RuntimeError("connection refused"))
    with pytest.raises(LLMError):
        service.classify_new_app("Mystery App", as_user("admin"))
    (audit,) = _rows(engine, agent_audit_log)
    assert audit["success"] is False
    assert "connection refused" in audit["error_message"]


# ── review queue ──────────────────────────────────────────────────────────────

def test_pending_visibility_by_role(pending_mystery, as_user):
    assert service.get_pending_classifications(as_user("eng_employee")) == []
    assert service.get_pending_classifications(as_user("mkt_manager")) == []
    assert [p["id"] for p in service.get_pending_classifications(as_user("eng_manager"))] == [pending_mystery.id]
    assert len(service.get_pending_classifications(as_user("admin"))) == 1


def test_approve_as_suggested(pending_mystery, engine, as_user):
    result = service.approve_classification(pending_mystery.id, as_user("eng_manager"))
    assert result["classification"] == "neutral"

    rule = next(r for r in _rows(engine, classification_rules) if r["id"] == result["ruleId"])
    assert rule["confidence"] == 0.6
    assert rule["approved_by"] == as_user("eng_manager").id
    assert _rows(engine, classification_feedback) == []
    (pending,) = _rows(engine, pending_classifications)
    assert pending["status"] == "approved"
    assert pending["reviewed_at"] is not None


def test_approve_with_override_records_feedback(pending_mystery, seeded, engine, as_user):
    manager = as_user("eng_manager")
    result = service.approve_classification(pending_mystery.id, manager, "unproductive", "Mostly games")

    rule = next(r for r in _rows(engine, classification_rules) if r["id"] == result["ruleId"])
    assert rule["team_id"] == seeded["eng"]
    assert rule["classification"] == "unproductive"
    assert rule["confidence"] == pytest.approx(0.9)
    assert rule["reasoning"] == "Overridden by Manager 1: Mostly games"

    (feedback,) = _rows(engine, classification_feedback)
    assert feedback["original_classification"] == "neutral"
    assert feedback["corrected_classification"] == "unproductive"
    assert feedback["corrected_by"] == manager.id

    stats = get_feedback_stats()
    assert stats["totalApprovals"] == 1
    assert stats["totalOverrides"] == 1
    assert stats["approvalRate"] == 1.0
    assert stats["classificationAccuracy"] == {"productive": 1.0, "neutral": 0.0, "unproductive": 1.0}

    assert get_frequently_overridden_apps() == []
    assert get_frequently_overridden_apps(min_overrides=1) == [{
        "appName": "Mystery App",
        "overrideCount": 1,
        "lastClassification": "unproductive",
        "mostCommonCorrection": "unproductive",
    }]


def test_review_errors(pending_mystery, as_user):
    with pytest.raises(service.ClassificationAccessError):
        service.approve_classification(pending_mystery.id, as_user("mkt_manager"))
    with pytest.raises(service.ClassificationAccessError):
        service.reject_classification(pending_mystery.id, as_user("eng_employee"), "no")
    with pytest.raises(service.ClassificationNotFoundError):
        service.approve_classification("missing", as_user("admin"))
    with pytest.raises(ValueError):
        service.approve_classification(pending_mystery.id, as_user("admin"), "amazing")

    service.approve_classification(pending_mystery.id, as_user("admin"))
    with pytest.raises(service.ClassificationAlreadyReviewedError):
        service.reject_classification(pending_mystery.id, as_user("admin"), "changed my mind")


def test_reject_requires_reason(pending_mystery, engine, as_user):
    with pytest.raises(ValueError, match="Rejection reason is required"):
        service.reject_classification(pending_mystery.id, as_user("eng_manager"), "  ")

    service.reject_classification(pending_mystery.id, as_user("eng_manager"), "Unknown vendor")
    (pending,) = _rows(engine, pending_classifications)
    assert pending["status"] == "rejected"
    assert pending["review_notes"] == "Unknown vendor"
    assert not any(r["app_name"] == "Mystery App" for r in _rows(engine, classification_rules))

    stats = get_feedback_stats()
    assert stats["totalRejections"] == 1
    assert stats["approvalRate"] == 0.0


# ── rules, thresholds, batch ──────────────────────────────────────────────────

def test_rules_filters(pending_mystery, seeded, as_user):
    service.approve_classification(pending_mystery.id, as_user("eng_manager"))
    eng_rules = service.get_classification_rules(team_id=seeded["eng"])
    assert [r["app_name"] for r in eng_rules] == ["Mystery App", "Netflix", "VS Code"]
    mkt_rules = service.get_classification_rules(team_id=seeded["mkt"])
    assert [r["app_name"] for r in mkt_rules] == ["Netflix", "VS Code"]
    productive = service.get_classification_rules(classification="productive")
    assert [r["app_name"] for r in productive] == ["VS Code"]


@pytest.mark.parametrize(
    "approvals, rejections, rate, expected",
    [
        (10, 0, 1.0, 0.9),
        (49, 1, 0.98, 0.85),
        (30, 20, 0.6, 0.95),
        (45, 5, 0.9, 0.9),
    ],
)
def test_adjusted_thresholds(approvals, rejections, rate, expected):
    stats = {"totalApprovals": approvals, "totalRejections": rejections, "approvalRate": rate}
    assert get_adjusted_confidence_thresholds(stats) == {"autoApprove": expected, "requireReview": 0.7}


def test_batch_skips_failures(seeded, fake_llm, as_user):
    fake_llm(RuntimeError("rate limited"))
    assert service.classify_unclassified_apps(as_user("admin")) == []

    fake_llm(_verdict("neutral", 0.5))
    (suggestion,) = service.classify_unclassified_apps(as_user("admin"), limit=5)
    assert suggestion.app_name == "Mystery App"
    assert suggestion.to_dict()["requiresApproval"] is True
