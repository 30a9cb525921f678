import threading
from unittest.mock import MagicMock

import pytest
import requests

from conftest import StaticCredentials, StubAdapter, make_response, points
from threatscore.core.errors import ConfigurationError
from threatscore.core.feature_extractor import FeatureRecord
from threatscore.core.risk_scorer import RiskScorer, determine_verdict
from threatscore.core.signals import WEIGHTS_V1, SignalKey, SignalResult
from threatscore.core.threat_intel import AbuseIPDBAdapter
from threatscore.schemas import Verdict


def _stubs(ip_adapter=None):
    return {
        SignalKey.CONTENT_INTENT: StubAdapter(points(SignalKey.CONTENT_INTENT, 7)),
        SignalKey.DOMAIN_REPUTATION: StubAdapter(points(SignalKey.DOMAIN_REPUTATION, 11)),
        SignalKey.IP_REPUTATION: ip_adapter or StubAdapter(points(SignalKey.IP_REPUTATION, 9)),
        SignalKey.EMAIL_FRAUD: StubAdapter(points(SignalKey.EMAIL_FRAUD, 4)),
        SignalKey.URL_BLACKLIST: StubAdapter(points(SignalKey.URL_BLACKLIST, 3)),
    }


def _not_blacklisted(_):
    return False


# ===== Verdict bands =====

@pytest.mark.parametrize("score,verdict", [
    (0, Verdict.SAFE),
    (30, Verdict.SAFE),
    (31, Verdict.SUSPICIOUS),
    (60, Verdict.SUSPICIOUS),
    (61, Verdict.MALICIOUS),
    (100, Verdict.MALICIOUS),
])
def test_verdict_bands(score, verdict):
    assert determine_verdict(score) == verdict


BOUNDARY_WEIGHTS = {
    "blacklist": 30,
    "display_name_spoof": 31,
    "reply_to_mismatch": 30,
    "content_intent": 0,
    "suspicious_links": 9,
    "domain_reputation": 0,
    "ip_reputation": 0,
    "email_fraud": 0,
    "url_blacklist": 0,
}


@pytest.mark.parametrize("fields,expected_score,expected_verdict", [
    ({"sender_email": "x@evil.com"}, 30, Verdict.SAFE),
    ({"sender_email": "x@spoof.biz", "sender_display_name": "Chase Alerts"}, 31, Verdict.SUSPICIOUS),
    ({"sender_email": "x@evil.com", "raw_header_block": "Reply-To: y@other.net"}, 60, Verdict.SUSPICIOUS),
    ({"sender_email": "x@evil.com", "sender_display_name": "Chase Alerts"}, 61, Verdict.MALICIOUS),
])
def test_verdict_boundaries_through_scorer(fields, expected_score, expected_verdict):
    scorer = RiskScorer(weights=BOUNDARY_WEIGHTS)
    analysis = scorer.score(FeatureRecord(**fields), blacklist_predicate=lambda s: s == "evil.com")
    assert analysis.score == expected_score
    assert analysis.verdict == expected_verdict


# ===== Aggregation =====

def test_full_phishing_email(phishing_record):
    scorer = RiskScorer(adapters=_stubs())
    analysis = scorer.score(phishing_record, blacklist_predicate=_not_blacklisted)

    # 14 spoof + 10 reply-to + 8 links + 7 + 11 + 9 + 4 + 3
    assert analysis.score == 66
    assert analysis.verdict == Verdict.MALICIOUS
    assert [e.signal for e in analysis.explanations] == [
        "display_name_spoof",
        "reply_to_mismatch",
        "content_intent",
        "suspicious_links",
        "domain_reputation",
        "ip_reputation",
        "email_fraud",
        "url_blacklist",
    ]
    assert sum(e.weight for e in analysis.explanations) == analysis.score
    assert analysis.sender_email == "alerts@paypal-verify.ru"
    assert analysis.domain == "paypal-verify.ru"
    assert analysis.originating_ip == "203.0.113.7"


def test_failing_adapter_counts_zero_and_others_still_count(phishing_record):
    scorer = RiskScorer(adapters=_stubs(StubAdapter(error=RuntimeError("provider down"))))
    analysis = scorer.score(phishing_record, blacklist_predicate=_not_blacklisted)
    assert analysis.score == 57
    assert analysis.verdict == Verdict.SUSPICIOUS
    assert "ip_reputation" not in [e.signal for e in analysis.explanations]


def test_provider_timeout_inside_adapter(phishing_record):
    session = MagicMock()
    session.request.side_effect = requests.Timeout("read timed out")
    ip_adapter = AbuseIPDBAdapter(StaticCredentials(abuseipdb="k"), session=session)

    analysis = RiskScorer(adapters=_stubs(ip_adapter)).score(
        phishing_record, blacklist_predicate=_not_blacklisted
    )
    assert analysis.score == 57


def test_hanging_adapter_is_abandoned_at_deadline(phishing_record):
    release = threading.Event()
    scorer = RiskScorer(
        adapters=_stubs(StubAdapter(points(SignalKey.IP_REPUTATION, 9), release=release)),
        provider_timeout=0.05,
        timeout_grace=0.05,
    )
    try:
        analysis = scorer.score(phishing_record, blacklist_predicate=_not_blacklisted)
    finally:
        release.set()
    assert analysis.score == 57


def test_all_signals_disabled():
    adapters = _stubs()
    scorer = RiskScorer(adapters=adapters)
    record = FeatureRecord(sender_email="x@evil.com", sender_display_name="PayPal",
                           urls=("http://bit.ly/a",))

    analysis = scorer.score(record, enabled={k.value: False for k in SignalKey},
                            blacklist_predicate=lambda s: True)

    assert analysis.score == 0
    assert analysis.verdict == Verdict.SAFE
    assert analysis.explanations == ()
    assert all(a.calls == 0 for a in adapters.values())


def test_disabled_signal_is_not_evaluated(phishing_record):
    adapters = _stubs()
    analysis = RiskScorer(adapters=adapters).score(
        phishing_record,
        enabled={"ip_reputation": False, "suspicious_links": False},
        blacklist_predicate=_not_blacklisted,
    )
    assert analysis.score == 66 - 9 - 8
    assert adapters[SignalKey.IP_REPUTATION].calls == 0


def test_blacklist_without_predicate_is_skipped():
    analysis = RiskScorer().score(FeatureRecord(sender_email="x@evil.com"))
    assert analysis.score == 0


def test_network_signal_without_adapter_is_skipped(phishing_record):
    analysis = RiskScorer().score(phishing_record, blacklist_predicate=_not_blacklisted)
    assert analysis.score == 32


def test_scoring_is_idempotent(phishing_record):
    scorer = RiskScorer(adapters=_stubs())
    first = scorer.score(phishing_record, blacklist_predicate=_not_blacklisted)
    second = scorer.score(phishing_record, blacklist_predicate=_not_blacklisted)
    assert first == second


def test_score_never_exceeds_100():
    full = {key: StubAdapter(points(key, WEIGHTS_V1[key])) for key in _stubs()}
    record = FeatureRecord(
        sender_email="x@evil.com",
        sender_display_name="PayPal",
        raw_header_block="Reply-To: y@other.net",
        urls=("http://bit.ly/a", "http://t.co/b"),
    )
    analysis = RiskScorer(adapters=full).score(record, blacklist_predicate=lambda s: True)
    assert analysis.score == 100
    assert analysis.verdict == Verdict.MALICIOUS


def test_oversized_adapter_result_is_clamped_to_weight(phishing_record):
    adapters = _stubs()
    adapters[SignalKey.URL_BLACKLIST] = StubAdapter(points(SignalKey.URL_BLACKLIST, 50))
    analysis = RiskScorer(adapters=adapters).score(phishing_record, blacklist_predicate=_not_blacklisted)
    url_points = [e.weight for e in analysis.explanations if e.signal == "url_blacklist"]
    assert url_points == [3]
    assert analysis.score == 66


def test_empty_adapter_result(phishing_record):
    adapters = _stubs()
    adapters[SignalKey.EMAIL_FRAUD] = StubAdapter(SignalResult.empty())
    analysis = RiskScorer(adapters=adapters).score(phishing_record, blacklist_predicate=_not_blacklisted)
    assert analysis.score == 62


# ===== Construction =====

def test_weights_must_sum_to_100():
    bad = dict(WEIGHTS_V1.as_dict(), url_blacklist=2)
    with pytest.raises(ConfigurationError, match="sum to 100, got 99"):
        RiskScorer(weights=bad)


def test_adapter_for_local_signal_is_rejected():
    with pytest.raises(ValueError):
        RiskScorer(adapters={SignalKey.BLACKLIST: StubAdapter()})
