import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from conftest import StaticCredentials, make_response
from threatscore.core.feature_extractor import FeatureRecord
from threatscore.core.threat_intel import (
    AbuseIPDBAdapter,
    IPQualityScoreAdapter,
    RateLimiter,
    SafeBrowsingAdapter,
    VirusTotalAdapter,
)

NOW = 1_700_000_000


def _stats(malicious=0, suspicious=0):
    return {"data": {"attributes": {"last_analysis_stats": {
        "harmless": 60, "malicious": malicious, "suspicious": suspicious, "undetected": 10,
    }}}}


@pytest.fixture
def record():
    return FeatureRecord(
        sender_email="alerts@paypal-verify.ru",
        urls=("http://one.example/a", "http://two.example/b",
              "http://three.example/c", "http://four.example/d"),
        originating_ip="203.0.113.7",
    )


# ===== Rate limiter =====

def test_rate_limiter_window():
    now = [0.0]
    limiter = RateLimiter(2, window_seconds=60, clock=lambda: now[0])
    assert limiter.try_acquire()
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    now[0] = 61.0
    assert limiter.try_acquire()


def test_rate_limited_call_counts_as_failure(record, credentials, session):
    limiter = RateLimiter(0)
    adapter = AbuseIPDBAdapter(credentials, session=session, rate_limiter=limiter)
    assert adapter.evaluate(record, 12).points == 0
    session.request.assert_not_called()


# ===== Failure muting (shared by every adapter) =====

@pytest.mark.parametrize("adapter_cls", [
    VirusTotalAdapter, AbuseIPDBAdapter, IPQualityScoreAdapter, SafeBrowsingAdapter,
])
def test_missing_credential_skips_provider(adapter_cls, record, session):
    adapter = adapter_cls(StaticCredentials(), session=session)
    result = adapter.evaluate(record, 10)
    assert result.points == 0
    assert result.explanations == ()
    session.request.assert_not_called()


@pytest.mark.parametrize("adapter_cls", [
    VirusTotalAdapter, AbuseIPDBAdapter, IPQualityScoreAdapter, SafeBrowsingAdapter,
])
@pytest.mark.parametrize("failure", [
    {"return_value": make_response(500)},
    {"return_value": make_response(401)},
    {"return_value": make_response(429)},
    {"return_value": make_response(200, json_error=True)},
    {"return_value": make_response(200, payload=["not", "an", "object"])},
    {"side_effect": requests.Timeout("slow")},
    {"side_effect": requests.ConnectionError("refused")},
    {"side_effect": RuntimeError("boom")},
])
def test_provider_failures_are_muted(adapter_cls, failure, record, credentials, session):
    session.request.configure_mock(**failure)
    adapter = adapter_cls(credentials, session=session)
    result = adapter.evaluate(record, 10)
    assert result.points == 0
    assert result.explanations == ()


def test_request_uses_configured_timeout(record, credentials, session):
    session.request.return_value = make_response(200, {"data": {"abuseConfidenceScore": 0}})
    AbuseIPDBAdapter(credentials, session=session, timeout=3.5).evaluate(record, 12)
    assert session.request.call_args.kwargs["timeout"] == 3.5


# ===== VirusTotal =====

def _virustotal_session(session, answers):
    def fake_request(method, url, **kwargs):
        for fragment, response in answers.items():
            if fragment in url:
                return response
        return make_response(200, _stats())
    session.request.side_effect = fake_request
    return session


def test_virustotal_domain_saturates_at_three_engines(record, credentials, session):
    _virustotal_session(session, {"/domains/paypal-verify.ru": make_response(200, _stats(malicious=5))})
    result = VirusTotalAdapter(credentials, session=session).evaluate(record, 15)
    assert result.points == 11
    assert result.explanations[0].signal == "domain_reputation"
    assert "paypal-verify.ru" in result.explanations[0].details


def test_virustotal_partial_domain_share(record, credentials, session):
    _virustotal_session(session, {"/domains/": make_response(200, _stats(suspicious=1))})
    assert VirusTotalAdapter(credentials, session=session).evaluate(record, 15).points == 4


def test_virustotal_stops_after_first_flagged_url(record, credentials, session):
    calls = []

    def fake_request(method, url, **kwargs):
        calls.append(url)
        if "/urls/" in url and len([c for c in calls if "/urls/" in c]) == 2:
            return make_response(200, _stats(malicious=3))
        return make_response(200, _stats())

    session.request.side_effect = fake_request
    result = VirusTotalAdapter(credentials, session=session).evaluate(record, 15)

    assert result.points == 5
    assert len(calls) == 3
    assert "two.example" in result.explanations[0].details


def test_virustotal_domain_and_url_together_fill_weight(record, credentials, session):
    session.request.return_value = make_response(200, _stats(malicious=4))
    result = VirusTotalAdapter(credentials, session=session).evaluate(record, 15)
    assert result.points == 15
    assert [e.weight for e in result.explanations] == [11, 4]


def test_virustotal_unknown_target_is_clean(record, credentials, session):
    session.request.return_value = make_response(404)
    result = VirusTotalAdapter(credentials, session=session).evaluate(record, 15)
    assert result.points == 0


def test_virustotal_sends_api_key_header(record, credentials, session):
    session.request.return_value = make_response(200, _stats())
    VirusTotalAdapter(credentials, session=session).evaluate(record, 15)
    first = session.request.call_args_list[0]
    assert first.args == ("GET", "https://www.virustotal.com/api/v3/domains/paypal-verify.ru")
    assert first.kwargs["headers"] == {"x-apikey": "vt-key"}


# ===== AbuseIPDB =====

@pytest.mark.parametrize("confidence,expected", [
    (0, 0),
    (19, 0),
    (20, 2),
    (50, 6),
    (75, 9),
    (100, 12),
])
def test_abuseipdb_confidence_scaling(confidence, expected, record, credentials, session):
    session.request.return_value = make_response(200, {"data": {
        "ipAddress": "203.0.113.7", "abuseConfidenceScore": confidence, "totalReports": 3,
    }})
    result = AbuseIPDBAdapter(credentials, session=session).evaluate(record, 12)
    assert result.points == expected


def test_abuseipdb_without_originating_ip(credentials, session):
    result = AbuseIPDBAdapter(credentials, session=session).evaluate(FeatureRecord(), 12)
    assert result.points == 0
    session.request.assert_not_called()


def test_abuseipdb_non_numeric_confidence(record, credentials, session):
    session.request.return_value = make_response(200, {"data": {"abuseConfidenceScore": "high"}})
    assert AbuseIPDBAdapter(credentials, session=session).evaluate(record, 12).points == 0


# ===== IPQualityScore =====

def _ipqs(payload, record, credentials, session, weight=8):
    base = {"success": True, "fraud_score": 0, "disposable": False, "dns_valid": True}
    base.update(payload)
    session.request.return_value = make_response(200, base)
    adapter = IPQualityScoreAdapter(credentials, session=session, clock=lambda: NOW)
    return adapter.evaluate(record, weight)


def test_ipqs_partials_sum_then_cap(record, credentials, session):
    result = _ipqs({"disposable": True, "fraud_score": 80}, record, credentials, session)
    assert result.points == 8
    assert [e.weight for e in result.explanations] == [4, 4]


def test_ipqs_young_domain(record, credentials, session):
    result = _ipqs({"domain_age": {"timestamp": NOW - 30 * 86400}}, record, credentials, session)
    assert result.points == 2
    assert "30 days old" in result.explanations[0].details


def test_ipqs_old_domain_is_not_flagged(record, credentials, session):
    result = _ipqs({"domain_age": {"timestamp": NOW - 400 * 86400}}, record, credentials, session)
    assert result.points == 0


def test_ipqs_young_domain_without_mail_exchange(record, credentials, session):
    result = _ipqs({"domain_age": {"timestamp": NOW - 10 * 86400}, "dns_valid": False},
                   record, credentials, session)
    assert result.points == 6
    assert [e.weight for e in result.explanations] == [3, 3]


def test_ipqs_fraud_score_below_threshold(record, credentials, session):
    assert _ipqs({"fraud_score": 74}, record, credentials, session).points == 0


def test_ipqs_rejected_request(record, credentials, session):
    result = _ipqs({"success": False, "message": "Invalid key", "disposable": True},
                   record, credentials, session)
    assert result.points == 0


def test_ipqs_request_path(record, credentials, session):
    _ipqs({}, record, credentials, session)
    method, url = session.request.call_args.args
    assert method == "GET"
    assert url == "https://www.ipqualityscore.com/api/json/email/ipqs-key/alerts@paypal-verify.ru"


# ===== Safe Browsing =====

def test_safe_browsing_match_is_full_weight(record, credentials, session):
    session.request.return_value = make_response(200, {"matches": [
        {"threatType": "SOCIAL_ENGINEERING", "threat": {"url": "http://one.example/a"}},
    ]})
    result = SafeBrowsingAdapter(credentials, session=session).evaluate(record, 3)
    assert result.points == 3
    assert "SOCIAL_ENGINEERING" in result.explanations[0].details


def test_safe_browsing_no_match(record, credentials, session):
    session.request.return_value = make_response(200, {})
    assert SafeBrowsingAdapter(credentials, session=session).evaluate(record, 3).points == 0


def test_safe_browsing_sends_first_ten_urls(credentials, session):
    urls = tuple(f"http://site{i}.example/" for i in range(12))
    session.request.return_value = make_response(200, {})
    SafeBrowsingAdapter(credentials, session=session).evaluate(FeatureRecord(urls=urls), 3)

    kwargs = session.request.call_args.kwargs
    entries = kwargs["json"]["threatInfo"]["threatEntries"]
    assert [e["url"] for e in entries] == list(urls[:10])
    assert kwargs["params"] == {"key": "gsb-key"}


def test_safe_browsing_without_urls(credentials, session):
    SafeBrowsingAdapter(credentials, session=session).evaluate(FeatureRecord(), 3)
    session.request.assert_not_called()


def test_lazy_session_is_built_once_under_concurrency(monkeypatch, credentials):
    created = []

    def slow_session():
        time.sleep(0.05)
        session = MagicMock()
        created.append(session)
        return session

    monkeypatch.setattr(requests, "Session", slow_session)
    adapter = AbuseIPDBAdapter(credentials)
    barrier = threading.Barrier(8)
    seen = []

    def worker():
        barrier.wait()
        seen.append(adapter.http_session)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(created) == 1
    assert all(s is created[0] for s in seen)
