import base64
import logging
import threading
import time
from collections import deque
from typing import Dict, List, Optional
from urllib.parse import quote

import requests

from threatscore.core.errors import ProviderError
from threatscore.core.feature_extractor import FeatureRecord
from threatscore.core.signals import SignalKey, SignalResult, apportion, round_points

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
USER_AGENT = 'ThreatScore/1.0'


class RateLimiter:
    """Sliding-window call ceiling shared by every analysis in the process"""

    def __init__(self, limit: int, window_seconds: float = 60.0, clock=time.monotonic):
        self.limit = limit
        self.window = window_seconds
        self.clock = clock
        self._calls = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        """
        Record a call if it fits in the current window

        Returns:
            True if the call is allowed, False if rate limited
        """
        if self.limit <= 0:
            return False
        now = self.clock()
        with self._lock:
            while self._calls and now - self._calls[0] >= self.window:
                self._calls.popleft()
            if len(self._calls) < self.limit:
                self._calls.append(now)
                return True
            return False


class ReputationAdapter:
    """
    One external reputation lookup, normalized onto a signal weight.

    Subclasses implement `lookup()` (one provider request, raw response or
    None) and `_evaluate()` (turn responses into points). `evaluate()` is the
    failure boundary: a missing credential, a non-2xx answer, a network error
    or a malformed body all come back as an empty SignalResult.

    `credentials` is any object with `get_key(provider_name) -> Optional[str]`.
    """

    key: SignalKey
    provider: str

    def __init__(self, credentials, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 rate_limiter: Optional[RateLimiter] = None):
        self.credentials = credentials
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self._http_session = session
        # Guards lazily created clients shared by concurrent analyses
        self._client_lock = threading.Lock()

    @property
    def http_session(self) -> requests.Session:
        if self._http_session is None:
            with self._client_lock:
                if self._http_session is None:
                    # Reuse TCP connections for all calls to this provider
                    http_session = requests.Session()
                    http_session.headers.update({'User-Agent': USER_AGENT})
                    self._http_session = http_session
        return self._http_session

    def evaluate(self, record: FeatureRecord, weight: int) -> SignalResult:
        api_key = self._api_key()
        if not api_key:
            logger.debug(f"{self.provider}: no API key configured, signal skipped")
            return SignalResult.empty()
        try:
            return self._evaluate(record, weight, api_key)
        except ProviderError as e:
            logger.warning(f"⚠️ {self.provider}: {e}")
        except Exception as e:
            logger.error(f"❌ Unexpected error in {self.provider} check: {e}", exc_info=True)
        return SignalResult.empty()

    def lookup(self, target: str, api_key: str):
        raise NotImplementedError

    def _evaluate(self, record: FeatureRecord, weight: int, api_key: str) -> SignalResult:
        raise NotImplementedError

    def _api_key(self) -> Optional[str]:
        try:
            key = self.credentials.get_key(self.provider)
        except Exception as e:
            logger.warning(f"⚠️ Could not read {self.provider} credential: {e}")
            return None
        return key.strip() if key and key.strip() else None

    def _request(self, method: str, url: str, not_found_ok: bool = False,
                 **kwargs) -> Optional[Dict]:
        """
        Perform one provider call with timeout, rate ceiling and muted errors

        Returns:
            Decoded JSON object, {} for a tolerated 404, or None on any failure
        """
        if self.rate_limiter is not None and not self.rate_limiter.try_acquire():
            logger.warning(f"⚠️ {self.provider} rate ceiling reached, call skipped")
            return None

        try:
            response = self.http_session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout:
            logger.warning(f"⚠️ {self.provider} request timeout")
            return None
        except requests.RequestException as e:
            logger.error(f"❌ {self.provider} request error: {e}")
            return None

        if response.status_code == 404 and not_found_ok:
            return {}
        if response.status_code == 429:
            logger.warning(f"⚠️ {self.provider} rate limit exceeded")
            return None
        if response.status_code in (401, 403):
            logger.error(f"❌ {self.provider} authentication failed (invalid API key)")
            return None
        if not 200 <= response.status_code < 300:
            logger.warning(f"⚠️ {self.provider} returned status code: {response.status_code}")
            return None

        try:
            payload = response.json()
        except ValueError as e:
            logger.warning(f"⚠️ {self.provider} returned invalid JSON: {e}")
            return None
        if not isinstance(payload, dict):
            logger.warning(f"⚠️ {self.provider} returned unexpected payload type")
            return None
        return payload


def _as_int(value, field: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ProviderError(f"field {field} is not a number: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ProviderError(f"field {field} is not a number: {value!r}")


# ===== VirusTotal: domain / URL reputation =====

class VirusTotalAdapter(ReputationAdapter):
    """
    Sender domain plus the first few body URLs, scored by how many engines
    call them malicious or suspicious. Three engines saturate a target.
    """

    key = SignalKey.DOMAIN_REPUTATION
    provider = 'virustotal'
    base_url = 'https://www.virustotal.com/api/v3'

    DOMAIN_SHARE = 0.7
    URL_SHARE = 0.3
    ENGINES_FOR_FULL_SHARE = 3
    MAX_URLS = 3

    def lookup(self, target: str, api_key: str) -> Optional[Dict[str, int]]:
        """
        Fetch last analysis stats for a domain or a URL (no scan submission)

        Returns:
            {'malicious': n, 'suspicious': n} or None on failure
        """
        if target.lower().startswith(('http://', 'https://')):
            url_id = base64.urlsafe_b64encode(target.encode()).decode().strip('=')
            endpoint = f'{self.base_url}/urls/{url_id}'
        else:
            endpoint = f'{self.base_url}/domains/{target}'

        payload = self._request('GET', endpoint, headers={'x-apikey': api_key},
                                not_found_ok=True)
        if payload is None:
            return None

        # 404: never analyzed, not evidence either way
        if not payload:
            return {'malicious': 0, 'suspicious': 0}

        stats = payload.get('data', {}).get('attributes', {}).get('last_analysis_stats')
        if not isinstance(stats, dict):
            raise ProviderError(f"no last_analysis_stats for {target}")
        return {
            'malicious': _as_int(stats.get('malicious'), 'malicious'),
            'suspicious': _as_int(stats.get('suspicious'), 'suspicious'),
        }

    def _share(self, budget: float, stats: Dict[str, int]) -> float:
        hits = stats['malicious'] + stats['suspicious']
        return budget * min(1.0, hits / self.ENGINES_FOR_FULL_SHARE)

    def _evaluate(self, record: FeatureRecord, weight: int, api_key: str) -> SignalResult:
        parts = []

        domain = record.sender_domain
        if domain:
            stats = self.lookup(domain, api_key)
            if stats is not None:
                raw = self._share(weight * self.DOMAIN_SHARE, stats)
                if raw > 0:
                    parts.append((
                        f"VirusTotal: sender domain {domain} flagged by "
                        f"{stats['malicious']} malicious / {stats['suspicious']} suspicious engines",
                        raw,
                    ))

        for url in record.urls[:self.MAX_URLS]:
            stats = self.lookup(url, api_key)
            if stats is None:
                continue
            raw = self._share(weight * self.URL_SHARE, stats)
            if raw > 0:
                parts.append((
                    f"VirusTotal: link {url[:80]} flagged by "
                    f"{stats['malicious']} malicious / {stats['suspicious']} suspicious engines",
                    raw,
                ))
                # One flagged link is enough; save the quota
                break

        if not parts:
            return SignalResult.empty()

        total = min(weight, round_points(sum(raw for _, raw in parts)))
        shares = apportion(total, [raw for _, raw in parts])
        return SignalResult.from_parts(
            self.key, weight, [(details, pts) for (details, _), pts in zip(parts, shares)]
        )


# ===== AbuseIPDB: originating IP =====

class AbuseIPDBAdapter(ReputationAdapter):
    key = SignalKey.IP_REPUTATION
    provider = 'abuseipdb'
    endpoint = 'https://api.abuseipdb.com/api/v2/check'

    # Shared hosting picks up low scores without being hostile
    MIN_CONFIDENCE = 20

    def lookup(self, target: str, api_key: str) -> Optional[Dict]:
        payload = self._request(
            'GET', self.endpoint,
            headers={'Key': api_key, 'Accept': 'application/json'},
            params={'ipAddress': target, 'maxAgeInDays': '90'},
        )
        if payload is None:
            return None
        data = payload.get('data')
        if not isinstance(data, dict):
            raise ProviderError(f"no data block for {target}")
        return data

    def _evaluate(self, record: FeatureRecord, weight: int, api_key: str) -> SignalResult:
        ip = record.originating_ip
        if not ip:
            return SignalResult.empty()

        data = self.lookup(ip, api_key)
        if data is None:
            return SignalResult.empty()

        confidence = min(_as_int(data.get('abuseConfidenceScore'), 'abuseConfidenceScore'), 100)
        if confidence < self.MIN_CONFIDENCE:
            return SignalResult.empty()

        points = round_points(weight * confidence / 100)
        reports = data.get('totalReports', 0)
        details = f"AbuseIPDB: originating IP {ip} has {confidence}% abuse confidence ({reports} reports)"
        return SignalResult.from_parts(self.key, weight, [(details, points)])


# ===== IPQualityScore: sender address fraud =====

class IPQualityScoreAdapter(ReputationAdapter):
    key = SignalKey.EMAIL_FRAUD
    provider = 'ipqualityscore'
    base_url = 'https://www.ipqualityscore.com/api/json/email'

    DISPOSABLE_SHARE = 0.6
    FRAUD_SHARE = 0.5
    YOUNG_DOMAIN_SHARE = 0.3
    NO_MX_SHARE = 0.4
    FRAUD_SCORE_THRESHOLD = 75
    YOUNG_DOMAIN_DAYS = 180

    def __init__(self, *args, clock=time.time, **kwargs):
        super().__init__(*args, **kwargs)
        self.clock = clock

    def lookup(self, target: str, api_key: str) -> Optional[Dict]:
        payload = self._request(
            'GET', f"{self.base_url}/{api_key}/{quote(target, safe='@')}",
            params={'timeout': 7, 'abuse_strictness': 0},
        )
        if payload is None:
            return None
        if payload.get('success') is False:
            raise ProviderError(f"request rejected: {payload.get('message', 'unknown reason')}")
        return payload

    def _domain_age_days(self, payload: Dict) -> Optional[float]:
        domain_age = payload.get('domain_age')
        if not isinstance(domain_age, dict):
            return None
        created = domain_age.get('timestamp')
        if not isinstance(created, (int, float)) or isinstance(created, bool) or created <= 0:
            return None
        return (self.clock() - created) / 86400

    def _evaluate(self, record: FeatureRecord, weight: int, api_key: str) -> SignalResult:
        email = record.sender_email
        if not email or '@' not in email:
            return SignalResult.empty()

        payload = self.lookup(email, api_key)
        if payload is None:
            return SignalResult.empty()

        parts = []
        if payload.get('disposable') is True:
            parts.append(("IPQualityScore: disposable email address",
                          weight * self.DISPOSABLE_SHARE))

        fraud_score = _as_int(payload.get('fraud_score'), 'fraud_score')
        if fraud_score >= self.FRAUD_SCORE_THRESHOLD:
            parts.append((f"IPQualityScore: fraud score {fraud_score}/100",
                          weight * self.FRAUD_SHARE))

        age_days = self._domain_age_days(payload)
        if age_days is not None and age_days < self.YOUNG_DOMAIN_DAYS:
            parts.append((f"IPQualityScore: sender domain is only {max(int(age_days), 0)} days old",
                          weight * self.YOUNG_DOMAIN_SHARE))

        if payload.get('dns_valid') is False:
            parts.append(("IPQualityScore: sender domain has no valid mail exchange records",
                          weight * self.NO_MX_SHARE))

        if not parts:
            return SignalResult.empty()

        # Sum every partial first, cap once
        total = min(weight, round_points(sum(raw for _, raw in parts)))
        shares = apportion(total, [raw for _, raw in parts])
        return SignalResult.from_parts(
            self.key, weight, [(details, pts) for (details, _), pts in zip(parts, shares)]
        )


# ===== Google Safe Browsing: URL blacklist =====

class SafeBrowsingAdapter(ReputationAdapter):
    key = SignalKey.URL_BLACKLIST
    provider = 'safebrowsing'
    endpoint = 'https://safebrowsing.googleapis.com/v4/threatMatches:find'

    MAX_URLS = 10
    THREAT_TYPES = [
        'MALWARE',
        'SOCIAL_ENGINEERING',
        'UNWANTED_SOFTWARE',
        'POTENTIALLY_HARMFUL_APPLICATION',
    ]

    def lookup(self, target: List[str], api_key: str) -> Optional[List[Dict]]:
        body = {
            'client': {'clientId': 'threatscore', 'clientVersion': '1.0.0'},
            'threatInfo': {
                'threatTypes': self.THREAT_TYPES,
                'platformTypes': ['ANY_PLATFORM'],
                'threatEntryTypes': ['URL'],
                'threatEntries': [{'url': u} for u in target],
            },
        }
        payload = self._request('POST', self.endpoint, params={'key': api_key}, json=body)
        if payload is None:
            return None
        matches = payload.get('matches', [])
        if not isinstance(matches, list):
            raise ProviderError("matches is not a list")
        return matches

    def _evaluate(self, record: FeatureRecord, weight: int, api_key: str) -> SignalResult:
        urls = list(record.urls[:self.MAX_URLS])
        if not urls:
            return SignalResult.empty()

        matches = self.lookup(urls, api_key)
        if not matches:
            return SignalResult.empty()

        threat_types = sorted({str(m.get('threatType', 'UNKNOWN')) for m in matches if isinstance(m, dict)})
        return SignalResult.full(
            self.key, weight,
            f"Google Safe Browsing lists {len(matches)} link(s) as {', '.join(threat_types)}"
        )
