import time
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Mapping, Optional, Union

from threatscore.config import Settings, settings as app_settings
from threatscore.core.content_classifier import ContentIntentAdapter
from threatscore.core.feature_extractor import extract
from threatscore.core.risk_scorer import RiskScorer
from threatscore.core.signals import WEIGHTS_V1, SignalKey
from threatscore.core.threat_intel import (
    AbuseIPDBAdapter,
    IPQualityScoreAdapter,
    RateLimiter,
    SafeBrowsingAdapter,
    VirusTotalAdapter,
)
from threatscore.schemas import Analysis
from threatscore.services.stores import (
    BlacklistStore,
    HistorySink,
    SettingsCredentialProvider,
    SignalSettingsStore,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisOutcome:
    analysis: Analysis
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def build_scorer(config: Settings = app_settings, credentials=None) -> RiskScorer:
    """Wire every reputation adapter from configuration"""
    credentials = credentials or SettingsCredentialProvider(config)
    timeout = config.PROVIDER_TIMEOUT_SECONDS

    adapters = {
        SignalKey.CONTENT_INTENT: ContentIntentAdapter(
            credentials,
            model=config.CONTENT_MODEL,
            base_url=config.OPENAI_BASE_URL,
            timeout=timeout,
            rate_limiter=RateLimiter(config.CONTENT_RATE_LIMIT),
        ),
        SignalKey.DOMAIN_REPUTATION: VirusTotalAdapter(
            credentials, timeout=timeout,
            rate_limiter=RateLimiter(config.VIRUSTOTAL_RATE_LIMIT),
        ),
        SignalKey.IP_REPUTATION: AbuseIPDBAdapter(
            credentials, timeout=timeout,
            rate_limiter=RateLimiter(config.ABUSEIPDB_RATE_LIMIT),
        ),
        SignalKey.EMAIL_FRAUD: IPQualityScoreAdapter(
            credentials, timeout=timeout,
            rate_limiter=RateLimiter(config.IPQS_RATE_LIMIT),
        ),
        SignalKey.URL_BLACKLIST: SafeBrowsingAdapter(
            credentials, timeout=timeout,
            rate_limiter=RateLimiter(config.SAFE_BROWSING_RATE_LIMIT),
        ),
    }
    return RiskScorer(adapters=adapters, weights=WEIGHTS_V1, provider_timeout=timeout)


_default_scorer: Optional[RiskScorer] = None
_default_scorer_lock = Lock()


def default_scorer() -> RiskScorer:
    """
    Process-wide scorer built from the application settings on first use.

    Every `analyze()` call without an explicit scorer shares its adapters, so
    rate ceilings and pooled sessions span calls.
    """
    global _default_scorer
    if _default_scorer is None:
        with _default_scorer_lock:
            if _default_scorer is None:
                _default_scorer = build_scorer(app_settings)
    return _default_scorer


def analyze(raw_message: Union[str, bytes],
            enabled_signals: Optional[Mapping] = None,
            blacklist_predicate: Optional[Callable[[str], bool]] = None,
            scorer: Optional[RiskScorer] = None) -> AnalysisOutcome:
    """
    Score one raw email. Never raises.

    Failures inside a single signal only zero that signal. Anything that
    breaks the pipeline itself yields a zero/Safe placeholder Analysis plus
    an error message for the caller to show.
    """
    try:
        if scorer is None:
            scorer = default_scorer()
        record = extract(raw_message)
        return AnalysisOutcome(scorer.score(record, enabled_signals, blacklist_predicate))
    except Exception as e:
        logger.error(f"❌ Analysis failed: {e}", exc_info=True)
        return AnalysisOutcome(Analysis.degenerate(), error=f"Analysis failed: {e}")


class AnalysisService:
    """Connects the scorer to the blacklist, settings and history stores"""

    def __init__(self, scorer: RiskScorer, blacklist: BlacklistStore,
                 signal_settings: SignalSettingsStore, history: HistorySink):
        self.scorer = scorer
        self.blacklist = blacklist
        self.signal_settings = signal_settings
        self.history = history

    @classmethod
    def from_settings(cls, config: Settings = app_settings) -> "AnalysisService":
        return cls(
            scorer=build_scorer(config),
            blacklist=BlacklistStore(),
            signal_settings=SignalSettingsStore(),
            history=HistorySink(limit=config.HISTORY_LIMIT),
        )

    def analyze_email(self, raw_email: Union[str, bytes]) -> AnalysisOutcome:
        """Complete email analysis pipeline"""
        start_time = time.time()
        outcome = analyze(
            raw_email,
            enabled_signals=self.signal_settings.get_enabled_map(),
            blacklist_predicate=self.blacklist.is_member,
            scorer=self.scorer,
        )
        processing_time = time.time() - start_time

        if outcome.ok:
            self.history.append(outcome.analysis)
            logger.info(
                f"✓ Analysis complete in {processing_time:.2f}s - "
                f"Score: {outcome.analysis.score} Verdict: {outcome.analysis.verdict.value}"
            )
        else:
            logger.warning(f"⚠️ Analysis degraded after {processing_time:.2f}s: {outcome.error}")
        return outcome
