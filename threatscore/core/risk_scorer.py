import time
import logging
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Dict, List, Mapping, Optional

from threatscore.core import heuristics
from threatscore.core.feature_extractor import FeatureRecord
from threatscore.core.signals import (
    EVALUATION_ORDER,
    NETWORK_SIGNALS,
    WEIGHTS_V1,
    SignalKey,
    SignalResult,
    SignalWeights,
    load_enabled_map,
    round_points,
)
from threatscore.schemas import Analysis, Explanation, Verdict

logger = logging.getLogger(__name__)

MAX_SCORE = 100
MALICIOUS_ABOVE = 60
SUSPICIOUS_ABOVE = 30

# Extra wait on top of the provider timeout before a signal is abandoned
TIMEOUT_GRACE_SECONDS = 2.0


def determine_verdict(score: int) -> Verdict:
    """Exactly 30 and exactly 60 fall into the lower band"""
    if score > MALICIOUS_ABOVE:
        return Verdict.MALICIOUS
    if score > SUSPICIOUS_ABOVE:
        return Verdict.SUSPICIOUS
    return Verdict.SAFE


class RiskScorer:
    """
    Runs every enabled signal against a FeatureRecord and folds the results
    into one Analysis.

    Network signals are submitted to a worker pool before the local ones run,
    then all results are collected in evaluation order, so the explanation
    trail never depends on which provider answered first. A signal that
    raises or misses the deadline contributes nothing; the others still
    count.
    """

    def __init__(self, adapters: Optional[Mapping] = None,
                 weights: Mapping = WEIGHTS_V1,
                 provider_timeout: float = 10.0,
                 timeout_grace: float = TIMEOUT_GRACE_SECONDS):
        # Validates the table; a bad one stops startup here
        self.weights = weights if isinstance(weights, SignalWeights) else SignalWeights(weights)
        self.adapters = {SignalKey(k): v for k, v in (adapters or {}).items()}
        unknown = [k.value for k in self.adapters if k not in NETWORK_SIGNALS]
        if unknown:
            raise ValueError(f"No adapter slot for: {', '.join(unknown)}")
        self.signal_timeout = provider_timeout + timeout_grace

    def score(self, record: FeatureRecord, enabled: Optional[Mapping] = None,
              blacklist_predicate: Optional[Callable[[str], bool]] = None) -> Analysis:
        """
        Score one email

        Args:
            record: Extracted features
            enabled: signal key -> bool; missing keys count as enabled
            blacklist_predicate: membership test for addresses and domains

        Returns:
            Analysis with score, verdict and the ordered explanation trail
        """
        enabled_map = load_enabled_map(enabled)
        active = [
            key for key in EVALUATION_ORDER
            if enabled_map[key] and self.weights[key] > 0
        ]
        remote = [key for key in active if key in NETWORK_SIGNALS and key in self.adapters]

        total = 0
        explanations: List[Explanation] = []
        executor = ThreadPoolExecutor(max_workers=len(remote)) if remote else None
        try:
            futures: Dict[SignalKey, Future] = {}
            for key in remote:
                futures[key] = executor.submit(self.adapters[key].evaluate, record, self.weights[key])
            deadline = time.monotonic() + self.signal_timeout

            for key in active:
                if key in futures:
                    result = self._collect(key, futures[key], deadline)
                else:
                    result = self._run_local(key, record, blacklist_predicate)
                result = self._bounded(key, result)
                total += result.points
                explanations.extend(result.explanations)
        finally:
            if executor is not None:
                # Do not block on a provider that is still hanging
                executor.shutdown(wait=False, cancel_futures=True)

        score = min(MAX_SCORE, round_points(total))
        return Analysis(
            score=score,
            verdict=determine_verdict(score),
            explanations=explanations,
            sender_email=record.sender_email,
            sender_name=record.sender_display_name,
            subject=record.subject,
            domain=record.sender_domain,
            originating_ip=record.originating_ip,
        )

    def _run_local(self, key: SignalKey, record: FeatureRecord,
                   blacklist_predicate) -> SignalResult:
        weight = self.weights[key]
        try:
            if key == SignalKey.BLACKLIST:
                if blacklist_predicate is None:
                    return SignalResult.empty()
                return heuristics.check_blacklist(record, blacklist_predicate, weight)
            if key == SignalKey.DISPLAY_NAME_SPOOF:
                return heuristics.check_display_name_spoof(record, weight)
            if key == SignalKey.REPLY_TO_MISMATCH:
                return heuristics.check_reply_to_mismatch(record, weight)
            if key == SignalKey.SUSPICIOUS_LINKS:
                return heuristics.check_suspicious_links(record, weight)
        except Exception as e:
            logger.error(f"❌ Signal {key.value} failed: {e}", exc_info=True)
            return SignalResult.empty()

        # Network signal without a configured adapter
        return SignalResult.empty()

    def _collect(self, key: SignalKey, future: Future, deadline: float) -> SignalResult:
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeout:
            logger.warning(f"⚠️ Signal {key.value} timed out, counted as 0")
        except Exception as e:
            logger.error(f"❌ Signal {key.value} failed: {e}", exc_info=True)
        return SignalResult.empty()

    def _bounded(self, key: SignalKey, result: SignalResult) -> SignalResult:
        weight = self.weights[key]
        if result.points <= weight and all(e.signal == key.value for e in result.explanations):
            return result
        logger.warning(f"⚠️ Signal {key.value} returned an out-of-range result, clamping")
        return SignalResult.from_parts(
            key, weight, [(e.details, e.weight) for e in result.explanations]
        )
