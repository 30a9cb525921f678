"""
Signal catalogue: keys, weights, per-signal results and the enable map.

Weights are process-wide, read-only configuration. A different weight table
means building a new `SignalWeights` object; nothing mutates one in place, so
concurrent analyses always see a consistent table.
"""

import math
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Tuple

from threatscore.core.errors import ConfigurationError, UnknownSignalError
from threatscore.schemas import Explanation

logger = logging.getLogger(__name__)


class SignalKey(str, Enum):
    # Declaration order is the evaluation order of the aggregator
    BLACKLIST = "blacklist"
    DISPLAY_NAME_SPOOF = "display_name_spoof"
    REPLY_TO_MISMATCH = "reply_to_mismatch"
    CONTENT_INTENT = "content_intent"
    SUSPICIOUS_LINKS = "suspicious_links"
    DOMAIN_REPUTATION = "domain_reputation"
    IP_REPUTATION = "ip_reputation"
    EMAIL_FRAUD = "email_fraud"
    URL_BLACKLIST = "url_blacklist"


EVALUATION_ORDER: Tuple[SignalKey, ...] = tuple(SignalKey)

# Signals backed by an external provider
NETWORK_SIGNALS = frozenset({
    SignalKey.CONTENT_INTENT,
    SignalKey.DOMAIN_REPUTATION,
    SignalKey.IP_REPUTATION,
    SignalKey.EMAIL_FRAUD,
    SignalKey.URL_BLACKLIST,
})


class SignalWeights(Mapping):
    """Immutable, validated weight table (SignalKey -> max points)"""

    def __init__(self, weights: Mapping, version: str = "custom"):
        table = {}
        for key, value in weights.items():
            try:
                table[SignalKey(key)] = value
            except ValueError:
                raise ConfigurationError(f"Unknown signal in weight table: {key!r}")

        missing = [k.value for k in SignalKey if k not in table]
        if missing:
            raise ConfigurationError(f"Weight table is missing: {', '.join(missing)}")

        for key, value in table.items():
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ConfigurationError(
                    f"Weight for {key.value} must be a non-negative integer, got {value!r}"
                )

        total = sum(table.values())
        if total != 100:
            raise ConfigurationError(f"Signal weights must sum to 100, got {total}")

        self._table = MappingProxyType(table)
        self.version = version

    def __getitem__(self, key) -> int:
        return self._table[SignalKey(key)]

    def __iter__(self):
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def as_dict(self) -> Dict[str, int]:
        return {key.value: value for key, value in self._table.items()}

    def __repr__(self) -> str:
        return f"SignalWeights(version={self.version!r}, {self.as_dict()!r})"


WEIGHTS_V1 = SignalWeights({
    SignalKey.BLACKLIST: 20,
    SignalKey.DISPLAY_NAME_SPOOF: 14,
    SignalKey.REPLY_TO_MISMATCH: 10,
    SignalKey.CONTENT_INTENT: 10,
    SignalKey.SUSPICIOUS_LINKS: 8,
    SignalKey.DOMAIN_REPUTATION: 15,
    SignalKey.IP_REPUTATION: 12,
    SignalKey.EMAIL_FRAUD: 8,
    SignalKey.URL_BLACKLIST: 3,
}, version="v1")


@dataclass(frozen=True)
class Signal:
    name: SignalKey
    weight: int
    enabled: bool = True


@dataclass(frozen=True)
class SignalResult:
    points: int = 0
    explanations: Tuple[Explanation, ...] = field(default_factory=tuple)

    @classmethod
    def empty(cls) -> "SignalResult":
        return cls()

    @classmethod
    def full(cls, key: SignalKey, weight: int, details: str) -> "SignalResult":
        """Award the whole weight of a binary signal with one explanation"""
        if weight <= 0:
            return cls()
        return cls(weight, (Explanation(signal=key.value, details=details, weight=weight),))

    @classmethod
    def from_parts(cls, key: SignalKey, weight: int,
                   parts: List[Tuple[str, int]]) -> "SignalResult":
        """
        Build a result from (details, points) pairs.

        Points are clamped so the running total never exceeds `weight`; parts
        left with zero points are dropped from the trail.
        """
        explanations = []
        remaining = max(weight, 0)
        for details, points in parts:
            points = min(max(int(points), 0), remaining)
            if points <= 0:
                continue
            remaining -= points
            explanations.append(Explanation(signal=key.value, details=details, weight=points))
        return cls(sum(e.weight for e in explanations), tuple(explanations))


def round_points(value: float) -> int:
    """Round half up; `round()` would send 2.5 to 2"""
    return int(math.floor(value + 0.5))


def apportion(total: int, partials: List[float]) -> List[int]:
    """
    Split an integer `total` across partial contributions in proportion to
    their raw sizes (largest remainder). Ties go to the earlier partial.
    """
    raw_sum = sum(partials)
    if total <= 0 or raw_sum <= 0:
        return [0] * len(partials)

    scaled = [p * total / raw_sum for p in partials]
    shares = [int(math.floor(s)) for s in scaled]
    leftover = total - sum(shares)
    by_remainder = sorted(range(len(scaled)), key=lambda i: (-(scaled[i] - shares[i]), i))
    for i in by_remainder[:leftover]:
        shares[i] += 1
    return shares


def validate_signal_keys(keys: Iterable[str]) -> None:
    known = {k.value for k in SignalKey}
    unknown = {str(k) for k in keys} - known
    if unknown:
        raise UnknownSignalError(unknown)


def load_enabled_map(raw: Optional[Mapping] = None) -> Dict[SignalKey, bool]:
    """
    Normalize a stored key -> bool map onto the closed set of signal keys.

    Missing keys default to enabled. Unknown keys are reported and dropped.
    """
    enabled = {key: True for key in SignalKey}
    for name, value in (raw or {}).items():
        try:
            key = SignalKey(name)
        except ValueError:
            logger.warning(f"⚠️ Ignoring unknown signal key in settings: {name!r}")
            continue
        enabled[key] = bool(value)
    return enabled


def build_signals(weights: SignalWeights,
                  enabled: Optional[Mapping] = None) -> List[Signal]:
    enabled_map = load_enabled_map(enabled)
    return [Signal(key, weights[key], enabled_map[key]) for key in EVALUATION_ORDER]
