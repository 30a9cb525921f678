"""
In-process implementations of the collaborators the scoring core talks to:
credentials, the per-user blacklist, the signal on/off settings and the
analysis history.

Each store guards its own state with a lock, so concurrent analyses can
share one instance.
"""

import logging
from collections import deque
from threading import Lock
from typing import Dict, List, Mapping, Optional

from threatscore.config import Settings
from threatscore.core.signals import SignalKey, load_enabled_map, validate_signal_keys
from threatscore.schemas import Analysis

logger = logging.getLogger(__name__)


class SettingsCredentialProvider:
    """Looks provider API keys up in the application Settings"""

    FIELDS = {
        'virustotal': 'VIRUSTOTAL_API_KEY',
        'abuseipdb': 'ABUSEIPDB_API_KEY',
        'ipqualityscore': 'IPQS_API_KEY',
        'safebrowsing': 'SAFE_BROWSING_API_KEY',
        'openai': 'OPENAI_API_KEY',
    }

    def __init__(self, settings: Settings):
        self.settings = settings

    def get_key(self, provider_name: str) -> Optional[str]:
        field = self.FIELDS.get(provider_name)
        if field is None:
            return None
        value = getattr(self.settings, field, None)
        return value or None


class BlacklistStore:
    """Blocked senders: full addresses or bare domains, lower-cased"""

    def __init__(self, entries: Optional[List[str]] = None):
        self._entries: Dict[str, None] = {}
        self._lock = Lock()
        for entry in entries or []:
            self.add(entry)

    @staticmethod
    def _normalize(entry: str) -> str:
        return (entry or '').strip().lower()

    def is_member(self, email_or_domain: str) -> bool:
        key = self._normalize(email_or_domain)
        if not key:
            return False
        with self._lock:
            return key in self._entries

    def add(self, entry: str) -> bool:
        """Returns False when the entry was empty or already present"""
        key = self._normalize(entry)
        if not key:
            return False
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = None
        logger.info(f"✓ Blacklisted {key}")
        return True

    def remove(self, entry: str) -> bool:
        key = self._normalize(entry)
        with self._lock:
            if key not in self._entries:
                return False
            del self._entries[key]
        logger.info(f"✓ Removed {key} from blacklist")
        return True

    def list(self) -> List[str]:
        with self._lock:
            return list(self._entries)


class SignalSettingsStore:
    """Per-signal on/off switches; anything never set is on"""

    def __init__(self, initial: Optional[Mapping] = None):
        self._lock = Lock()
        self._values: Dict[SignalKey, bool] = {}
        if initial:
            self.update(initial)

    def get_enabled_map(self) -> Dict[SignalKey, bool]:
        with self._lock:
            return load_enabled_map(self._values)

    def update(self, changes: Mapping) -> Dict[SignalKey, bool]:
        """
        Apply a partial key -> bool map

        Raises:
            UnknownSignalError: if any key is not a known signal
        """
        validate_signal_keys(changes.keys())
        with self._lock:
            for name, value in changes.items():
                self._values[SignalKey(name)] = bool(value)
            return load_enabled_map(self._values)


class HistorySink:
    """Most recent analyses, newest first; the oldest drop off silently"""

    def __init__(self, limit: int = 20):
        self._entries = deque(maxlen=limit)
        self._lock = Lock()

    def append(self, analysis: Analysis) -> None:
        with self._lock:
            self._entries.appendleft(analysis)

    def list(self) -> List[Analysis]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
