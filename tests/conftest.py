import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest


# Ensure the project root is on sys.path so tests can import `threatscore.*`
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


from threatscore.core.feature_extractor import FeatureRecord
from threatscore.core.signals import SignalKey, SignalResult


class StaticCredentials:
    def __init__(self, **keys):
        self.keys = keys

    def get_key(self, provider_name):
        return self.keys.get(provider_name)


class StubAdapter:
    """Stands in for a reputation adapter with a canned answer"""

    def __init__(self, result=None, error=None, release=None):
        self.result = result or SignalResult.empty()
        self.error = error
        self.release = release
        self.calls = 0

    def evaluate(self, record, weight):
        self.calls += 1
        if self.release is not None:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        return self.result


def make_response(status=200, payload=None, json_error=False):
    response = MagicMock()
    response.status_code = status
    if json_error:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = {} if payload is None else payload
    return response


def points(key: SignalKey, pts: int) -> SignalResult:
    return SignalResult.from_parts(key, 100, [(f"{key.value} fired", pts)])


@pytest.fixture
def credentials():
    return StaticCredentials(
        virustotal="vt-key",
        abuseipdb="abuse-key",
        ipqualityscore="ipqs-key",
        safebrowsing="gsb-key",
        openai="sk-test",
    )


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def phishing_record():
    return FeatureRecord(
        sender_email="alerts@paypal-verify.ru",
        sender_display_name="PayPal Security",
        subject="Your account is limited",
        body_text="Verify now: http://bit.ly/a and http://tinyurl.com/b",
        raw_header_block=(
            "From: PayPal Security <alerts@paypal-verify.ru>\n"
            "Reply-To: <collect@other-domain.net>\n"
            "Subject: Your account is limited"
        ),
        urls=("http://bit.ly/a", "http://tinyurl.com/b"),
        originating_ip="203.0.113.7",
    )
