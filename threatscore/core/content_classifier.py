"""
Content-intent signal: asks a chat-completion model how manipulative the
message text is.

Model replies are parsed in two stages. The strict stage accepts a JSON
object, optionally wrapped in a markdown fence. The fallback stage runs only
when that fails (typically a reply cut off by the token limit) and
guarantees nothing beyond the integer score; reasoning is recovered only if
its string was completed. No score means no signal.
"""

import json
import re
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from openai import APITimeoutError, OpenAI, OpenAIError

from threatscore.core.errors import ProviderError
from threatscore.core.feature_extractor import FeatureRecord
from threatscore.core.signals import SignalKey, SignalResult, round_points
from threatscore.core.threat_intel import ReputationAdapter

logger = logging.getLogger(__name__)

SUBJECT_LIMIT = 200
BODY_LIMIT = 3000
MAX_SCORE = 10

SYSTEM_PROMPT = (
    "You are an email security analyst. You rate how likely an email is a "
    "phishing, fraud or social-engineering attempt. "
    "Always respond with STRICT JSON only. No markdown, no prose."
)

USER_PROMPT = """Analyze the following email for manipulative or fraudulent intent.

Subject: {subject}

Body:
{body}

Return a JSON object with exactly these keys:
- "score": integer from 0 (clearly benign) to 10 (clearly malicious)
- "reasoning": one sentence explaining the score
- "tactics": list of detected tactics, e.g. ["urgency", "credential request", "impersonation"]
"""

_FENCE_RE = re.compile(r'^\s*```(?:json)?\s*(.*?)\s*(?:```\s*)?$', re.DOTALL | re.IGNORECASE)
_SCORE_RE = re.compile(r'"(?:suspicion_)?score"\s*:\s*"?(\d+(?:\.\d+)?)')
_REASONING_RE = re.compile(r'"reasoning"\s*:\s*"((?:[^"\\]|\\.)*)"')


@dataclass(frozen=True)
class ClassifierVerdict:
    score: int
    reasoning: str = ""
    tactics: Tuple[str, ...] = ()
    # True when only the fallback scan could read the reply
    partial: bool = False


def _clamp_score(value) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean score")
    return max(0, min(MAX_SCORE, int(round(float(value)))))


def _strip_fence(text: str) -> str:
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


def _parse_strict(text: str) -> Optional[ClassifierVerdict]:
    body = _strip_fence(text).strip()
    start, end = body.find('{'), body.rfind('}')
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(body[start:end + 1])
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    raw_score = data.get('score', data.get('suspicion_score'))
    if raw_score is None:
        return None
    try:
        score = _clamp_score(raw_score)
    except (TypeError, ValueError):
        return None

    tactics = data.get('tactics') or []
    if not isinstance(tactics, list):
        tactics = [tactics]
    return ClassifierVerdict(
        score=score,
        reasoning=str(data.get('reasoning') or '').strip(),
        tactics=tuple(str(t) for t in tactics if t),
    )


def _parse_fallback(text: str) -> Optional[ClassifierVerdict]:
    score_match = _SCORE_RE.search(text)
    if not score_match:
        return None
    try:
        score = _clamp_score(score_match.group(1))
    except ValueError:
        return None

    reasoning = ''
    reasoning_match = _REASONING_RE.search(text)
    if reasoning_match:
        try:
            reasoning = json.loads(f'"{reasoning_match.group(1)}"')
        except ValueError:
            reasoning = reasoning_match.group(1)
    return ClassifierVerdict(score=score, reasoning=reasoning.strip(), partial=True)


def parse_classifier_response(text: Optional[str]) -> Optional[ClassifierVerdict]:
    """Strict JSON first, then the score-only fallback; None if neither works"""
    if not text or not text.strip():
        return None
    return _parse_strict(text) or _parse_fallback(text)


class ContentIntentAdapter(ReputationAdapter):
    key = SignalKey.CONTENT_INTENT
    provider = 'openai'

    def __init__(self, credentials, model: str = 'gpt-4o-mini',
                 base_url: Optional[str] = None, client_factory=OpenAI, **kwargs):
        super().__init__(credentials, **kwargs)
        self.model = model
        self.base_url = base_url
        self.client_factory = client_factory
        self._clients = {}

    def _client(self, api_key: str):
        with self._client_lock:
            client = self._clients.get(api_key)
            if client is None:
                options = {'api_key': api_key, 'timeout': self.timeout, 'max_retries': 0}
                if self.base_url:
                    options['base_url'] = self.base_url
                client = self.client_factory(**options)
                self._clients[api_key] = client
            return client

    def lookup(self, target: Tuple[str, str], api_key: str) -> Optional[str]:
        """
        Send (subject, body) to the model

        Returns:
            Raw reply text, or None when the call failed
        """
        subject, body = target
        if self.rate_limiter is not None and not self.rate_limiter.try_acquire():
            logger.warning(f"⚠️ {self.provider} rate ceiling reached, call skipped")
            return None

        prompt = USER_PROMPT.format(subject=subject[:SUBJECT_LIMIT], body=body[:BODY_LIMIT])
        try:
            response = self._client(api_key).chat.completions.create(
                model=self.model,
                messages=[
                    {'role': 'system', 'content': SYSTEM_PROMPT},
                    {'role': 'user', 'content': prompt},
                ],
                temperature=0,
                max_tokens=300,
            )
        except APITimeoutError:
            logger.warning(f"⚠️ {self.provider} request timeout")
            return None
        except OpenAIError as e:
            logger.warning(f"⚠️ {self.provider} request failed: {e}")
            return None

        try:
            return response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            raise ProviderError("reply has no message content")

    def _evaluate(self, record: FeatureRecord, weight: int, api_key: str) -> SignalResult:
        if not record.subject and not record.body_text:
            return SignalResult.empty()

        reply = self.lookup((record.subject or '', record.body_text or ''), api_key)
        if reply is None:
            return SignalResult.empty()

        verdict = parse_classifier_response(reply)
        if verdict is None:
            logger.warning(f"⚠️ {self.provider} reply could not be parsed: {reply[:120]!r}")
            return SignalResult.empty()
        if verdict.partial:
            logger.info(f"{self.provider} reply was truncated, recovered score {verdict.score}")

        points = round_points(weight * verdict.score / MAX_SCORE)
        details = f"AI content analysis rated this email {verdict.score}/{MAX_SCORE}"
        if verdict.reasoning:
            details += f": {verdict.reasoning}"
        if verdict.tactics:
            details += f" (tactics: {', '.join(verdict.tactics)})"
        return SignalResult.from_parts(self.key, weight, [(details, points)])
