"""
Local heuristic detectors.

Each detector is a pure function of the FeatureRecord (plus, for the
blacklist, a membership predicate supplied by the caller) and returns a
SignalResult. None of them touches the network.
"""

import re
import logging
from typing import Callable, Dict, FrozenSet, List
from urllib.parse import urlparse

from threatscore.core.feature_extractor import FeatureRecord, domain_of
from threatscore.core.signals import SignalKey, SignalResult, round_points

logger = logging.getLogger(__name__)

BlacklistPredicate = Callable[[str], bool]

# Brand name (as it appears in a display name) -> domains allowed to use it.
# Subdomains of a listed domain are also legitimate.
BRAND_DOMAINS: Dict[str, FrozenSet[str]] = {
    'paypal': frozenset({'paypal.com', 'paypal.co.uk', 'paypal.de', 'paypal.fr', 'paypal.it'}),
    'amazon': frozenset({'amazon.com', 'amazon.co.uk', 'amazon.de', 'amazon.fr', 'amazon.in',
                         'amazon.ca', 'amazonses.com', 'amazonaws.com'}),
    'google': frozenset({'google.com', 'gmail.com', 'googlemail.com', 'youtube.com'}),
    'microsoft': frozenset({'microsoft.com', 'office.com', 'office365.com', 'outlook.com',
                            'live.com', 'hotmail.com', 'microsoftonline.com', 'onmicrosoft.com'}),
    'apple': frozenset({'apple.com', 'icloud.com', 'me.com'}),
    'netflix': frozenset({'netflix.com', 'netflix.net'}),
    'dhl': frozenset({'dhl.com', 'dhl.de', 'dhl.co.uk'}),
    'facebook': frozenset({'facebook.com', 'facebookmail.com', 'fb.com', 'meta.com'}),
    'instagram': frozenset({'instagram.com', 'mail.instagram.com'}),
    'linkedin': frozenset({'linkedin.com', 'licdn.com'}),
    'wells fargo': frozenset({'wellsfargo.com', 'wf.com'}),
    'chase': frozenset({'chase.com', 'jpmorganchase.com', 'jpmorgan.com'}),
    'dropbox': frozenset({'dropbox.com', 'dropboxmail.com'}),
    'spotify': frozenset({'spotify.com'}),
}

URL_SHORTENERS = frozenset({
    'bit.ly',
    'tinyurl.com',
    't.co',
    'goo.gl',
    'is.gd',
    'buff.ly',
    'ow.ly',
    'rebrand.ly',
})

MAX_URL_LENGTH = 100
FLAGGED_URL_CAP = 2

_IP_HOST_RE = re.compile(r'^https?://\d{1,3}(?:\.\d{1,3}){3}(?=[/:?#]|$)', re.IGNORECASE)
_ANGLE_ADDRESS_RE = re.compile(r'<([^<>]*)>')


def _is_same_or_subdomain(domain: str, parent: str) -> bool:
    return domain == parent or domain.endswith('.' + parent)


# ===== Blacklist =====

def check_blacklist(record: FeatureRecord, is_member: BlacklistPredicate,
                    weight: int) -> SignalResult:
    """Full weight when the sender address or its domain is blacklisted"""
    sender = record.sender_email
    if not sender:
        return SignalResult.empty()

    if is_member(sender):
        return SignalResult.full(
            SignalKey.BLACKLIST, weight, f"Sender {sender} is on your blacklist"
        )

    domain = record.sender_domain
    if domain and is_member(domain):
        return SignalResult.full(
            SignalKey.BLACKLIST, weight, f"Sender domain {domain} is on your blacklist"
        )
    return SignalResult.empty()


# ===== Display name spoofing =====

def check_display_name_spoof(record: FeatureRecord, weight: int) -> SignalResult:
    """
    Display name claims a brand while the sending domain is not one of that
    brand's domains. Only the first matching brand counts.
    """
    display_name = record.sender_display_name.lower()
    if not display_name:
        return SignalResult.empty()

    domain = record.sender_domain
    for brand, legit_domains in BRAND_DOMAINS.items():
        if brand not in display_name:
            continue
        if any(_is_same_or_subdomain(domain, legit) for legit in legit_domains):
            continue
        return SignalResult.full(
            SignalKey.DISPLAY_NAME_SPOOF, weight,
            f"Display name \"{record.sender_display_name}\" impersonates "
            f"{brand.title()} but was sent from {domain or 'an unknown domain'}"
        )
    return SignalResult.empty()


# ===== Reply-To mismatch =====

def _reply_to_address(value: str) -> str:
    match = _ANGLE_ADDRESS_RE.search(value)
    address = match.group(1) if match else value
    return address.strip().lower()


def check_reply_to_mismatch(record: FeatureRecord, weight: int) -> SignalResult:
    """Replies would go to a different domain than the one that sent the mail"""
    value = record.header('Reply-To')
    if not value:
        return SignalResult.empty()

    reply_domain = domain_of(_reply_to_address(value))
    sender_domain = record.sender_domain
    if not reply_domain or not sender_domain or reply_domain == sender_domain:
        return SignalResult.empty()

    return SignalResult.full(
        SignalKey.REPLY_TO_MISMATCH, weight,
        f"Reply-To goes to {reply_domain}, but the sender is {sender_domain}"
    )


# ===== Suspicious links =====

def _url_host(url: str) -> str:
    try:
        return (urlparse(url).hostname or '').lower()
    except ValueError:
        return ''


def link_flags(url: str) -> List[str]:
    """Reasons a single URL looks suspicious (empty list when it does not)"""
    reasons = []
    if _IP_HOST_RE.match(url):
        reasons.append("raw IP address")
    if len(url) > MAX_URL_LENGTH:
        reasons.append(f"over {MAX_URL_LENGTH} characters")
    host = _url_host(url)
    if host and any(_is_same_or_subdomain(host, s) for s in URL_SHORTENERS):
        reasons.append(f"shortener {host}")
    return reasons


def check_suspicious_links(record: FeatureRecord, weight: int) -> SignalResult:
    """
    Half the weight for one flagged URL, the full weight for two or more.
    """
    flagged = []
    for url in record.urls:
        reasons = link_flags(url)
        if reasons:
            flagged.append((url, reasons))

    if not flagged:
        return SignalResult.empty()

    points = round_points(weight * min(len(flagged), FLAGGED_URL_CAP) / FLAGGED_URL_CAP)
    shown = '; '.join(
        f"{url[:60]}{'...' if len(url) > 60 else ''} ({', '.join(reasons)})"
        for url, reasons in flagged[:3]
    )
    details = f"{len(flagged)} suspicious link(s): {shown}"
    return SignalResult.from_parts(SignalKey.SUSPICIOUS_LINKS, weight, [(details, points)])
