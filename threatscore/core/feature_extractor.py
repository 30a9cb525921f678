import re
import ipaddress
import logging
from dataclasses import dataclass
from email import policy
from email.parser import BytesParser
from typing import List, Optional, Tuple, Union
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureRecord:
    """Immutable snapshot of one email, built once per analysis"""
    sender_email: str = ""
    sender_display_name: str = ""
    subject: str = ""
    body_text: str = ""
    raw_header_block: str = ""
    urls: Tuple[str, ...] = ()
    originating_ip: Optional[str] = None

    @property
    def sender_domain(self) -> str:
        return domain_of(self.sender_email)

    def header(self, name: str) -> Optional[str]:
        """First value of header `name` in the raw block, case-insensitive"""
        prefix = name.lower() + ':'
        for line in unfold_headers(self.raw_header_block):
            if line.lower().startswith(prefix):
                return line[len(prefix):].strip()
        return None


# ===== Module helpers =====

def domain_of(address: str) -> str:
    """Domain part of an email address; empty when there is no '@'"""
    if not address or '@' not in address:
        return ''
    return address.rsplit('@', 1)[1].strip().strip('>').lower()


def unfold_headers(header_block: str) -> List[str]:
    """
    Split a raw header block into logical header lines.

    Continuation lines (leading space or tab) are folded onto the previous
    logical line.
    """
    lines: List[str] = []
    for physical in re.split(r'\r?\n', header_block or ''):
        if not physical:
            continue
        if physical[0] in ' \t' and lines:
            lines[-1] = lines[-1] + ' ' + physical.strip()
        else:
            lines.append(physical.rstrip())
    return lines


class FeatureExtractor:
    """
    Turns a raw RFC 5322 message into a FeatureRecord.

    Every field is extracted independently: a field that cannot be parsed is
    left empty and the rest of the record is still produced.
    """

    def __init__(self):
        # Scheme followed by anything that is not whitespace, a bracket or a quote
        self.url_pattern = re.compile(r'https?://[^\s<>\[\]"\']+', re.IGNORECASE)
        self.url_trailing_punctuation = '.,;:!?)'

        # "Display Name" <address>
        self.angle_address_pattern = re.compile(r'^(.*?)<([^<>]*)>')

        # Dotted quad wrapped in [...] or (...)
        self.wrapped_ipv4_pattern = re.compile(
            r'[\[(]\s*(\d{1,3}(?:\.\d{1,3}){3})\s*[\])]'
        )

        self.header_split_pattern = re.compile(r'\r?\n\r?\n')

        self.non_public_networks = [
            ipaddress.ip_network('10.0.0.0/8'),
            ipaddress.ip_network('172.16.0.0/12'),
            ipaddress.ip_network('192.168.0.0/16'),
            ipaddress.ip_network('127.0.0.0/8'),
            ipaddress.ip_network('0.0.0.0/8'),
        ]

    def extract(self, raw_message: Union[str, bytes]) -> FeatureRecord:
        """
        Build a FeatureRecord from a raw message

        Args:
            raw_message: Full message (headers + body) as text or bytes

        Returns:
            FeatureRecord; fields that could not be extracted are empty
        """
        if raw_message is None:
            raw_message = ''
        if isinstance(raw_message, bytes):
            raw_bytes = raw_message
            raw_text = raw_message.decode('utf-8', errors='replace')
        else:
            raw_text = str(raw_message)
            raw_bytes = raw_text.encode('utf-8', errors='replace')

        header_block = self._split_header_block(raw_text)

        msg = None
        try:
            msg = BytesParser(policy=policy.default).parsebytes(raw_bytes)
        except Exception as e:
            logger.warning(f"⚠️ Failed to parse email, falling back to raw headers: {e}")

        from_value = self._header_value(msg, header_block, 'From')
        sender_email, display_name = self.parse_sender(from_value)

        subject = self._header_value(msg, header_block, 'Subject')
        body_text = self._get_body_text(msg, raw_text)

        try:
            urls = tuple(self.extract_urls(body_text))
        except Exception as e:
            logger.warning(f"⚠️ URL extraction failed: {e}")
            urls = ()

        try:
            originating_ip = self.extract_originating_ip(header_block)
        except Exception as e:
            logger.warning(f"⚠️ Originating IP extraction failed: {e}")
            originating_ip = None

        return FeatureRecord(
            sender_email=sender_email,
            sender_display_name=display_name,
            subject=subject,
            body_text=body_text,
            raw_header_block=header_block,
            urls=urls,
            originating_ip=originating_ip,
        )

    # ===== Sender =====

    def parse_sender(self, from_value: str) -> Tuple[str, str]:
        """
        Split a From header value into (email, display name)

        `"PayPal Security" <Alert@PayPal.com>` -> ('alert@paypal.com', 'PayPal Security')
        `alert@paypal.com` -> ('alert@paypal.com', '')
        """
        value = (from_value or '').strip()
        match = self.angle_address_pattern.match(value)
        if match:
            email = match.group(2).strip().lower()
            name = match.group(1).strip()
            for quote in ('"', "'"):
                if len(name) >= 2 and name.startswith(quote) and name.endswith(quote):
                    name = name[1:-1].strip()
            return email, name
        return value.lower(), ''

    # ===== URLs =====

    def extract_urls(self, text: str) -> List[str]:
        """HTTP(S) URLs in first-seen order; duplicates are kept"""
        if not text:
            return []
        urls = []
        for match in self.url_pattern.finditer(text):
            url = match.group(0).rstrip(self.url_trailing_punctuation)
            if url:
                urls.append(url)
        return urls

    # ===== Originating IP =====

    def extract_originating_ip(self, header_block: str) -> Optional[str]:
        """
        Best-effort public IP of the first relay in the Received chain.

        Each relay prepends its own Received line, so the oldest hop is the
        last one in the block. Lines are walked bottom-up and the first
        public dotted quad wins. A forged Received line can still poison
        this result.
        """
        received = [
            line for line in unfold_headers(header_block)
            if line.lower().startswith('received:')
        ]

        for line in reversed(received):
            for candidate in self.wrapped_ipv4_pattern.findall(line):
                try:
                    ip = ipaddress.IPv4Address(candidate)
                except ValueError:
                    continue
                if not self._is_non_public(ip):
                    return str(ip)
        return None

    def _is_non_public(self, ip: ipaddress.IPv4Address) -> bool:
        return any(ip in network for network in self.non_public_networks)

    # ===== Headers / body =====

    def _split_header_block(self, raw_text: str) -> str:
        parts = self.header_split_pattern.split(raw_text, maxsplit=1)
        return parts[0] if parts else ''

    def _header_value(self, msg, header_block: str, name: str) -> str:
        """Decoded header value, falling back to the raw unfolded line"""
        if msg is not None:
            try:
                value = msg.get(name)
                if value is not None:
                    return str(value).strip()
            except Exception as e:
                logger.warning(f"⚠️ Could not decode {name} header: {e}")

        prefix = name.lower() + ':'
        for line in unfold_headers(header_block):
            if line.lower().startswith(prefix):
                return line[len(prefix):].strip()
        return ''

    def _get_body_text(self, msg, raw_text: str) -> str:
        """
        First text/plain part; HTML is converted to text only when no plain
        part exists so the same links are not counted twice.
        """
        if msg is None:
            parts = self.header_split_pattern.split(raw_text, maxsplit=1)
            return parts[1] if len(parts) > 1 else ''

        plain_parts = []
        html_parts = []
        for part in msg.walk():
            if part.is_multipart():
                continue
            if part.get_content_disposition() == 'attachment':
                continue

            content_type = part.get_content_type()
            if content_type not in ('text/plain', 'text/html'):
                continue

            content = self._part_text(part)
            if content is None:
                continue
            if content_type == 'text/plain':
                plain_parts.append(content)
            else:
                html_parts.append(content)

        if plain_parts:
            return plain_parts[0]
        if html_parts:
            return self._extract_text_from_html(html_parts[0])
        return ''

    def _part_text(self, part) -> Optional[str]:
        try:
            return part.get_content()
        except Exception as e:
            logger.warning(f"⚠️ Error decoding body part, using raw payload: {e}")
        try:
            payload = part.get_payload(decode=True)
            if isinstance(payload, bytes):
                return payload.decode('utf-8', errors='replace')
        except Exception as e:
            logger.warning(f"⚠️ Body part is unreadable: {e}")
        return None

    def _extract_text_from_html(self, html: str) -> str:
        """
        Extract text from HTML, keeping link targets as plain text so they
        reach URL extraction
        """
        try:
            soup = BeautifulSoup(html, 'lxml')
            for tag in soup.find_all('a'):
                if tag.get('href'):
                    tag.string = f" {tag.get('href')} "
            text = soup.get_text(separator=' ')
            return re.sub(r'\s+', ' ', text).strip()
        except Exception as e:
            logger.warning(f"⚠️ HTML parsing error: {e}")
            return re.sub(r'<[^>]+>', ' ', html)


_default_extractor = FeatureExtractor()


def extract(raw_message: Union[str, bytes]) -> FeatureRecord:
    """Parse a raw message into a FeatureRecord"""
    return _default_extractor.extract(raw_message)
