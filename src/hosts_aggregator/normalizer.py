"""
Domain normalization module.

Reduces one raw domain token, as found in a hosts file or adblock rule, to the
canonical form used as the deduplication key. Normalization is pure and
idempotent: feeding a normalized domain back in returns it unchanged.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Optional

import idna

from .enums import NormalizationErrorCode


MAX_DOMAIN_LENGTH = 253

SCHEME_PATTERN = re.compile(r'^[a-z][a-z0-9+.\-]*://', re.IGNORECASE)

# Anything that may not survive into a hostname once the URL parts are gone
FORBIDDEN_CHARS_PATTERN = re.compile(
    r'[\x00-\x1f\x7f'
    r'\s'
    r'!@#$%^&()+=\[\]{}|\\:;"\'<>,?/`~]'
)

LABEL_PATTERN = re.compile(r'^[a-z0-9_](?:[a-z0-9_\-]{0,61}[a-z0-9_])?$')


@dataclass
class NormalizationError:
    """Structured error information for a rejected token."""

    code: NormalizationErrorCode
    message: str
    details: dict = field(default_factory=dict)


@dataclass
class NormalizationResult:
    """Result of normalizing one token."""

    valid: bool
    normalized: Optional[str]
    error: Optional[NormalizationError]


class DomainNormalizer:
    """
    Canonicalizes domain tokens.

    Handles:
    - trimming, scheme/userinfo/path/query/fragment/port stripping
    - lower-casing and IDNA encoding of non-ASCII labels
    - trailing-dot and leading ``*.`` wildcard stripping
    - optional ``www.`` stripping
    - rejection of IP literals, bare wildcards, single labels and bad labels
    """

    def __init__(self, strip_www: bool = False) -> None:
        self._strip_www = strip_www

    @property
    def strip_www(self) -> bool:
        return self._strip_www

    def normalize(self, token: str) -> Optional[str]:
        """Return the canonical form of ``token`` or None when it is rejected."""
        return self.validate(token).normalized

    def validate(self, token: str) -> NormalizationResult:
        """
        Normalize a token and report why it was rejected, if it was.

        Args:
            token: Raw domain token

        Returns:
            NormalizationResult with the canonical domain or an error
        """
        if token is None or not token.strip():
            return self._reject(NormalizationErrorCode.EMPTY_INPUT, "Domain input is empty", token)

        host = token.strip()

        if self._is_ip_literal(host.strip("[]")):
            return self._reject(NormalizationErrorCode.IP_LITERAL, "IP literals are not domains", token)

        host = SCHEME_PATTERN.sub("", host, count=1)
        for separator in ("/", "?", "#"):
            host = host.split(separator, 1)[0]
        if "@" in host:
            host = host.rsplit("@", 1)[1]

        if host.startswith("["):
            return self._reject(NormalizationErrorCode.IP_LITERAL, "IP literals are not domains", token)
        if host.count(":") == 1:
            host, port = host.split(":", 1)
            if port and not port.isdigit():
                return self._reject(
                    NormalizationErrorCode.FORBIDDEN_CHARS, "Invalid port suffix", token, port=port
                )
        elif host.count(":") > 1:
            code = (
                NormalizationErrorCode.IP_LITERAL
                if self._is_ip_literal(host)
                else NormalizationErrorCode.FORBIDDEN_CHARS
            )
            return self._reject(code, "Unexpected ':' in domain", token)

        host = host.rstrip(".").lower()

        if host.startswith("*."):
            host = host[2:]
        if "*" in host:
            return self._reject(
                NormalizationErrorCode.WILDCARD, "Wildcard without a concrete suffix", token
            )

        forbidden = FORBIDDEN_CHARS_PATTERN.findall(host)
        if forbidden:
            return self._reject(
                NormalizationErrorCode.FORBIDDEN_CHARS,
                "Domain contains forbidden characters",
                token,
                forbidden_chars=forbidden,
            )

        if any(ord(c) > 127 for c in host):
            try:
                host = self._encode_idna(host)
            except (idna.IDNAError, UnicodeError) as e:
                return self._reject(
                    NormalizationErrorCode.IDNA_ERROR, f"IDNA encoding failed: {e}", token
                )

        if not host:
            return self._reject(NormalizationErrorCode.EMPTY_INPUT, "Nothing left after stripping", token)

        if self._is_ip_literal(host):
            return self._reject(NormalizationErrorCode.IP_LITERAL, "IP literals are not domains", token)

        if self._strip_www:
            while host.startswith("www.") and "." in host[4:]:
                host = host[4:]

        labels = host.split(".")
        if len(labels) < 2:
            return self._reject(
                NormalizationErrorCode.INVALID_LABEL, "Domain needs at least two labels", token
            )
        for label in labels:
            if not LABEL_PATTERN.match(label):
                return self._reject(
                    NormalizationErrorCode.INVALID_LABEL,
                    f"Invalid label {label!r}",
                    token,
                    label=label,
                )
        if labels[-1].isdigit():
            # Numeric TLD: a partial IPv4 address rather than a name
            return self._reject(NormalizationErrorCode.IP_LITERAL, "Numeric top-level label", token)
        if len(host) > MAX_DOMAIN_LENGTH:
            return self._reject(
                NormalizationErrorCode.INVALID_LABEL,
                f"Domain longer than {MAX_DOMAIN_LENGTH} characters",
                token,
                length=len(host),
            )

        return NormalizationResult(valid=True, normalized=host, error=None)

    @staticmethod
    def _encode_idna(host: str) -> str:
        """Map with UTS #46, then A-label encode each non-ASCII label."""
        mapped = idna.uts46_remap(host, std3_rules=False, transitional=False)
        labels = []
        for label in mapped.split("."):
            if any(ord(c) > 127 for c in label):
                label = idna.alabel(label).decode("ascii")
            labels.append(label)
        return ".".join(labels)

    @staticmethod
    def _is_ip_literal(value: str) -> bool:
        try:
            ipaddress.ip_address(value)
        except ValueError:
            return False
        return True

    @staticmethod
    def _reject(
        code: NormalizationErrorCode, message: str, token: Optional[str], **details
    ) -> NormalizationResult:
        return NormalizationResult(
            valid=False,
            normalized=None,
            error=NormalizationError(code=code, message=message, details={"raw_input": token, **details}),
        )
