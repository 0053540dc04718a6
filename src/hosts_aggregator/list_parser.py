"""
List parsing module.

Turns the raw body of a source into a lazy, restartable sequence of RawEntry
records. Understands hosts-file syntax, bare domain lists, Adblock Plus network
rules (``||domain^``, ``@@||domain^``) and cosmetic rules (``owner##selector``).
Lines that cannot be understood are counted and skipped, never fatal.
"""

import io
import ipaddress
import re
from dataclasses import dataclass, field
from typing import Iterator, Union

from .enums import EntryType, ListFormat
from .exceptions import ParseError
from .models import RawEntry


# Names every stock hosts file carries; never worth blocking
BOILERPLATE_NAMES = frozenset({
    'localhost', 'localhost.localdomain', 'local', 'broadcasthost',
    'ip6-localhost', 'ip6-loopback', 'ip6-localnet', 'ip6-mcastprefix',
    'ip6-allnodes', 'ip6-allrouters', 'ip6-allhosts', '0.0.0.0',
})

# owner1,owner2##selector and the #?# / #$# extended syntaxes
COSMETIC_PATTERN = re.compile(r'^(?P<owners>[^#\s]*?)(?P<sep>#@?[?$]?#)(?P<selector>.+)$')

# Characters that only appear in adblock rules, never in hosts lines
ADBLOCK_SPECIAL = re.compile(r'[|^$/]')

MAX_RECORDED_ERRORS = 20
FORMAT_DETECTION_LINES = 100


@dataclass
class ParseStats:
    """Counters for one iteration over a list."""

    lines: int = 0
    entries: int = 0
    blank: int = 0
    comments: int = 0
    skipped: int = 0  # understood but intentionally ignored
    malformed: int = 0
    errors: list[ParseError] = field(default_factory=list)

    def record_malformed(self, line_number: int, line: str, reason: str) -> None:
        self.malformed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append(ParseError(
                code="malformed_line",
                message=reason,
                details={"line_number": line_number, "raw_line": line[:200]},
            ))


@dataclass
class FormatDetection:
    """Outcome of sniffing the syntax family of a list."""

    detected_format: ListFormat
    confidence: float
    total_lines_analyzed: int
    total_pattern_lines: int
    adblock_pattern_count: int
    standard_pattern_count: int
    element_hiding_count: int
    allow_rule_count: int
    adblock_confidence: float
    standard_confidence: float

    @property
    def recommendation(self) -> str:
        if self.confidence >= 60:
            return (
                f"Format detected as {self.detected_format.value} "
                f"with {round(self.confidence)}% confidence"
            )
        return "Low confidence - format could not be reliably detected"


class ParseRun:
    """
    Iterable over the entries of one list body.

    Every call to ``iter()`` starts again from the first line and resets
    ``stats``; nothing is materialized up front.
    """

    def __init__(self, parser: "ListParser", text: str) -> None:
        self._parser = parser
        self._text = text
        self.stats = ParseStats()

    @property
    def line_count(self) -> int:
        return self._text.count("\n") + (1 if self._text and not self._text.endswith("\n") else 0)

    def __iter__(self) -> Iterator[RawEntry]:
        self.stats = ParseStats()
        stats = self.stats
        for line_number, line in enumerate(io.StringIO(self._text, newline=None), start=1):
            stats.lines += 1
            for entry in self._parser.parse_line(line, line_number, stats):
                stats.entries += 1
                yield entry


class ListParser:
    """Parser for hosts files, domain lists and Adblock Plus filter lists."""

    def parse(self, content: Union[bytes, str]) -> ParseRun:
        """
        Parse a list body.

        Args:
            content: Raw bytes (decoded as UTF-8, invalid sequences replaced) or text

        Returns:
            A restartable iterable of RawEntry with counters in ``.stats``
        """
        return ParseRun(self, self.decode(content))

    @staticmethod
    def decode(content: Union[bytes, str]) -> str:
        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        return content.lstrip("\ufeff")

    def parse_line(self, raw_line: str, line_number: int, stats: ParseStats) -> list[RawEntry]:
        """Parse one line, updating ``stats`` for anything that is not an entry."""
        line = raw_line.strip()

        if not line:
            stats.blank += 1
            return []
        if line.startswith("!") or line.startswith("["):
            stats.comments += 1
            return []

        cosmetic = COSMETIC_PATTERN.match(line)
        if cosmetic:
            return self._parse_cosmetic(cosmetic, line, line_number, stats)

        if line.startswith("#"):
            stats.comments += 1
            return []

        if line.startswith("@@") or line.startswith("||"):
            return self._parse_network_rule(line, line_number, stats)

        return self._parse_hosts_line(line, line_number, stats)

    def _parse_cosmetic(
        self, match: re.Match, line: str, line_number: int, stats: ParseStats
    ) -> list[RawEntry]:
        # Exceptions (#@#) un-hide elements; generic rules have no owner domain
        if "@" in match.group("sep") or not match.group("owners"):
            stats.skipped += 1
            return []

        entries = []
        for owner in match.group("owners").split(","):
            owner = owner.strip()
            if not owner or owner.startswith("~"):
                continue
            entries.append(RawEntry(
                token=owner,
                entry_type=EntryType.ELEMENT,
                line_number=line_number,
                raw_line=line,
                comment=match.group("selector"),
            ))
        if not entries:
            stats.skipped += 1
        return entries

    def _parse_network_rule(self, line: str, line_number: int, stats: ParseStats) -> list[RawEntry]:
        entry_type = EntryType.BLOCK
        body = line
        if body.startswith("@@"):
            entry_type = EntryType.ALLOW
            body = body[2:]

        if not body.startswith("||"):
            # @@|http://... and similar URL-anchored exceptions
            stats.skipped += 1
            return []
        body = body[2:]

        options = None
        if "$" in body:
            body, options = body.split("$", 1)

        if body.endswith("^|"):
            body = body[:-1]
        if not body.endswith("^"):
            if "/" in body:
                stats.skipped += 1
            else:
                stats.record_malformed(line_number, line, "Network rule is missing its '^' terminator")
            return []
        body = body[:-1]

        if "/" in body or "^" in body or "|" in body:
            # Path-specific rules cannot be expressed in a hosts file
            stats.skipped += 1
            return []

        if body.startswith("*") and not body.startswith("*."):
            body = body[1:]
        if not body:
            stats.record_malformed(line_number, line, "Network rule has no domain")
            return []

        return [RawEntry(
            token=body,
            entry_type=entry_type,
            line_number=line_number,
            raw_line=line,
            comment=options or None,
        )]

    def _parse_hosts_line(self, line: str, line_number: int, stats: ParseStats) -> list[RawEntry]:
        comment = None
        body = line
        if "#" in body:
            body, comment = body.split("#", 1)
            comment = comment.strip() or None

        tokens = body.split()
        if not tokens:
            stats.comments += 1
            return []

        if self._is_ip(tokens[0]):
            names = tokens[1:]
            if not names:
                stats.record_malformed(line_number, line, "Address without host names")
                return []
        elif len(tokens) == 1:
            if ADBLOCK_SPECIAL.search(tokens[0]):
                # /regex/, |http:// anchors, generic url fragments
                stats.skipped += 1
                return []
            names = tokens
        else:
            stats.record_malformed(line_number, line, "Unrecognized line")
            return []

        entries = []
        for name in names:
            if name.lower() in BOILERPLATE_NAMES:
                stats.skipped += 1
                continue
            entries.append(RawEntry(
                token=name,
                entry_type=EntryType.BLOCK,
                line_number=line_number,
                raw_line=line,
                comment=comment,
            ))
        return entries

    @staticmethod
    def _is_ip(token: str) -> bool:
        try:
            ipaddress.ip_address(token.split("%", 1)[0])
        except ValueError:
            return False
        return True


def detect_format(content: Union[bytes, str], max_lines: int = FORMAT_DETECTION_LINES) -> FormatDetection:
    """
    Guess whether a list is a hosts file or an adblock filter list.

    Scores the first ``max_lines`` lines by the share of pattern lines that
    look like adblock rules versus ``0.0.0.0``/``127.0.0.1`` hosts lines.
    """
    text = ListParser.decode(content)
    lines = text.split("\n")[:max_lines]

    adblock = standard = element = allow = total = 0
    for line in lines:
        line = line.strip()
        if not line or line.startswith("!") or (line.startswith("#") and "##" not in line):
            continue
        if re.search(r'\|\|[^/\s]+\^', line):
            adblock += 1
            total += 1
            if line.startswith("@@"):
                allow += 1
        if "##" in line:
            element += 1
            total += 1
        if re.match(r'^(0\.0\.0\.0|127\.0\.0\.1)\s+', line):
            standard += 1
            total += 1

    adblock_confidence = standard_confidence = 0.0
    if total:
        adblock_confidence = (adblock + element) / total * 100
        standard_confidence = standard / total * 100

    detected, confidence = ListFormat.AUTO, 0.0
    if adblock_confidence > standard_confidence:
        detected, confidence = ListFormat.ADBLOCK, adblock_confidence
    elif standard_confidence > adblock_confidence:
        detected, confidence = ListFormat.STANDARD, standard_confidence

    return FormatDetection(
        detected_format=detected,
        confidence=round(confidence, 2),
        total_lines_analyzed=len(lines),
        total_pattern_lines=total,
        adblock_pattern_count=adblock,
        standard_pattern_count=standard,
        element_hiding_count=element,
        allow_rule_count=allow,
        adblock_confidence=round(adblock_confidence, 2),
        standard_confidence=round(standard_confidence, 2),
    )
