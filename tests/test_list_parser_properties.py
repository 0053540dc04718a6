"""
Property-based tests for the List Parser module.

Uses Hypothesis for property-based testing to verify that hosts files,
domain lists and adblock rules are parsed line by line, and that unparseable
lines are counted instead of aborting the parse.
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from hosts_aggregator.enums import EntryType, ListFormat
from hosts_aggregator.list_parser import ListParser, detect_format


# Strategies for generating test data

@st.composite
def domain_strategy(draw) -> str:
    """Generate simple lower-case domains."""
    name = draw(st.text(
        alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789"),
        min_size=1,
        max_size=12,
    ))
    tld = draw(st.sampled_from(["com", "net", "org", "de"]))
    return f"{name}.{tld}"


@st.composite
def hosts_line_strategy(draw) -> tuple[str, str]:
    """Generate a hosts-file line and the domain it names."""
    domain = draw(domain_strategy())
    address = draw(st.sampled_from(["0.0.0.0", "127.0.0.1", "::"]))
    spacing = draw(st.sampled_from([" ", "\t", "   "]))
    comment = draw(st.sampled_from(["", " # tracker", "\t#ads"]))
    return f"{address}{spacing}{domain}{comment}", domain


@st.composite
def noise_line_strategy(draw) -> str:
    """Generate lines that never yield an entry."""
    return draw(st.sampled_from([
        "",
        "   ",
        "# a comment",
        "! adblock comment",
        "[Adblock Plus 2.0]",
        "/banner[0-9]+/",
        "||example.com/ads/*",
        "##.generic-banner",
        "example.com#@#.ad",
    ]))


class TestHostsSyntaxProperty:
    """
    Property-based tests for hosts-file parsing.

    Every hosts line yields exactly one block entry carrying its line number.
    """

    @given(lines=st.lists(hosts_line_strategy(), min_size=1, max_size=30))
    @settings(max_examples=100)
    def test_every_hosts_line_yields_its_domain(self, lines: list[tuple[str, str]]) -> None:
        content = "\n".join(line for line, _ in lines) + "\n"
        run = ListParser().parse(content)

        entries = list(run)

        assert [e.token for e in entries] == [domain for _, domain in lines]
        assert all(e.entry_type == EntryType.BLOCK for e in entries)
        assert [e.line_number for e in entries] == list(range(1, len(lines) + 1))
        assert run.stats.entries == len(lines)
        assert run.stats.malformed == 0

    @given(
        lines=st.lists(hosts_line_strategy(), min_size=0, max_size=15),
        noise=st.lists(noise_line_strategy(), min_size=0, max_size=15),
    )
    @settings(max_examples=100)
    def test_noise_lines_never_produce_entries(
        self,
        lines: list[tuple[str, str]],
        noise: list[str],
    ) -> None:
        content = "\n".join([line for line, _ in lines] + noise)
        entries = list(ListParser().parse(content))

        assert len(entries) == len(lines)

    @given(lines=st.lists(hosts_line_strategy(), min_size=1, max_size=20))
    @settings(max_examples=50)
    def test_parse_run_is_restartable(self, lines: list[tuple[str, str]]) -> None:
        run = ListParser().parse("\n".join(line for line, _ in lines))

        first = list(run)
        first_stats = run.stats
        second = list(run)

        assert first == second
        assert run.stats.entries == first_stats.entries
        assert run.stats.lines == first_stats.lines

    @given(lines=st.lists(hosts_line_strategy(), min_size=1, max_size=20))
    @settings(max_examples=50)
    def test_line_endings_do_not_matter(self, lines: list[tuple[str, str]]) -> None:
        raw = [line for line, _ in lines]
        parser = ListParser()

        lf = [e.token for e in parser.parse("\n".join(raw))]
        crlf = [e.token for e in parser.parse("\r\n".join(raw).encode("utf-8"))]

        assert lf == crlf


class TestListParserCases:
    """Example-based tests for individual line shapes."""

    def test_multiple_names_on_one_line(self) -> None:
        entries = list(ListParser().parse("0.0.0.0 a.example.com b.example.com # pair\n"))
        assert [e.token for e in entries] == ["a.example.com", "b.example.com"]
        assert all(e.comment == "pair" for e in entries)

    def test_bare_domain_lines(self) -> None:
        entries = list(ListParser().parse("ads.example.com\ntracker.example.net\n"))
        assert [e.token for e in entries] == ["ads.example.com", "tracker.example.net"]
        assert all(e.entry_type == EntryType.BLOCK for e in entries)

    def test_boilerplate_names_are_skipped(self) -> None:
        run = ListParser().parse(
            "127.0.0.1 localhost\n"
            "::1 ip6-localhost ip6-loopback\n"
            "255.255.255.255 broadcasthost\n"
            "0.0.0.0 0.0.0.0\n"
        )
        assert list(run) == []
        assert run.stats.skipped == 5

    def test_adblock_block_and_allow_rules(self) -> None:
        entries = list(ListParser().parse(
            "||ads.example.com^\n"
            "@@||cdn.example.com^\n"
            "||tracker.example.com^$third-party\n"
        ))
        assert [(e.token, e.entry_type) for e in entries] == [
            ("ads.example.com", EntryType.BLOCK),
            ("cdn.example.com", EntryType.ALLOW),
            ("tracker.example.com", EntryType.BLOCK),
        ]
        assert entries[2].comment == "third-party"

    def test_cosmetic_rules_yield_element_entries_per_owner(self) -> None:
        entries = list(ListParser().parse("example.com,~sub.example.com,news.example.org##.banner\n"))
        assert [e.token for e in entries] == ["example.com", "news.example.org"]
        assert all(e.entry_type == EntryType.ELEMENT for e in entries)
        assert entries[0].comment == ".banner"

    def test_path_rules_are_skipped_not_malformed(self) -> None:
        run = ListParser().parse("||example.com/ads/*\n||example.com^/path\n")
        assert list(run) == []
        assert run.stats.skipped == 2
        assert run.stats.malformed == 0

    def test_malformed_lines_are_counted_and_recorded(self) -> None:
        run = ListParser().parse(
            "0.0.0.0 ok.example.com\n"
            "this line has several words\n"
            "||missing-terminator.example.com\n"
            "0.0.0.0\n"
            "0.0.0.0 also-ok.example.com\n"
        )
        entries = list(run)

        assert [e.token for e in entries] == ["ok.example.com", "also-ok.example.com"]
        assert run.stats.malformed == 3
        assert [err.details["line_number"] for err in run.stats.errors] == [2, 3, 4]
        assert all(err.code == "malformed_line" for err in run.stats.errors)

    def test_invalid_utf8_is_replaced_not_fatal(self) -> None:
        entries = list(ListParser().parse(b"0.0.0.0 ads.example.com\n\xff\xfe junk\n"))
        assert [e.token for e in entries] == ["ads.example.com"]

    def test_byte_order_mark_is_ignored(self) -> None:
        entries = list(ListParser().parse("\ufeff0.0.0.0 ads.example.com\n".encode("utf-8")))
        assert [e.token for e in entries] == ["ads.example.com"]
        assert entries[0].line_number == 1

    def test_counters_add_up(self) -> None:
        run = ListParser().parse("\n# c\n! c\n0.0.0.0 a.example.com\nb.example.com\n")
        list(run)
        assert run.stats.lines == 5
        assert run.stats.blank == 1
        assert run.stats.comments == 2
        assert run.stats.entries == 2


class TestFormatDetection:
    """Tests for list format detection."""

    def test_hosts_file_is_detected_as_standard(self) -> None:
        content = "# header\n" + "".join(f"0.0.0.0 host{i}.example.com\n" for i in range(10))
        detection = detect_format(content)
        assert detection.detected_format == ListFormat.STANDARD
        assert detection.confidence == 100.0
        assert detection.standard_pattern_count == 10
        assert "standard" in detection.recommendation

    def test_adblock_list_is_detected(self) -> None:
        content = (
            "[Adblock Plus 2.0]\n"
            "! Title: test\n"
            "||ads.example.com^\n"
            "@@||cdn.example.com^\n"
            "example.com##.banner\n"
            "0.0.0.0 stray.example.com\n"
        )
        detection = detect_format(content)
        assert detection.detected_format == ListFormat.ADBLOCK
        assert detection.adblock_pattern_count == 2
        assert detection.allow_rule_count == 1
        assert detection.element_hiding_count == 1
        assert detection.total_pattern_lines == 4
        assert detection.confidence == 75.0

    def test_no_patterns_gives_low_confidence(self) -> None:
        detection = detect_format("# nothing here\nexample.com\n")
        assert detection.detected_format == ListFormat.AUTO
        assert detection.confidence == 0.0
        assert detection.recommendation.startswith("Low confidence")

    def test_only_leading_lines_are_analyzed(self) -> None:
        content = "".join(f"||ads{i}.example.com^\n" for i in range(150))
        detection = detect_format(content, max_lines=100)
        assert detection.total_lines_analyzed == 100
        assert detection.adblock_pattern_count == 100
