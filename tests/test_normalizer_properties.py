"""
Property-based tests for the Domain Normalizer module.

Uses Hypothesis for property-based testing to verify that normalization is
idempotent, case and decoration insensitive, and rejects non-domains.
"""

from hypothesis import given, settings, assume
from hypothesis import strategies as st

from hosts_aggregator.enums import NormalizationErrorCode
from hosts_aggregator.normalizer import DomainNormalizer


# Strategies for generating test data

@st.composite
def label_strategy(draw) -> str:
    """Generate valid ASCII DNS labels."""
    first = draw(st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789"))
    middle = draw(st.text(
        alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789-"),
        min_size=0,
        max_size=15,
    ))
    last = draw(st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789"))
    return first + middle + last


@st.composite
def domain_strategy(draw) -> str:
    """Generate valid lower-case ASCII domains with an alphabetic TLD."""
    labels = draw(st.lists(label_strategy(), min_size=1, max_size=4))
    tld = draw(st.sampled_from(["com", "net", "org", "de", "io", "co.uk"]))
    return ".".join(labels + [tld])


@st.composite
def decorated_domain_strategy(draw) -> tuple[str, str]:
    """Generate a domain together with a scheme/port/path/case-decorated form."""
    domain = draw(domain_strategy())
    decorated = "".join(
        c.upper() if draw(st.booleans()) else c for c in domain
    )
    if draw(st.booleans()):
        decorated += "."
    if draw(st.booleans()):
        decorated += ":" + str(draw(st.integers(min_value=1, max_value=65535)))
    if draw(st.booleans()):
        decorated = draw(st.sampled_from(["http://", "https://", "HTTPS://"])) + decorated
        decorated += draw(st.sampled_from(["", "/", "/ads.js", "/path?q=1", "#frag"]))
    padding = draw(st.sampled_from(["", " ", "\t", "  "]))
    return domain, padding + decorated + padding


class TestNormalizationIdempotenceProperty:
    """
    Property-based tests for idempotence of normalization.

    Feeding a normalized domain back into the normalizer returns it unchanged.
    """

    @given(pair=decorated_domain_strategy())
    @settings(max_examples=200)
    def test_normalize_is_idempotent(self, pair: tuple[str, str]) -> None:
        _, decorated = pair
        normalizer = DomainNormalizer()

        once = normalizer.normalize(decorated)
        assert once is not None, f"Expected {decorated!r} to normalize"

        twice = normalizer.normalize(once)
        assert twice == once

    @given(
        text=st.text(
            alphabet=st.characters(blacklist_categories=("Cs",)),
            min_size=0,
            max_size=40,
        ),
    )
    @settings(max_examples=200)
    def test_idempotent_for_arbitrary_input(self, text: str) -> None:
        normalizer = DomainNormalizer()
        once = normalizer.normalize(text)
        assume(once is not None)
        assert normalizer.normalize(once) == once

    @given(pair=decorated_domain_strategy())
    @settings(max_examples=100)
    def test_decoration_is_stripped(self, pair: tuple[str, str]) -> None:
        domain, decorated = pair
        normalizer = DomainNormalizer()

        assert normalizer.normalize(decorated) == domain

    @given(domain=domain_strategy())
    @settings(max_examples=100)
    def test_idempotent_with_www_stripping(self, domain: str) -> None:
        normalizer = DomainNormalizer(strip_www=True)

        once = normalizer.normalize("www." + domain)
        assert once is not None
        assert not once.startswith("www.") or once.count(".") == 1
        assert normalizer.normalize(once) == once


class TestNormalizationCases:
    """Example-based tests for specific normalization rules."""

    def test_scheme_port_and_path_are_removed(self) -> None:
        normalizer = DomainNormalizer()
        assert normalizer.normalize("https://Ads.Example.COM:8443/banner.js?x=1") == "ads.example.com"

    def test_userinfo_is_removed(self) -> None:
        normalizer = DomainNormalizer()
        assert normalizer.normalize("http://user:pw@tracker.example.com/") == "tracker.example.com"

    def test_trailing_dot_and_case(self) -> None:
        normalizer = DomainNormalizer()
        assert normalizer.normalize("Example.COM.") == "example.com"

    def test_leading_wildcard_label_is_stripped(self) -> None:
        normalizer = DomainNormalizer()
        assert normalizer.normalize("*.ads.example.com") == "ads.example.com"

    def test_www_kept_by_default(self) -> None:
        assert DomainNormalizer().normalize("www.example.com") == "www.example.com"
        assert DomainNormalizer(strip_www=True).normalize("www.example.com") == "example.com"

    def test_idn_is_encoded_to_a_labels(self) -> None:
        normalizer = DomainNormalizer()
        result = normalizer.normalize("Bücher.example")
        assert result == "xn--bcher-kva.example"
        assert normalizer.normalize(result) == result

    def test_ip_literals_are_rejected(self) -> None:
        normalizer = DomainNormalizer()
        for token in ("127.0.0.1", "0.0.0.0", "::1", "[2001:db8::1]", "http://10.0.0.1/x"):
            result = normalizer.validate(token)
            assert not result.valid, token
            assert result.error.code == NormalizationErrorCode.IP_LITERAL, token

    def test_bare_wildcards_are_rejected(self) -> None:
        normalizer = DomainNormalizer()
        for token in ("*", "*.*", "ads.*.example.com", "ads*.example.com"):
            result = normalizer.validate(token)
            assert not result.valid, token
            assert result.error.code == NormalizationErrorCode.WILDCARD, token

    def test_empty_input_is_rejected(self) -> None:
        normalizer = DomainNormalizer()
        for token in ("", "   ", "\t"):
            result = normalizer.validate(token)
            assert not result.valid
            assert result.error.code == NormalizationErrorCode.EMPTY_INPUT

    def test_single_label_is_rejected(self) -> None:
        result = DomainNormalizer().validate("localhost")
        assert not result.valid
        assert result.error.code == NormalizationErrorCode.INVALID_LABEL

    def test_bad_labels_are_rejected(self) -> None:
        normalizer = DomainNormalizer()
        for token in ("-ads.example.com", "ads-.example.com", "a..example.com", "a" * 64 + ".com"):
            result = normalizer.validate(token)
            assert not result.valid, token
            assert result.error.code == NormalizationErrorCode.INVALID_LABEL, token

    def test_forbidden_characters_are_rejected(self) -> None:
        normalizer = DomainNormalizer()
        for token in ("ads example.com", "ads!.example.com", "a;b.example.com"):
            result = normalizer.validate(token)
            assert not result.valid, token
            assert result.error.code == NormalizationErrorCode.FORBIDDEN_CHARS, token

    def test_overlong_domain_is_rejected(self) -> None:
        domain = ".".join(["a" * 60] * 5) + ".com"
        result = DomainNormalizer().validate(domain)
        assert not result.valid
        assert result.error.details["length"] == len(domain)

    def test_error_details_keep_raw_input(self) -> None:
        result = DomainNormalizer().validate("*")
        assert result.error.details["raw_input"] == "*"
