"""
Brief: Tests for switchboard.routing.route_table.

Inputs:
  - None

Outputs:
  - None
"""

import itertools

import pytest

from switchboard.routing.route_table import (
    BackendAddress,
    RouteTable,
    build_route_table,
    expand_route_templates,
    normalize_name,
    parse_backend,
)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("10.0.0.1:5353", BackendAddress("10.0.0.1", 5353)),
        ("10.0.0.1", BackendAddress("10.0.0.1", 53)),
        ("[2001:db8::1]:5353", BackendAddress("2001:db8::1", 5353)),
        ("[2001:db8::1]", BackendAddress("2001:db8::1", 53)),
        ("2001:db8::1", BackendAddress("2001:db8::1", 53)),
        ("ns1.example.net:53", BackendAddress("ns1.example.net", 53)),
    ],
)
def test_parse_backend_forms(text, expected):
    """
    Brief: parse_backend accepts host:port, bracketed v6 and bare hosts.

    Inputs:
      - text: backend string
      - expected: BackendAddress

    Outputs:
      - None: Asserts parsed address
    """
    assert parse_backend(text) == expected


@pytest.mark.parametrize("text", ["", "10.0.0.1:abc", "10.0.0.1:0", "10.0.0.1:70000", ":53", "[::1"])
def test_parse_backend_rejects_bad_input(text):
    with pytest.raises(ValueError):
        parse_backend(text)


def test_backend_str_brackets_ipv6():
    assert str(BackendAddress("2001:db8::1", 53)) == "[2001:db8::1]:53"
    assert str(BackendAddress("192.0.2.1", 53)) == "192.0.2.1:53"


def test_normalize_name():
    assert normalize_name("Example.COM") == "example.com."
    assert normalize_name("example.com.") == "example.com."
    assert normalize_name("") == "."
    assert normalize_name(".") == "."


def test_longest_suffix_wins_in_any_configuration_order():
    """
    Brief: lookup returns the longest matching suffix regardless of order.

    Inputs:
      - None

    Outputs:
      - None: Asserts every permutation of the same routes gives one answer
    """
    routes = [
        ("com.", ["192.0.2.1:53"]),
        ("example.com.", ["192.0.2.2:53"]),
        ("sub.example.com.", ["192.0.2.3:53"]),
        (".", ["192.0.2.9:53"]),
    ]
    for perm in itertools.permutations(routes):
        table = RouteTable.from_pairs(perm)
        assert [str(b) for b in table.lookup("www.sub.example.com.")] == ["192.0.2.3:53"]
        assert [str(b) for b in table.lookup("example.com")] == ["192.0.2.2:53"]
        assert [str(b) for b in table.lookup("other.com.")] == ["192.0.2.1:53"]
        assert [str(b) for b in table.lookup("example.org.")] == ["192.0.2.9:53"]


def test_reverse_zone_route():
    table = RouteTable.from_pairs([("30.10.in-addr.arpa.", ["10.30.5.255:53"])])
    assert table.lookup("5.30.10.in-addr.arpa.") == (BackendAddress("10.30.5.255", 53),)


def test_suffix_match_respects_label_boundaries():
    table = RouteTable.from_pairs([("example.com.", ["192.0.2.2:53"])])
    assert table.lookup("badexample.com.") is None
    assert table.lookup("EXAMPLE.com.") == (BackendAddress("192.0.2.2", 53),)


def test_lookup_rejects_empty_and_malformed_names():
    table = RouteTable.from_pairs([(".", ["192.0.2.9:53"])])
    assert table.lookup("") is None
    assert table.lookup("a..example.com.") is None


def test_equal_length_suffixes_keep_configuration_order():
    table = RouteTable.from_pairs(
        [("example.com.", ["192.0.2.1:53"]), ("example.net.", ["192.0.2.2:53"])]
    )
    assert [e.suffix for e in table.entries] == ["example.com.", "example.net."]
    assert len(table) == 2


def test_duplicate_suffix_rejected():
    with pytest.raises(ValueError):
        RouteTable.from_pairs(
            [("example.com.", ["192.0.2.1:53"]), ("Example.COM", ["192.0.2.2:53"])]
        )


def test_route_without_backends_rejected():
    with pytest.raises(ValueError):
        RouteTable.from_pairs([("example.com.", [])])


def test_expand_route_templates_counts():
    pairs = expand_route_templates(
        [{"suffix": "{i}.member.example.", "backends": ["10.80.{i}.255:53"], "start": 0, "end": 255}]
    )
    assert len(pairs) == 256
    assert pairs[7] == ("7.member.example.", ["10.80.7.255:53"])


def test_expand_route_templates_rejects_reversed_range():
    with pytest.raises(ValueError):
        expand_route_templates([{"suffix": "{i}.x.", "backends": ["10.0.{i}.1"], "start": 5, "end": 1}])


def test_explicit_route_shadows_generated():
    generated = expand_route_templates(
        [{"suffix": "{i}.member.example.", "backends": ["10.80.{i}.255:53"], "start": 0, "end": 2}]
    )
    table = build_route_table([("1.member.example.", ["192.0.2.1:53"])], generated)
    assert len(table) == 3
    assert table.lookup("host.1.member.example.") == (BackendAddress("192.0.2.1", 53),)
    assert table.lookup("host.2.member.example.") == (BackendAddress("10.80.2.255", 53),)
