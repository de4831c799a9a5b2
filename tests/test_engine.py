from __future__ import annotations

import gzip
import json

import pytest

from arsd.services import engine as engine_mod
from arsd.services.engine import EngineSnapshot, format_style
from arsd.services.errors import DeserializationError


CORPUS = """[Adblock Plus 2.0]
! Title: test list
! Expires: 4 days
||ads.example^
||ads.example.com^
@@||ads.example.com/allowed/*
||cdn.example.net/banners/*$image
||tracker.example.org^$third-party
/pagead/*
##.ad-banner
###sponsor
##a.b
##div[data-ad]
example.com##.promo
example.com#@#.ad-banner
~example.com##.elsewhere
shop.*##.deal-popup
example.com##+js(noop)
example.com#?#div:has(> .ad)
"""


@pytest.fixture(scope="module")
def snap() -> EngineSnapshot:
    return EngineSnapshot.build(CORPUS)


def test_rule_counts(snap):
    assert snap.network_rule_count == 6
    # Scriptlet and procedural rules are dropped.
    assert snap.cosmetic_rule_count == 8
    assert snap.source == "build"


@pytest.mark.parametrize(
    "url,source,kind,expected",
    [
        ("https://ads.example/x.js", "https://site.example", "script", True),
        ("https://ads.example.com/banner.js", "https://news.example.org/", "script", True),
        ("https://ads.example.com/allowed/x.js", "https://news.example.org/", "script", False),
        ("https://safe.example.com/x.js", "https://news.example.org/", "script", False),
        ("https://cdn.example.net/banners/1.png", "https://news.example.org/", "image", True),
        ("https://cdn.example.net/banners/1.js", "https://news.example.org/", "script", False),
        ("https://www.site.org/pagead/x", "https://www.site.org/", "xhr", True),
    ],
)
def test_network_requests(snap, url, source, kind, expected):
    assert snap.check_network_request(url, source, kind) is expected


def test_third_party_option_uses_registrable_domain(snap):
    url = "https://tracker.example.org/pixel"
    assert snap.check_network_request(url, "https://www.example.org/", "image") is False
    assert snap.check_network_request(url, "https://news.site.com/", "image") is True


def test_invalid_request_url_is_rejected(snap):
    with pytest.raises(ValueError):
        snap.check_network_request("not-a-url", "https://x.com/", "script")


def test_specific_exception_hides_generic_class(snap):
    res = snap.url_cosmetic_resources("https://www.example.com/page")
    assert ".ad-banner" in res.exceptions
    assert res.hide_selectors == (".promo", "a.b", "div[data-ad]")

    sel = snap.hidden_class_id_selectors(["ad-banner", "other"], ["sponsor"], res.exceptions)
    assert sel == ["#sponsor"]


def test_negated_domain_rule_applies_elsewhere(snap):
    res = snap.url_cosmetic_resources("https://other.org/")
    assert res.exceptions == frozenset()
    assert res.hide_selectors == (".elsewhere", "a.b", "div[data-ad]")
    assert snap.hidden_class_id_selectors(["ad-banner"], [], res.exceptions) == [".ad-banner"]


def test_entity_wildcard_domain(snap):
    res = snap.url_cosmetic_resources("https://www.shop.co.uk/")
    assert ".deal-popup" in res.hide_selectors
    res = snap.url_cosmetic_resources("https://www.notshop.co.uk/")
    assert ".deal-popup" not in res.hide_selectors


def test_class_id_selectors_are_deduplicated(snap):
    sel = snap.hidden_class_id_selectors(["ad-banner", "ad-banner"], ["sponsor", ""], frozenset())
    assert sel == [".ad-banner", "#sponsor"]


def test_format_style():
    assert format_style(["a.b", "#c"]) == "a.b, #c { display: none !important; }\n"
    assert format_style([]) == "\n"


def test_empty_corpus_builds():
    snap = EngineSnapshot.build("# Add your custom network and cosmetic filters here\n")
    assert snap.network_rule_count == 0
    assert snap.cosmetic_rule_count == 0
    assert snap.check_network_request("https://a.example.com/", "https://a.example.com/", "script") is False
    assert snap.url_cosmetic_resources("https://a.example.com/").hide_selectors == ()


def test_serialize_roundtrip_answers_identically(snap):
    loaded = EngineSnapshot.deserialize(snap.serialize())
    assert loaded.source == "cache"
    assert loaded.network_rule_count == snap.network_rule_count
    assert loaded.cosmetic_rule_count == snap.cosmetic_rule_count

    queries = [
        ("https://ads.example.com/banner.js", "https://news.example.org/", "script"),
        ("https://ads.example.com/allowed/x.js", "https://news.example.org/", "script"),
        ("https://tracker.example.org/p", "https://www.example.org/", "image"),
        ("https://tracker.example.org/p", "https://news.site.com/", "image"),
        ("https://cdn.example.net/banners/1.png", "https://x.org/", "image"),
    ]
    for q in queries:
        assert loaded.check_network_request(*q) == snap.check_network_request(*q)

    for page in ("https://www.example.com/", "https://other.org/", "https://shop.de/"):
        a = snap.url_cosmetic_resources(page)
        b = loaded.url_cosmetic_resources(page)
        assert a == b
        assert loaded.hidden_class_id_selectors(["ad-banner"], ["sponsor"], b.exceptions) == snap.hidden_class_id_selectors(
            ["ad-banner"], ["sponsor"], a.exceptions
        )


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"garbage",
        engine_mod.CACHE_MAGIC + b"not gzip",
        engine_mod.CACHE_MAGIC + gzip.compress(b"{not json"),
        engine_mod.CACHE_MAGIC + gzip.compress(json.dumps({"format": 99, "network": [], "cosmetic": []}).encode()),
        engine_mod.CACHE_MAGIC + gzip.compress(json.dumps({"format": 1, "network": "x", "cosmetic": []}).encode()),
        engine_mod.CACHE_MAGIC + gzip.compress(json.dumps([1, 2]).encode()),
    ],
)
def test_deserialize_rejects_bad_data(data):
    with pytest.raises(DeserializationError):
        EngineSnapshot.deserialize(data)


def test_deserialize_rejects_truncated_cache(snap):
    data = snap.serialize()
    with pytest.raises(DeserializationError):
        EngineSnapshot.deserialize(data[: len(data) // 2])


def test_parse_cosmetic():
    exc, rule = engine_mod.parse_cosmetic("a.com,~b.a.com#@#.x")
    assert exc is True
    assert rule.include == frozenset({"a.com"})
    assert rule.exclude == frozenset({"b.a.com"})
    assert engine_mod.parse_cosmetic("||ads.example.com^") is None
    assert engine_mod.parse_cosmetic("a.com##+js(noop)") is None
