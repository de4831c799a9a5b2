"""Compiled filter snapshots.

A snapshot is built once from the raw text of every filter list and never
mutated afterwards, so any number of session threads may query it at the
same time. Network rules are matched by adblockparser; element-hiding rules
(``##`` / ``#@#``) are indexed here because adblockparser only parses them.

Cache format: ``ARSENG1\\n`` followed by gzip-compressed JSON holding the
accepted rule lines. Loading skips list scanning and per-line validation.
"""
from __future__ import annotations

import gzip
import json
import logging
import re
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

import tldextract
from adblockparser import AdblockParsingError, AdblockRule, AdblockRules

from arsd.services.errors import BuildError, DeserializationError

try:
    import re2  # type: ignore  # noqa: F401
    _HAS_RE2 = True
except Exception:  # pragma: no cover
    _HAS_RE2 = False


logger = logging.getLogger(__name__)

CACHE_MAGIC = b"ARSENG1\n"
CACHE_FORMAT = 1

# Bundled public-suffix snapshot only; never hit the network from a query.
_tld_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)

_COSMETIC_RE = re.compile(r"^([\w.,~*\-]*)#(@?)#(.+)$")
_SIMPLE_CLASS_ID_RE = re.compile(r"^([.#])([\w\-]+)")

_CONTENT_TYPE_OPTIONS: FrozenSet[str] = frozenset(
    {
        "script",
        "image",
        "stylesheet",
        "object",
        "xmlhttprequest",
        "object-subrequest",
        "subdocument",
        "document",
        "elemhide",
        "other",
        "background",
        "xbl",
        "ping",
        "dtd",
        "media",
        "websocket",
    }
)

_REQUEST_TYPE_ALIASES: Dict[str, str] = {
    "main_frame": "document",
    "sub_frame": "subdocument",
    "xhr": "xmlhttprequest",
    "fetch": "xmlhttprequest",
    "imageset": "image",
    "object_subrequest": "object-subrequest",
    "beacon": "ping",
    "csp_report": "other",
    "font": "other",
}

STYLE_SUFFIX = " { display: none !important; }"


@lru_cache(maxsize=65536)
def _split_host(host: str) -> Tuple[str, str]:
    """(registrable domain, public suffix) for a host; IPs and bare names fall back to themselves."""
    ext = _tld_extract(host)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}", ext.suffix
    return host, ""


def _host_from_url(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").strip().lower().rstrip(".")
    except ValueError:
        return ""


def _host_variants(host: str) -> List[str]:
    """Host plus every parent domain, plus ``name.*`` entity forms."""
    h = (host or "").strip().lower().rstrip(".")
    if not h:
        return []
    parts = h.split(".")
    out = [".".join(parts[i:]) for i in range(len(parts))]

    _, suffix = _split_host(h)
    if suffix and h.endswith("." + suffix):
        head = h[: -(len(suffix) + 1)].split(".")
        out.extend(".".join(head[i:]) + ".*" for i in range(len(head)))
    return out


def is_third_party(request_host: str, source_host: str) -> bool:
    if not request_host or not source_host:
        return False
    return _split_host(request_host)[0] != _split_host(source_host)[0]


def _is_comment(line: str) -> bool:
    return line.startswith("!") or line.startswith("[")


def _ordered_unique(items: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for s in items:
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return out


@dataclass(frozen=True)
class CosmeticResources:
    hide_selectors: Tuple[str, ...]
    exceptions: FrozenSet[str]


@dataclass(frozen=True)
class _CosmeticRule:
    selector: str
    include: FrozenSet[str]
    exclude: FrozenSet[str]

    def applies_to(self, variants: Iterable[str]) -> bool:
        v = set(variants)
        if self.exclude & v:
            return False
        if self.include:
            return bool(self.include & v)
        return True


def parse_cosmetic(line: str) -> Optional[Tuple[bool, _CosmeticRule]]:
    """Parse an element-hiding line into (is_exception, rule); None if it is not one we support."""
    m = _COSMETIC_RE.match(line)
    if not m:
        return None
    domains, exc, selector = m.group(1), m.group(2), m.group(3).strip()
    # Scriptlets and HTML filters have no CSS meaning.
    if not selector or selector.startswith("+js(") or selector.startswith("^"):
        return None
    include: Set[str] = set()
    exclude: Set[str] = set()
    for d in domains.split(","):
        d = d.strip().lower()
        if not d:
            continue
        if d.startswith("~"):
            if d[1:]:
                exclude.add(d[1:])
        else:
            include.add(d)
    return bool(exc), _CosmeticRule(selector=selector, include=frozenset(include), exclude=frozenset(exclude))


class _CosmeticIndex:
    def __init__(self, lines: List[str]) -> None:
        self.specific: Dict[str, List[_CosmeticRule]] = {}
        self.negated: List[_CosmeticRule] = []
        self.misc_generic: List[str] = []
        self.classes: Dict[str, List[str]] = {}
        self.ids: Dict[str, List[str]] = {}
        self.exc_specific: Dict[str, List[_CosmeticRule]] = {}
        self.exc_negated: List[_CosmeticRule] = []
        self.exc_generic: Set[str] = set()
        self.rule_count = 0

        for line in lines:
            parsed = parse_cosmetic(line)
            if parsed is None:
                continue
            is_exc, rule = parsed
            self.rule_count += 1
            if is_exc:
                self._add_exception(rule)
            else:
                self._add_hide(rule)

    def _add_exception(self, rule: _CosmeticRule) -> None:
        if rule.include:
            for d in rule.include:
                self.exc_specific.setdefault(d, []).append(rule)
        elif rule.exclude:
            self.exc_negated.append(rule)
        else:
            self.exc_generic.add(rule.selector)

    def _add_hide(self, rule: _CosmeticRule) -> None:
        if rule.include:
            for d in rule.include:
                self.specific.setdefault(d, []).append(rule)
            return
        if rule.exclude:
            self.negated.append(rule)
            return
        m = _SIMPLE_CLASS_ID_RE.match(rule.selector)
        if m:
            bucket = self.classes if m.group(1) == "." else self.ids
            bucket.setdefault(m.group(2), []).append(rule.selector)
        else:
            self.misc_generic.append(rule.selector)

    def exceptions_for(self, variants: List[str]) -> FrozenSet[str]:
        out = set(self.exc_generic)
        for v in variants:
            for rule in self.exc_specific.get(v, ()):
                if rule.applies_to(variants):
                    out.add(rule.selector)
        for rule in self.exc_negated:
            if rule.applies_to(variants):
                out.add(rule.selector)
        return frozenset(out)

    def hides_for(self, variants: List[str], exceptions: FrozenSet[str]) -> List[str]:
        found: List[str] = []
        for v in variants:
            for rule in self.specific.get(v, ()):
                if rule.applies_to(variants):
                    found.append(rule.selector)
        for rule in self.negated:
            if rule.applies_to(variants):
                found.append(rule.selector)
        found.extend(self.misc_generic)
        return [s for s in _ordered_unique(found) if s not in exceptions]


class EngineSnapshot:
    """Immutable compiled filter set."""

    def __init__(
        self,
        network_lines: List[str],
        cosmetic_lines: List[str],
        *,
        source: str = "build",
    ) -> None:
        self._network_lines: Tuple[str, ...] = tuple(network_lines)
        self._cosmetic_lines: Tuple[str, ...] = tuple(cosmetic_lines)
        self.source = source
        self.built_at = int(time.time())
        try:
            self._rules = AdblockRules(list(self._network_lines), use_re2=_HAS_RE2)
        except Exception as e:
            raise BuildError(f"Failed to compile network rules: {e}") from e
        self._cosmetic = _CosmeticIndex(list(self._cosmetic_lines))

    @classmethod
    def build(cls, corpus: str) -> "EngineSnapshot":
        """Compile raw filter text. Lines adblockparser rejects are skipped."""
        network: List[str] = []
        cosmetic: List[str] = []
        skipped = 0
        for raw in corpus.splitlines():
            line = raw.strip()
            if not line or _is_comment(line):
                continue
            if parse_cosmetic(line) is not None:
                cosmetic.append(line)
                continue
            if line.startswith("#") or "#?#" in line or "#$#" in line or "#@?#" in line or "#@$#" in line:
                continue
            try:
                rule = AdblockRule(line)
            except AdblockParsingError:
                skipped += 1
                continue
            if rule.is_comment or rule.is_html_rule:
                continue
            network.append(line)

        snap = cls(network, cosmetic, source="build")
        logger.info(
            "Built engine: %d network rules, %d cosmetic rules (%d skipped, re2=%s)",
            snap.network_rule_count,
            snap.cosmetic_rule_count,
            skipped,
            _HAS_RE2,
        )
        return snap

    @property
    def network_rule_count(self) -> int:
        return len(self._network_lines)

    @property
    def cosmetic_rule_count(self) -> int:
        return self._cosmetic.rule_count

    def serialize(self) -> bytes:
        payload = json.dumps(
            {
                "format": CACHE_FORMAT,
                "network": list(self._network_lines),
                "cosmetic": list(self._cosmetic_lines),
            },
            separators=(",", ":"),
        ).encode("utf-8")
        return CACHE_MAGIC + gzip.compress(payload)

    @classmethod
    def deserialize(cls, data: bytes) -> "EngineSnapshot":
        if not data.startswith(CACHE_MAGIC):
            raise DeserializationError("Not an engine cache file")
        try:
            obj = json.loads(gzip.decompress(data[len(CACHE_MAGIC):]).decode("utf-8"))
        except (OSError, EOFError, ValueError) as e:
            raise DeserializationError(f"Corrupt engine cache: {e}") from e

        if not isinstance(obj, dict) or obj.get("format") != CACHE_FORMAT:
            raise DeserializationError("Unsupported engine cache format")
        network = obj.get("network")
        cosmetic = obj.get("cosmetic")
        for name, seq in (("network", network), ("cosmetic", cosmetic)):
            if not isinstance(seq, list) or not all(isinstance(s, str) for s in seq):
                raise DeserializationError(f"Engine cache field {name!r} is malformed")

        try:
            return cls(network, cosmetic, source="cache")
        except BuildError as e:
            raise DeserializationError(str(e)) from e

    def check_network_request(self, url: str, source_url: str, request_type: str) -> bool:
        """True when the request should be blocked.

        Raises ValueError if ``url`` is not an absolute URL with a host.
        """
        host = _host_from_url(url)
        if not host:
            raise ValueError(f"Invalid request URL: {url!r}")
        source_host = _host_from_url(source_url)

        kind = (request_type or "").strip().lower()
        kind = _REQUEST_TYPE_ALIASES.get(kind, kind)
        if kind not in _CONTENT_TYPE_OPTIONS:
            kind = "other"

        options: Dict[str, object] = {opt: (opt == kind) for opt in _CONTENT_TYPE_OPTIONS}
        options["third-party"] = is_third_party(host, source_host)
        options["domain"] = source_host or host
        return bool(self._rules.should_block(url, options))

    def url_cosmetic_resources(self, url: str) -> CosmeticResources:
        variants = _host_variants(_host_from_url(url))
        exceptions = self._cosmetic.exceptions_for(variants)
        hides = self._cosmetic.hides_for(variants, exceptions)
        return CosmeticResources(hide_selectors=tuple(hides), exceptions=exceptions)

    def hidden_class_id_selectors(
        self,
        classes: Iterable[str],
        ids: Iterable[str],
        exceptions: FrozenSet[str],
    ) -> List[str]:
        found: List[str] = []
        for c in classes:
            found.extend(self._cosmetic.classes.get(c, ()))
        for i in ids:
            found.extend(self._cosmetic.ids.get(i, ()))
        return [s for s in _ordered_unique(found) if s not in exceptions]


def format_style(selectors: List[str]) -> str:
    style = ", ".join(selectors)
    if style:
        style += STYLE_SUFFIX
    return style + "\n"
