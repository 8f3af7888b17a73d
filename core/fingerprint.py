"""
core/fingerprint.py -- Passive technology and CMS fingerprinting.

Pattern matching only: no extra requests, no version probing. The rule table
is an immutable value passed in by the caller so tests can inject their own.
"""

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from core.models import Fingerprint

_RAW_PATTERNS: dict[str, tuple[str, ...]] = {
    "WordPress": (r"wp-content", r"wp-includes", r"wordpress"),
    "Drupal": (r"drupal", r"sites/default"),
    "Joomla": (r"joomla", r"com_content"),
    "Shopify": (r"shopify", r"cdn\.shopify\.com"),
    "Wix": (r"wix\.com", r"parastorage\.com"),
    "Squarespace": (r"squarespace", r"static\.squarespace"),
    "React": (r"react", r"_next", r"__next"),
    "Vue": (r"vue", r"nuxt"),
    "Angular": (r"ng-version", r"angular"),
    "Bootstrap": (r"bootstrap",),
    "jQuery": (r"jquery",),
    "Cloudflare": (r"cloudflare", r"cf-ray"),
    "nginx": (r"nginx",),
    "Apache": (r"apache",),
}


@dataclass(frozen=True)
class FingerprintRules:
    """Ordered technology -> patterns table plus CMS and CDN markers.

    Iteration order of `patterns` decides which CMS wins when several match.
    """

    patterns: Mapping[str, tuple[re.Pattern, ...]]
    cms_platforms: frozenset[str]
    cdn_header: str = "cf-ray"
    cdn_name: str = "Cloudflare"
    banner_headers: tuple[str, ...] = field(default=("server", "x-powered-by"))


def compile_rules(raw: Mapping[str, tuple[str, ...]], cms_platforms: frozenset[str]) -> FingerprintRules:
    compiled = {tech: tuple(re.compile(p, re.IGNORECASE) for p in pats) for tech, pats in raw.items()}
    return FingerprintRules(patterns=MappingProxyType(compiled), cms_platforms=cms_platforms)


CMS_PLATFORMS = frozenset({"WordPress", "Drupal", "Joomla", "Shopify", "Wix", "Squarespace"})

DEFAULT_RULES = compile_rules(_RAW_PATTERNS, CMS_PLATFORMS)


def server_banner(headers: Optional[Mapping[str, str]], rules: FingerprintRules = DEFAULT_RULES) -> Optional[str]:
    """Return the first non-empty banner header value, or None."""
    if not headers:
        return None
    for name in rules.banner_headers:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return None


def _serialize_headers(headers: Mapping[str, str]) -> str:
    return " ".join(f"{k},{v}" for k, v in headers.items())


def fingerprint(
    headers: Optional[Mapping[str, str]],
    body: Optional[str],
    rules: FingerprintRules = DEFAULT_RULES,
) -> Fingerprint:
    """Detect technologies and at most one CMS from response headers and body.

    headers must use lower-cased names. Either input may be None when the
    corresponding probe failed; detection runs on whatever is available.
    """
    headers = headers or {}
    technologies: list[str] = []
    cms: Optional[str] = None

    if headers.get(rules.cdn_header):
        technologies.append(rules.cdn_name)

    haystack = f"{body or ''} {_serialize_headers(headers)}"
    for tech, patterns in rules.patterns.items():
        if any(p.search(haystack) for p in patterns):
            if tech not in technologies:
                technologies.append(tech)
            if cms is None and tech in rules.cms_platforms:
                cms = tech

    return Fingerprint(
        technologies=tuple(technologies),
        cms=cms,
        server_info=server_banner(headers, rules),
    )
