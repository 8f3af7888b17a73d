"""
formatter.py -- Renders an Assessment to terminal output or JSON.
"""

import json
import os
import re
import sys
from typing import Optional

from .models import Assessment, RiskLevel, Severity

W = 68  # output width

# ---------------------------------------------------------------------------
# ANSI color control
# ---------------------------------------------------------------------------

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from a string."""
    return _ANSI_RE.sub("", text)


def _use_color() -> bool:
    """Return True if stdout is a TTY and color has not been disabled.

    Respects NO_COLOR (https://no-color.org) and FORCE_COLOR.
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled: Optional[bool] = None  # None = auto-detect


def disable_color() -> None:
    """Force-disable color output (called when --no-color is set)."""
    global _color_enabled
    _color_enabled = False


def _color_active() -> bool:
    if _color_enabled is not None:
        return _color_enabled
    return _use_color()


# ---------------------------------------------------------------------------
# ANSI code helpers -- return empty string when color is off
# ---------------------------------------------------------------------------

LEVEL_COLORS = {
    RiskLevel.critical: "\033[91m",  # red
    RiskLevel.high: "\033[93m",  # yellow
    RiskLevel.medium: "\033[94m",  # blue
    RiskLevel.low: "\033[92m",  # green
}

SEVERITY_COLORS = {
    Severity.critical: "\033[91m",
    Severity.high: "\033[93m",
    Severity.medium: "\033[94m",
    Severity.low: "\033[92m",
    Severity.info: "\033[2m",
}


def _reset() -> str:
    return "\033[0m" if _color_active() else ""


def _bold() -> str:
    return "\033[1m" if _color_active() else ""


def _dim() -> str:
    return "\033[2m" if _color_active() else ""


def _level_color(level: RiskLevel) -> str:
    return LEVEL_COLORS.get(level, "") if _color_active() else ""


def _sev_color(severity: Severity) -> str:
    return SEVERITY_COLORS.get(severity, "") if _color_active() else ""


# ---------------------------------------------------------------------------
# Layout helpers
# ---------------------------------------------------------------------------


def _bar(char: str = "═") -> str:
    return char * W


def _section(title: str) -> str:
    return f"\n  {_bold()}{title}{_reset()}\n  {'─' * (W - 2)}"


def _wrap(text: str, indent: int = 4, width: int = W) -> str:
    """Simple word-wrap at `width` chars with leading indent."""
    words = text.split()
    lines = []
    line = " " * indent
    for word in words:
        if len(line) + len(word) + 1 > width:
            lines.append(line)
            line = " " * indent + word
        else:
            line += ("" if line.strip() == "" else " ") + word
    if line.strip():
        lines.append(line)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Terminal renderer
# ---------------------------------------------------------------------------


def print_terminal(a: Assessment) -> None:
    bold = _bold()
    reset = _reset()
    color = _level_color(a.risk_level)

    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}{a.target_url}{reset}")
    print(f"  {color}{bold}Risk {a.risk_score}/100  {a.risk_level.value.upper()}{reset}  │  {a.scan_duration_ms}ms")
    print(f"{bold}{_bar()}{reset}")

    if a.error:
        print(_section("SCAN FAILED"))
        print(f"    {a.error}")
        print(f"\n{_bar()}\n")
        return

    print(_section("SUMMARY"))
    print(_wrap(a.summary))

    print(_section("TLS"))
    print(f"    Valid          {'yes' if a.ssl_valid else 'NO'}")
    if a.ssl_issuer:
        print(f"    Issuer         {a.ssl_issuer}")
    if a.ssl_days_left is not None:
        print(f"    Expires in     {a.ssl_days_left} days")

    print(_section("SECURITY HEADERS"))
    if not a.headers_available:
        print(f"    {_dim()}Headers unavailable: the header probe did not complete.{reset}")
    else:
        print(f"    Coverage       {a.headers_score}%")
        for h in sorted(a.present_headers):
            print(f"    ✓ {h}")
        for h in sorted(a.missing_headers):
            print(f"    ✗ {h}")

    print(_section("FINGERPRINT"))
    techs = ", ".join(a.detected_technologies) if a.detected_technologies else "none detected"
    print(_wrap(f"Technologies: {techs}"))
    if a.detected_cms:
        print(f"    CMS            {a.detected_cms}")
    if a.server_info:
        print(f"    Server banner  {a.server_info}")

    scored = [f for f in a.factors if f.points > 0]
    if scored:
        print(_section("RISK FACTORS"))
        for f in scored:
            sev = _sev_color(f.severity)
            print(f"    {sev}{f.severity.value.upper():<9}{reset} +{f.points:<3} {f.name}")

    if a.recommended_fixes:
        print(_section("WHAT DO I DO?"))
        for i, fix in enumerate(a.recommended_fixes, 1):
            print(f"\n    {i}. {bold}{fix.title}{reset}")
            print(_wrap(fix.description, indent=8))
            if fix.nginx:
                print(f"        {_dim()}nginx:  {fix.nginx}{reset}")
            if fix.apache:
                print(f"        {_dim()}apache: {fix.apache}{reset}")

    print(f"\n{_bar()}\n")


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def to_dict(a: Assessment) -> dict:
    """Plain JSON-compatible dict. Header sets are sorted lists, or None when unavailable."""
    return {
        "target_url": a.target_url,
        "status": a.status.value,
        "ssl_valid": a.ssl_valid,
        "ssl_days_left": a.ssl_days_left,
        "ssl_issuer": a.ssl_issuer,
        "ssl_expires_at": a.ssl_expires_at,
        "present_headers": sorted(a.present_headers) if a.present_headers is not None else None,
        "missing_headers": sorted(a.missing_headers) if a.missing_headers is not None else None,
        "detected_technologies": list(a.detected_technologies),
        "detected_cms": a.detected_cms,
        "server_info": a.server_info,
        "risk_score": a.risk_score,
        "risk_level": a.risk_level.value,
        "headers_score": a.headers_score,
        "summary": a.summary,
        "factors": [
            {
                "category": f.category.value,
                "name": f.name,
                "points": f.points,
                "max_points": f.max_points,
                "severity": f.severity.value,
                "description": f.description,
            }
            for f in a.factors
        ],
        "recommended_fixes": [{"key": f.key, "title": f.title, "severity": f.severity.value} for f in a.recommended_fixes],
        "scan_duration_ms": a.scan_duration_ms,
        "error": a.error,
    }


def to_json(a: Assessment) -> str:
    return json.dumps(to_dict(a), indent=2)
