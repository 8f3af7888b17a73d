"""Tests for core/formatter.py -- terminal and JSON rendering of an Assessment."""

import json

from conftest import make_assessment

from core.formatter import disable_color, print_terminal, strip_ansi, to_dict, to_json
from core.models import ScanStatus


class TestJsonExport:
    def test_header_sets_are_sorted_lists(self):
        data = to_dict(make_assessment())
        assert data["present_headers"] == sorted(data["present_headers"])
        assert data["missing_headers"] == []
        assert data["risk_level"] == "low"
        assert data["status"] == "completed"

    def test_unavailable_headers_are_null(self):
        data = json.loads(to_json(make_assessment(present_headers=None, missing_headers=None)))
        assert data["present_headers"] is None
        assert data["missing_headers"] is None


class TestTerminal:
    def test_plain_output(self, capsys):
        disable_color()
        print_terminal(make_assessment(detected_technologies=("nginx",), summary="Risk Score: 0/100 (Low Risk)."))
        out = capsys.readouterr().out
        assert out == strip_ansi(out)
        assert "https://example.com/" in out
        assert "SECURITY HEADERS" in out
        assert "✓ strict-transport-security" in out
        assert "Technologies: nginx" in out

    def test_failed_scan(self, capsys):
        disable_color()
        print_terminal(make_assessment(status=ScanStatus.failed, error="Scan could not be completed."))
        out = capsys.readouterr().out
        assert "SCAN FAILED" in out
        assert "Scan could not be completed." in out

    def test_unavailable_headers_message(self, capsys):
        disable_color()
        print_terminal(make_assessment(present_headers=None, missing_headers=None))
        assert "Headers unavailable" in capsys.readouterr().out

    def test_strip_ansi(self):
        assert strip_ansi("\033[91mred\033[0m") == "red"
