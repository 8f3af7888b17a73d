"""Tests for core/fingerprint.py -- passive technology and CMS detection."""

from core.fingerprint import CMS_PLATFORMS, compile_rules, fingerprint, server_banner


class TestFingerprint:
    def test_wordpress_from_body(self):
        fp = fingerprint({}, '<link href="/wp-content/themes/x/style.css">')
        assert "WordPress" in fp.technologies
        assert fp.cms == "WordPress"

    def test_cloudflare_from_cdn_header(self):
        fp = fingerprint({"cf-ray": "8a1b2c3d-LHR"}, "")
        assert fp.technologies[0] == "Cloudflare"
        assert fp.technologies.count("Cloudflare") == 1

    def test_server_header_is_matched(self):
        fp = fingerprint({"server": "nginx/1.25.3"}, "<html></html>")
        assert "nginx" in fp.technologies
        assert fp.server_info == "nginx/1.25.3"

    def test_only_first_cms_wins(self):
        fp = fingerprint({}, "wp-content and also drupal.settings")
        assert "WordPress" in fp.technologies
        assert "Drupal" in fp.technologies
        assert fp.cms == "WordPress"

    def test_non_cms_technology_sets_no_cms(self):
        fp = fingerprint({}, '<script src="/js/jquery.min.js"></script>')
        assert fp.technologies == ("jQuery",)
        assert fp.cms is None

    def test_nothing_detected(self):
        fp = fingerprint({"content-type": "text/html"}, "<html><body>hello</body></html>")
        assert fp.technologies == ()
        assert fp.cms is None
        assert fp.server_info is None

    def test_missing_inputs_are_tolerated(self):
        fp = fingerprint(None, None)
        assert fp.technologies == ()
        assert fp.server_info is None

    def test_custom_rules_injected(self):
        rules = compile_rules({"Ghost": (r"ghost-sdk",)}, frozenset({"Ghost"}))
        fp = fingerprint({}, "ghost-sdk.min.js wp-content", rules)
        assert fp.technologies == ("Ghost",)
        assert fp.cms == "Ghost"

    def test_default_cms_platforms(self):
        assert {"WordPress", "Drupal", "Joomla"} <= CMS_PLATFORMS


class TestServerBanner:
    def test_server_preferred_over_powered_by(self):
        assert server_banner({"server": "Apache/2.4", "x-powered-by": "PHP/8.1"}) == "Apache/2.4"

    def test_falls_back_to_powered_by(self):
        assert server_banner({"server": "  ", "x-powered-by": "Express"}) == "Express"

    def test_absent(self):
        assert server_banner({}) is None
        assert server_banner(None) is None
