"""
Tests for the URL rewrite rule table.
"""

import re

import pytest

from core.proxy.rewrite_rules import (
    RewriteRule,
    RewriteRuleTable,
    RouteKind,
    is_auth_path,
)


# ── construction ─────────────────────────────────────────────────────────────


class TestRuleTableConstruction:
    def test_duplicate_upstream_rejected(self):
        with pytest.raises(ValueError):
            RewriteRuleTable([
                RewriteRule("https://a.example", "", RouteKind.CONTENT, canonical=True),
                RewriteRule("https://a.example", "/x", RouteKind.STATIC),
            ])

    def test_canonical_content_rule_required(self):
        with pytest.raises(ValueError):
            RewriteRuleTable([RewriteRule("https://s.example", "/proxy-static", RouteKind.STATIC, canonical=True)])

    def test_longest_prefix_first(self, rules):
        lengths = [len(r.upstream) for r in rules.rules]
        assert lengths == sorted(lengths, reverse=True)

    def test_from_config_dedupes_hosts(self, upstream_config):
        upstream_config = dict(upstream_config)
        upstream_config["content_aliases"] = ["https://reddit.com", "https://old.reddit.com/"]
        table = RewriteRuleTable.from_config(upstream_config)
        upstreams = [r.upstream for r in table.rules]
        assert len(upstreams) == len(set(upstreams))

    def test_auth_upstream(self, rules):
        assert rules.auth_upstream == "https://www.reddit.com"


# ── upstream -> proxy ────────────────────────────────────────────────────────


class TestRewriteUrl:
    @pytest.mark.parametrize("url,expected", [
        ("https://old.reddit.com/r/pics", "/r/pics"),
        ("https://www.reddit.com/r/pics/?sort=top", "/r/pics/?sort=top"),
        ("https://reddit.com/user/spez", "/user/spez"),
        ("https://www.redditstatic.com/desktop2x/app.js", "/proxy-static/desktop2x/app.js"),
        ("https://redditstatic.com/icon.png", "/proxy-static/icon.png"),
        ("https://w3-reporting.reddit.com/reports", "/tracking/w3-reporting/reports"),
        ("https://error-tracking.reddit.com/api/1", "/tracking/error/api/1"),
        ("https://id.rlcdn.com/464526.gif", "/tracking/rlcdn/464526.gif"),
    ])
    def test_known_hosts(self, rules, url, expected):
        assert rules.rewrite_url(url) == expected

    def test_bare_host_becomes_root(self, rules):
        assert rules.rewrite_url("https://old.reddit.com") == "/"

    def test_query_directly_after_host(self, rules):
        assert rules.rewrite_url("https://old.reddit.com?x=1") == "/?x=1"

    @pytest.mark.parametrize("url", [
        "https://old.reddit.com.evil.example/r/pics",
        "https://old.reddit.com:8443/r/pics",
        "https://example.com/r/pics",
        "/already/relative",
        "",
    ])
    def test_unmatched_unchanged(self, rules, url):
        assert rules.rewrite_url(url) == url

    def test_non_string_unchanged(self, rules):
        assert rules.rewrite_url(None) is None

    def test_match_returns_rule(self, rules):
        rule = rules.match("https://www.redditstatic.com/a.css")
        assert rule.kind == RouteKind.STATIC
        assert rules.match("https://example.com/") is None


class TestRewriteText:
    def test_all_occurrences_replaced(self, rules):
        html = (
            '<a href="https://old.reddit.com/r/a">a</a>'
            '<a href="https://www.reddit.com/r/b">b</a>'
            '<script src="https://www.redditstatic.com/c.js"></script>'
        )
        out = rules.rewrite_text(html)
        assert 'href="/r/a"' in out
        assert 'href="/r/b"' in out
        assert 'src="/proxy-static/c.js"' in out

    def test_bare_host_in_attribute(self, rules):
        assert rules.rewrite_text('href="https://old.reddit.com"') == 'href="/"'

    def test_boundary_respected(self, rules):
        text = 'see https://old.reddit.com.evil.example/x and https://example.com/y'
        assert rules.rewrite_text(text) == text

    def test_no_upstream_url_left(self, rules):
        text = " ".join(r.upstream + "/p" for r in rules.rules)
        out = rules.rewrite_text(text)
        for rule in rules.rules:
            assert rule.upstream not in out

    def test_text_agrees_with_url(self, rules):
        urls = [
            "https://old.reddit.com/r/pics",
            "https://www.redditstatic.com/x.css?v=1",
            "https://id.rlcdn.com/p.gif",
            "https://reddit.com/comments/abc",
        ]
        for url in urls:
            assert rules.rewrite_text(f'"{url}"') == f'"{rules.rewrite_url(url)}"'

    def test_pattern_matches_longest_host(self, rules):
        # www.redditstatic.com не должен съедаться правилом www.reddit.com
        out = rules.rewrite_text("https://www.redditstatic.com/a.js")
        assert out == "/proxy-static/a.js"
        assert not re.search(r"static\.com", out)


# ── proxy -> upstream ────────────────────────────────────────────────────────


class TestResolve:
    def test_content_default(self, rules):
        target = rules.resolve("/r/pics/?count=25")
        assert target.kind == RouteKind.CONTENT
        assert target.url == "https://old.reddit.com/r/pics/?count=25"

    def test_root(self, rules):
        assert rules.resolve("/").url == "https://old.reddit.com/"

    def test_static(self, rules):
        target = rules.resolve("/proxy-static/desktop2x/app.js?v=2")
        assert target.kind == RouteKind.STATIC
        assert target.url == "https://www.redditstatic.com/desktop2x/app.js?v=2"

    def test_tracking(self, rules):
        target = rules.resolve("/tracking/error/api/2/envelope")
        assert target.kind == RouteKind.TRACKING
        assert target.url == "https://error-tracking.reddit.com/api/2/envelope"

    def test_prefix_needs_boundary(self, rules):
        target = rules.resolve("/proxy-staticky/file")
        assert target.kind == RouteKind.CONTENT
        assert target.url == "https://old.reddit.com/proxy-staticky/file"

    def test_auth_host_override(self, rules):
        target = rules.resolve("/login", use_auth_host=True)
        assert target.url == "https://www.reddit.com/login"

    def test_auth_host_ignored_for_static(self, rules):
        target = rules.resolve("/proxy-static/auth.js", use_auth_host=True)
        assert target.url == "https://www.redditstatic.com/auth.js"

    def test_resolve_inverts_rewrite(self, rules):
        for url in ("https://old.reddit.com/r/x", "https://www.redditstatic.com/y.css",
                    "https://w3-reporting.reddit.com/z"):
            assert rules.resolve(rules.rewrite_url(url)).url == url


class TestAuthPath:
    @pytest.mark.parametrize("path,expected", [
        ("/login", True),
        ("/login/?dest=/r/pics", True),
        ("/api/auth/token", True),
        ("/r/pics", False),
        ("/r/pics?next=/login", False),
    ])
    def test_is_auth_path(self, path, expected):
        assert is_auth_path(path) is expected


class TestClientRules:
    def test_client_rules_follow_table_order(self, rules):
        client = rules.to_client_rules()
        assert [r["upstream"] for r in client] == [r.upstream for r in rules.rules]
        assert {r["kind"] for r in client} == {"content", "static", "tracking"}

    def test_proxy_prefixes(self, rules):
        assert rules.proxy_prefixes(RouteKind.STATIC) == ["/proxy-static"]
        assert sorted(rules.proxy_prefixes(RouteKind.TRACKING)) == [
            "/tracking/error", "/tracking/rlcdn", "/tracking/w3-reporting",
        ]
