"""
Tests for the injected client-side interception script.
"""

import json
import re

from core.proxy.interception_script import (
    SCRIPT_MARKER,
    build_client_config,
    build_interception_script,
)
from core.proxy.rewrite_rules import HOST_CHAR_CLASS, RewriteRule, RewriteRuleTable, RouteKind


def _embedded_config(script: str) -> dict:
    match = re.search(r"var CONFIG = (\{.*?\});\n", script, re.DOTALL)
    assert match, "config literal not found"
    return json.loads(match.group(1).replace("<\\/", "</"))


class TestClientConfig:
    def test_rules_match_server_table(self, rules):
        config = build_client_config(rules, "_session")
        assert config["rules"] == rules.to_client_rules()
        assert config["hostCharClass"] == HOST_CHAR_CLASS

    def test_skip_prefixes_cover_static_and_tracking(self, rules):
        config = build_client_config(rules)
        assert "/proxy-static" in config["skipPrefixes"]
        for prefix in config["trackingPrefixes"]:
            assert prefix in config["skipPrefixes"]

    def test_link_base_is_auth_host(self, rules):
        assert build_client_config(rules)["linkBase"] == "https://www.reddit.com"

    def test_session_param(self, rules):
        assert build_client_config(rules, "_session")["sessionParam"] == "_session"
        assert build_client_config(rules)["sessionParam"] == ""


class TestInterceptionScript:
    def test_wrapped_in_marked_script_tag(self, rules):
        script = build_interception_script(rules)
        assert script.startswith(f"<script {SCRIPT_MARKER}>")
        assert script.endswith("</script>")
        assert script.count("</script>") == 1

    def test_config_embedded(self, rules):
        script = build_interception_script(rules, "_session")
        assert _embedded_config(script) == build_client_config(rules, "_session")

    def test_closing_tag_in_config_escaped(self):
        table = RewriteRuleTable([
            RewriteRule("https://a.example/</script>", "", RouteKind.CONTENT, canonical=True),
        ])
        script = build_interception_script(table)
        assert script.count("</script>") == 1

    def test_patches_network_and_dom(self, rules):
        script = build_interception_script(rules)
        for hook in ("XMLHttpRequest.prototype.open", "window.fetch",
                     "Element.prototype.setAttribute", "MutationObserver"):
            assert hook in script
