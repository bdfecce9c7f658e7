"""
Proxy modules package.

URL rewrite rules, outbound forwarding to upstream and response rewriting
(HTML passes + injected interception script).
"""

from core.proxy.rewrite_rules import RewriteRule, RewriteRuleTable, RouteKind

__all__ = ['RewriteRule', 'RewriteRuleTable', 'RouteKind']
