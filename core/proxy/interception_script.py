# core/proxy/interception_script.py
"""
Генерация клиентского скрипта перехвата.

Скрипт вставляется первым элементом <head> и до выполнения скриптов страницы
патчит XHR, fetch, создание элементов, setAttribute и ссылки, чтобы запросы,
которые страница строит динамически, тоже шли через прокси. Правила перезаписи
берутся из той же RewriteRuleTable, что и серверная перезапись HTML.
"""

import json
import logging
from typing import Optional

from core.proxy.rewrite_rules import HOST_CHAR_CLASS, RewriteRuleTable, RouteKind

logger = logging.getLogger(__name__)

# Маркер, по которому повторная вставка пропускается
SCRIPT_MARKER = 'data-scroller-intercept'

# Пути upstream, которые считаются навигацией по контенту
CONTENT_PATH_PATTERN = (
    r'^\/(r\/|u\/|user\/|comments\/|message\/|submit|wiki\/|search|prefs\/|'
    r'over18|domain\/|duplicates\/|report|live\/|gallery\/|poll\/)'
)

# Разметка листинга old.reddit
PAGINATION_SELECTORS = {
    'listing': '#siteTable',
    'item': '#siteTable > .thing',
    'next': '.nav-buttons .next-button a',
    'nav': '.nav-buttons',
}

SCROLL_THRESHOLD_PX = 800

_SCRIPT_TEMPLATE = r"""(function() {
  'use strict';
  if (window.__scrollerIntercept) return;
  window.__scrollerIntercept = true;

  var CONFIG = __SCROLLER_CONFIG__;
  var RULES = CONFIG.rules;
  var HOST_CHAR_RE = new RegExp('^' + CONFIG.hostCharClass);
  var CONTENT_PATH_RE = new RegExp(CONFIG.contentPathPattern);

  // ── 1. URL rewriting ──────────────────────────────────────────────────
  function rewriteUrl(url) {
    if (typeof url !== 'string') return url;
    for (var i = 0; i < RULES.length; i++) {
      var rule = RULES[i];
      if (url.indexOf(rule.upstream) !== 0) continue;
      var next = url.charAt(rule.upstream.length);
      if (next && HOST_CHAR_RE.test(next)) continue;
      var result = rule.proxy + url.substring(rule.upstream.length);
      if (result.charAt(0) !== '/') result = '/' + result;
      return result;
    }
    return url;
  }

  function isTrackingUrl(url) {
    if (typeof url !== 'string') return false;
    for (var i = 0; i < CONFIG.trackingPrefixes.length; i++) {
      var prefix = CONFIG.trackingPrefixes[i];
      if (url === prefix || url.indexOf(prefix + '/') === 0 || url.indexOf(prefix + '?') === 0) return true;
    }
    return false;
  }

  window.__scrollerRewriteUrl = rewriteUrl;

  // ── guards ────────────────────────────────────────────────────────────
  var NativeMutationObserver = window.MutationObserver;
  window.MutationObserver = function(callback) {
    var observer = new NativeMutationObserver(callback);
    var nativeObserve = observer.observe;
    observer.observe = function(target, options) {
      if (target && target.nodeType) return nativeObserve.call(this, target, options);
    };
    return observer;
  };
  window.MutationObserver.prototype = NativeMutationObserver.prototype;

  window.addEventListener('error', function(event) {
    if (event.filename && event.filename.indexOf('web-client-content-script') !== -1) {
      event.preventDefault();
    }
  }, true);

  // ── 2. XHR / fetch ────────────────────────────────────────────────────
  var nativeOpen = XMLHttpRequest.prototype.open;
  XMLHttpRequest.prototype.open = function(method, url) {
    var args = Array.prototype.slice.call(arguments);
    if (typeof url === 'string') args[1] = rewriteUrl(url);
    else if (url instanceof URL) args[1] = rewriteUrl(url.href);
    return nativeOpen.apply(this, args);
  };

  var nativeFetch = window.fetch;
  if (nativeFetch) {
    window.fetch = function(resource, init) {
      if (typeof resource === 'string') resource = rewriteUrl(resource);
      else if (resource instanceof URL) resource = rewriteUrl(resource.href);
      var target = resource;
      return nativeFetch.call(this, resource, init).catch(function(err) {
        if (isTrackingUrl(target)) {
          return new Response('{}', { status: 200, headers: { 'Content-Type': 'application/json' } });
        }
        throw err;
      });
    };
  }

  // ── 3. DOM attributes ─────────────────────────────────────────────────
  var URL_ATTRS = { src: true, href: true };

  var nativeSetAttribute = Element.prototype.setAttribute;
  Element.prototype.setAttribute = function(name, value) {
    if (typeof name === 'string' && URL_ATTRS[name.toLowerCase()] && typeof value === 'string') {
      value = rewriteUrl(value);
    }
    return nativeSetAttribute.call(this, name, value);
  };

  function patchUrlProperty(proto, prop) {
    if (!proto) return;
    var desc = Object.getOwnPropertyDescriptor(proto, prop);
    if (!desc || !desc.set || !desc.configurable) return;
    Object.defineProperty(proto, prop, {
      configurable: true,
      enumerable: desc.enumerable,
      get: desc.get,
      set: function(value) { desc.set.call(this, rewriteUrl(value)); }
    });
  }

  var nativeCreateElement = document.createElement;
  document.createElement = function(tagName) {
    var element = nativeCreateElement.apply(document, arguments);
    var tag = typeof tagName === 'string' ? tagName.toLowerCase() : '';
    if (tag === 'script' || tag === 'link') {
      element.setAttribute = function(name, value) {
        if (typeof name === 'string' && URL_ATTRS[name.toLowerCase()] && typeof value === 'string') {
          value = rewriteUrl(value);
        }
        return nativeSetAttribute.call(this, name, value);
      };
    }
    return element;
  };

  patchUrlProperty(window.HTMLScriptElement && HTMLScriptElement.prototype, 'src');
  patchUrlProperty(window.HTMLLinkElement && HTMLLinkElement.prototype, 'href');
  patchUrlProperty(window.HTMLImageElement && HTMLImageElement.prototype, 'src');
  patchUrlProperty(window.HTMLIFrameElement && HTMLIFrameElement.prototype, 'src');

  // ── 4. navigation links ───────────────────────────────────────────────
  var nativeHrefDesc = Object.getOwnPropertyDescriptor(HTMLAnchorElement.prototype, 'href');

  function sessionSuffix(path) {
    if (!CONFIG.sessionParam) return '';
    var current = new URLSearchParams(window.location.search).get(CONFIG.sessionParam);
    if (!current || path.indexOf(CONFIG.sessionParam + '=') !== -1) return '';
    return (path.indexOf('?') === -1 ? '?' : '&') + encodeURIComponent(CONFIG.sessionParam) + '=' + encodeURIComponent(current);
  }

  function isSkippedPath(path) {
    for (var i = 0; i < CONFIG.skipPrefixes.length; i++) {
      var prefix = CONFIG.skipPrefixes[i];
      if (path === prefix || path.indexOf(prefix + '/') === 0) return true;
    }
    return false;
  }

  function shouldFixLink(href) {
    if (!href || href === '#' || href.indexOf('javascript:') === 0) return false;
    var path = rewriteUrl(href);
    if (path.charAt(0) !== '/' || path.indexOf('//') === 0) return false;
    if (isSkippedPath(path)) return false;
    if (CONTENT_PATH_RE.test(path)) return true;
    return path === '/' || path.indexOf('/?') === 0;
  }

  function getProxyPath(href) {
    var path = rewriteUrl(href);
    var hash = '';
    var hashIndex = path.indexOf('#');
    if (hashIndex !== -1) {
      hash = path.substring(hashIndex);
      path = path.substring(0, hashIndex);
    }
    return path + sessionSuffix(path) + hash;
  }

  function fixLink(a) {
    var href = a.getAttribute('href');
    if (!href || a.hasAttribute('data-proxy-href')) return;
    if (!shouldFixLink(href)) return;
    a.setAttribute('data-proxy-href', getProxyPath(href));
    nativeHrefDesc.set.call(a, CONFIG.linkBase + rewriteUrl(href));
  }

  function fixAllLinks(root) {
    var links = (root || document).querySelectorAll('a[href]');
    for (var i = 0; i < links.length; i++) fixLink(links[i]);
  }

  document.addEventListener('DOMContentLoaded', function() { fixAllLinks(); });

  var linkObserver = new NativeMutationObserver(function(mutations) {
    for (var i = 0; i < mutations.length; i++) {
      var added = mutations[i].addedNodes;
      for (var j = 0; j < added.length; j++) {
        var node = added[j];
        if (node.nodeType !== 1) continue;
        if (node.tagName === 'A') fixLink(node);
        if (node.querySelectorAll) fixAllLinks(node);
      }
    }
  });
  linkObserver.observe(document.documentElement, { childList: true, subtree: true });

  document.addEventListener('click', function(e) {
    var a = e.target && e.target.closest ? e.target.closest('a[data-proxy-href]') : null;
    if (!a) return;
    if (e.ctrlKey || e.metaKey || e.shiftKey || e.button !== 0) return;
    e.preventDefault();
    window.location.href = a.getAttribute('data-proxy-href');
  }, true);

  // ── 5. infinite scroll ────────────────────────────────────────────────
  var SEL = CONFIG.pagination;
  var loadingPage = false;

  function showMarker(text) {
    var listing = document.querySelector(SEL.listing);
    if (!listing) return null;
    var marker = document.getElementById('scroller-page-marker');
    if (!marker) {
      marker = nativeCreateElement.call(document, 'div');
      marker.id = 'scroller-page-marker';
      marker.style.cssText = 'padding:16px;text-align:center;opacity:0.7;';
    }
    marker.textContent = text;
    listing.appendChild(marker);
    return marker;
  }

  function nextPageUrl(root) {
    var link = (root || document).querySelector(SEL.next);
    if (!link) return null;
    return link.getAttribute('data-proxy-href') || getProxyPath(link.getAttribute('href'));
  }

  function loadNextPage() {
    var url = nextPageUrl();
    if (loadingPage || !url) return;
    loadingPage = true;
    showMarker('Loading more…');

    window.fetch(url, { credentials: 'include' })
      .then(function(response) {
        if (!response.ok) throw new Error('HTTP ' + response.status);
        return response.text();
      })
      .then(function(html) {
        var doc = new DOMParser().parseFromString(html, 'text/html');
        var listing = document.querySelector(SEL.listing);
        if (!listing) return;

        var oldNav = listing.querySelector(SEL.nav);
        if (oldNav) oldNav.parentNode.removeChild(oldNav);

        var items = doc.querySelectorAll(SEL.item);
        for (var i = 0; i < items.length; i++) {
          listing.appendChild(document.importNode(items[i], true));
        }

        var newNav = doc.querySelector(SEL.nav);
        var marker = document.getElementById('scroller-page-marker');
        if (newNav && newNav.querySelector(SEL.next)) {
          listing.appendChild(document.importNode(newNav, true));
          if (marker) marker.parentNode.removeChild(marker);
        } else {
          showMarker('No more posts');
        }
        fixAllLinks(listing);
      })
      .catch(function(err) {
        console.warn('[scroller] next page failed:', err);
        var marker = document.getElementById('scroller-page-marker');
        if (marker) marker.parentNode.removeChild(marker);
      })
      .then(function() {
        loadingPage = false;
      });
  }

  window.addEventListener('scroll', function() {
    if (loadingPage) return;
    var bottom = window.innerHeight + window.scrollY;
    if (bottom >= document.documentElement.scrollHeight - CONFIG.scrollThreshold) {
      loadNextPage();
    }
  }, { passive: true });
})();"""


def build_client_config(rules: RewriteRuleTable, session_param: Optional[str] = None) -> dict:
    """Данные, которые скрипт получает от сервера"""
    skip_prefixes = rules.proxy_prefixes(RouteKind.STATIC) + rules.proxy_prefixes(RouteKind.TRACKING)
    return {
        'rules': rules.to_client_rules(),
        'hostCharClass': HOST_CHAR_CLASS,
        'contentPathPattern': CONTENT_PATH_PATTERN,
        'trackingPrefixes': rules.proxy_prefixes(RouteKind.TRACKING),
        'skipPrefixes': skip_prefixes,
        'linkBase': rules.auth_upstream or '',
        'sessionParam': session_param or '',
        'pagination': PAGINATION_SELECTORS,
        'scrollThreshold': SCROLL_THRESHOLD_PX,
    }


def build_interception_script(rules: RewriteRuleTable, session_param: Optional[str] = None) -> str:
    """
    Возвращает готовый <script> тег для вставки в <head>

    Args:
        rules: Таблица правил перезаписи
        session_param: Имя query-параметра сессии (переносится в ссылки)

    Returns:
        str: HTML фрагмент
    """
    config = json.dumps(build_client_config(rules, session_param))
    # JSON внутри <script> не должен закрывать тег
    config = config.replace('</', '<\\/')
    body = _SCRIPT_TEMPLATE.replace('__SCROLLER_CONFIG__', config)
    logger.debug(f"Interception script built: {len(body)} chars, {len(rules.rules)} rules")
    return f'<script {SCRIPT_MARKER}>{body}</script>'
