"""
Client-side script injected into proxied HTML documents.

The script catches navigations and requests that the server-side rewriter
cannot see: URLs built by the page's own JavaScript, forms submitted after
their action was changed, elements added to the DOM after load.
"""

import json
import re

from webproxy.codec import ProxyCodec
from webproxy.codec.query import URL_PARAM
from webproxy.codec.token import TOKEN_PARAM
from webproxy.rewrite.context import RewriteContext
from webproxy.vars import CLIENT_RESCAN_INTERVAL_MS

_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)

_SCRIPT_TEMPLATE = """<script data-proxy-client="1">
(function () {
  'use strict';
  var CONFIG = __PROXY_CONFIG__;
  if (window.__proxyClientInstalled) { return; }
  window.__proxyClientInstalled = true;

  var SKIPPED = /^(data|javascript|vbscript|mailto|tel|sms|blob|about):/i;
  var SCHEME = /^[a-z][a-z0-9+.\\-]*:/i;
  var FETCHABLE = /^https?:$/i;
  var PROXY_HOST = new URL(CONFIG.proxyOrigin).origin;
  var stats = { rewritten: 0, failed: 0, lastError: null };

  function isProxied(url) {
    for (var i = 0; i < CONFIG.mountPaths.length; i++) {
      var prefix = CONFIG.proxyOrigin + CONFIG.mountPaths[i];
      if (url.indexOf(prefix) === 0) {
        var next = url.charAt(prefix.length);
        if (next === '' || next === '/' || next === '?' || next === '#') { return true; }
      }
    }
    return false;
  }

  function toBase64Url(text) {
    var bytes = new TextEncoder().encode(text);
    var binary = '';
    for (var i = 0; i < bytes.length; i++) { binary += String.fromCharCode(bytes[i]); }
    return btoa(binary).replace(/\\+/g, '-').replace(/\\//g, '_').replace(/=+$/, '');
  }

  function stripQuery(url) {
    return url.split('#')[0].split('?')[0];
  }

  function encodeTarget(absolute) {
    var prefix = CONFIG.proxyOrigin + CONFIG.mountPath;
    switch (CONFIG.mode) {
      case 'token':
        return prefix + '/' + toBase64Url(absolute);
      case 'token-query':
        return prefix + '?' + CONFIG.tokenParam + '=' + toBase64Url(absolute);
      case 'path':
        var split = absolute.indexOf('://');
        return prefix + '/' + absolute.slice(0, split) + '/' + absolute.slice(split + 3);
      case 'origin-path':
        var end = absolute.slice(absolute.indexOf('://') + 3).search(/[\\/?#]/);
        var cut = end < 0 ? absolute.length : absolute.indexOf('://') + 3 + end;
        return prefix + '/' + encodeURIComponent(absolute.slice(0, cut)) + absolute.slice(cut);
      default:
        return prefix + '?' + CONFIG.urlParam + '=' + encodeURIComponent(absolute);
    }
  }

  function formTarget(absolute) {
    var stripped = stripQuery(absolute);
    var prefix = CONFIG.proxyOrigin + CONFIG.mountPath;
    var hidden = {};
    if (CONFIG.mode === 'query') {
      hidden[CONFIG.urlParam] = stripped;
      return { action: prefix, hidden: hidden };
    }
    if (CONFIG.mode === 'token-query') {
      hidden[CONFIG.tokenParam] = toBase64Url(stripped);
      return { action: prefix, hidden: hidden };
    }
    return { action: encodeTarget(stripped), hidden: hidden };
  }

  // Absolute target URL for a rewritable reference, or null.
  function resolve(url) {
    var value = String(url).replace(/[\\t\\n\\r]/g, '').trim();
    if (!value || value.charAt(0) === '#' || SKIPPED.test(value)) { return null; }
    if (SCHEME.test(value) && !/^https?:/i.test(value)) { return null; }
    if (isProxied(value)) { return null; }
    var parsed;
    if (value.indexOf('//') === 0) {
      parsed = new URL(new URL(CONFIG.baseUrl).protocol + value);
    } else {
      parsed = new URL(value, CONFIG.baseUrl);
    }
    if (parsed.origin === PROXY_HOST) {
      // Built against the proxy's own location; it belongs to the target site.
      parsed = new URL(parsed.pathname + parsed.search + parsed.hash, CONFIG.baseUrl);
    }
    if (!FETCHABLE.test(parsed.protocol) || !parsed.hostname) { return null; }
    return parsed.href;
  }

  function rewrite(url) {
    if (url === null || url === undefined) { return url; }
    if (typeof url !== 'string') {
      if (url instanceof URL) { url = url.href; } else { return url; }
    }
    try {
      var absolute = resolve(url);
      if (!absolute) { return url; }
      stats.rewritten++;
      return encodeTarget(absolute);
    } catch (e) {
      stats.failed++;
      stats.lastError = String(e);
      return url;
    }
  }

  function setHiddenFields(form, fields) {
    Object.keys(fields).forEach(function (name) {
      var input = form.querySelector('input[type="hidden"][data-proxy-field="' + name + '"]');
      if (!input) {
        input = document.createElement('input');
        input.type = 'hidden';
        input.name = name;
        input.setAttribute('data-proxy-field', name);
        form.appendChild(input);
      }
      input.value = fields[name];
    });
  }

  function prepareForm(form) {
    try {
      var action = form.getAttribute('action');
      var method = (form.getAttribute('method') || 'get').toLowerCase();
      var placeholder = !action || !action.trim() || action.trim().charAt(0) === '#';
      var target = placeholder ? CONFIG.targetUrl : action;
      if (!placeholder && isProxied(target.trim())) { return; }
      var absolute = placeholder ? CONFIG.targetUrl : resolve(target);
      if (!absolute) { return; }
      if (method === 'get') {
        var submission = formTarget(absolute);
        form.setAttribute('action', submission.action);
        setHiddenFields(form, submission.hidden);
      } else {
        form.setAttribute('action', encodeTarget(absolute));
      }
    } catch (e) {
      stats.failed++;
      stats.lastError = String(e);
    }
  }

  document.addEventListener('submit', function (event) {
    if (event.target && event.target.tagName === 'FORM') { prepareForm(event.target); }
  }, true);

  var nativeSubmit = HTMLFormElement.prototype.submit;
  HTMLFormElement.prototype.submit = function () {
    prepareForm(this);
    return nativeSubmit.apply(this, arguments);
  };

  var nativeOpen = window.open;
  window.open = function (url) {
    var args = Array.prototype.slice.call(arguments);
    if (args.length) { args[0] = rewrite(url); }
    return nativeOpen.apply(window, args);
  };

  document.addEventListener('click', function (event) {
    if (event.defaultPrevented) { return; }
    var element = event.target;
    var link = element && element.closest ? element.closest('a[href], area[href]') : null;
    if (!link || link.hasAttribute('download')) { return; }
    var href = link.getAttribute('href');
    var value = (href || '').trim();
    if (!value || value.charAt(0) === '#' || SKIPPED.test(value)) { return; }
    var destination = rewrite(value);
    var frame = (link.getAttribute('target') || '').toLowerCase();
    var newContext = frame === '_blank' || event.ctrlKey || event.metaKey ||
      event.shiftKey || event.button === 1;
    event.preventDefault();
    if (newContext) {
      nativeOpen.call(window, destination, '_blank');
    } else if (frame && frame !== '_self') {
      nativeOpen.call(window, destination, frame);
    } else {
      window.location.assign(destination);
    }
  });

  ['pushState', 'replaceState'].forEach(function (name) {
    var native = history[name];
    if (!native) { return; }
    history[name] = function (state, title, url) {
      var args = Array.prototype.slice.call(arguments);
      if (args.length > 2) { args[2] = rewrite(url); }
      return native.apply(history, args);
    };
  });

  if (window.fetch) {
    var nativeFetch = window.fetch;
    window.fetch = function (resource, init) {
      try {
        if (typeof window.Request !== 'undefined' && resource instanceof window.Request) {
          var rewritten = rewrite(resource.url);
          if (rewritten !== resource.url) { resource = new Request(rewritten, resource); }
        } else {
          resource = rewrite(resource);
        }
      } catch (e) {
        stats.failed++;
        stats.lastError = String(e);
      }
      return nativeFetch.call(window, resource, init);
    };
  }

  var nativeXhrOpen = XMLHttpRequest.prototype.open;
  XMLHttpRequest.prototype.open = function (method, url) {
    var args = Array.prototype.slice.call(arguments);
    args[1] = rewrite(url);
    return nativeXhrOpen.apply(this, args);
  };

  if (navigator.sendBeacon) {
    var nativeBeacon = navigator.sendBeacon.bind(navigator);
    navigator.sendBeacon = function (url, data) {
      return nativeBeacon(rewrite(url), data);
    };
  }

  var ATTRIBUTES = [
    ['a', 'href'], ['area', 'href'], ['link', 'href'], ['img', 'src'],
    ['script', 'src'], ['iframe', 'src'], ['frame', 'src'], ['embed', 'src'],
    ['source', 'src'], ['track', 'src'], ['video', 'src'], ['video', 'poster'],
    ['audio', 'src'], ['object', 'data'], ['input', 'src']
  ];

  function rescan() {
    try {
      ATTRIBUTES.forEach(function (pair) {
        var nodes = document.querySelectorAll(pair[0] + '[' + pair[1] + ']');
        for (var i = 0; i < nodes.length; i++) {
          var value = nodes[i].getAttribute(pair[1]);
          var rewritten = rewrite(value);
          if (rewritten !== value) { nodes[i].setAttribute(pair[1], rewritten); }
        }
      });
      var forms = document.querySelectorAll('form[action]');
      for (var j = 0; j < forms.length; j++) { prepareForm(forms[j]); }
    } catch (e) {
      stats.failed++;
      stats.lastError = String(e);
    }
  }

  var pending = null;
  function scheduleRescan() {
    if (pending) { return; }
    pending = setTimeout(function () { pending = null; rescan(); }, 50);
  }

  if (window.MutationObserver) {
    new MutationObserver(scheduleRescan).observe(document.documentElement, {
      childList: true,
      subtree: true,
      attributes: true,
      attributeFilter: ['href', 'src', 'action', 'poster', 'data']
    });
  }
  if (CONFIG.rescanInterval > 0) { setInterval(rescan, CONFIG.rescanInterval); }
  if (document.readyState === 'loading') {
    document.addEventListener('DOMContentLoaded', rescan);
  } else {
    rescan();
  }

  window.__proxyDebug = function () {
    var info = { config: CONFIG, stats: stats, sample: {} };
    ['https://example.com/', '/relative/path', 'page.html', '#top', 'mailto:a@example.com']
      .forEach(function (url) { info.sample[url] = rewrite(url); });
    if (window.console) { console.log('[Proxy]', info); }
    return info;
  };
})();
</script>"""


def client_config(ctx: RewriteContext) -> dict:
    codec = ctx.codec
    return {
        "mode": codec.name,
        "proxyOrigin": ctx.proxy_origin,
        "mountPath": codec.mount_path,
        "mountPaths": list(ProxyCodec.mount_paths()),
        "urlParam": URL_PARAM,
        "tokenParam": TOKEN_PARAM,
        "targetUrl": ctx.target_url,
        "baseUrl": ctx.base_url,
        "rescanInterval": CLIENT_RESCAN_INTERVAL_MS,
    }


def generate_client_script(ctx: RewriteContext) -> str:
    config = json.dumps(client_config(ctx))
    # Keep page-controlled strings from closing the script element.
    config = config.replace("</", "<\\/").replace("<!--", "<\\!--")
    return _SCRIPT_TEMPLATE.replace("__PROXY_CONFIG__", config)


def inject_client_script(document: str, script: str) -> str:
    """Insert ``script`` before the last closing body tag, or append it."""
    closing = None
    for closing in _BODY_CLOSE.finditer(document):
        pass
    if closing is None:
        return document + script
    return document[: closing.start()] + script + document[closing.start():]
