# core/csp.py
"""
Content-Security-Policy nonce management

A fresh nonce is generated for every page load (every request in the web
app) and written into both script-src and style-src of the policy header.
Inline <script>/<style> tags rendered into the page receive the same nonce;
anything untagged is blocked by the browser.
"""

import logging
import secrets
from typing import Any, Callable, Dict, List, Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

NONCE_BYTES = 16
CSP_HEADER = 'Content-Security-Policy'

DEFAULT_SOURCES = {
    'img-src': ["'self'", 'data:'],
    'font-src': ["'self'", 'data:'],
    'connect-src': ["'self'"],
    'media-src': ["'self'"],
    'frame-src': ["'self'"],
}


def generate_nonce() -> str:
    """16 random bytes, hex encoded (32 characters)"""
    return secrets.token_hex(NONCE_BYTES)


class CSPNonceManager:
    """
    Holds the active nonce and renders the policy around it

    Args:
        sources: Allow-lists for img/font/connect/media/frame sources
        nonce_factory: Override for nonce generation
    """

    def __init__(self, sources: Optional[Dict[str, List[str]]] = None,
                 nonce_factory: Callable[[], str] = generate_nonce):
        self.sources = dict(DEFAULT_SOURCES)
        if sources:
            self.sources.update(sources)
        self.nonce_factory = nonce_factory
        self._nonce: Optional[str] = None

    @property
    def current_nonce(self) -> str:
        if self._nonce is None:
            self._nonce = self.nonce_factory()
        return self._nonce

    def refresh(self) -> str:
        """Replace the active nonce (page load, route change)"""
        self._nonce = self.nonce_factory()
        return self._nonce

    def build_policy(self) -> str:
        nonce = self.current_nonce
        directives = [
            ('default-src', ["'self'"]),
            ('script-src', ["'self'", f"'nonce-{nonce}'", "'wasm-unsafe-eval'"]),
            # unsafe-inline stays for utility-class CSS; browsers ignore it when a nonce is present
            ('style-src', ["'self'", f"'nonce-{nonce}'", "'unsafe-inline'"]),
            ('img-src', self.sources['img-src']),
            ('font-src', self.sources['font-src']),
            ('connect-src', self.sources['connect-src']),
            ('media-src', self.sources['media-src']),
            ('frame-src', self.sources['frame-src']),
            ('object-src', ["'none'"]),
            ('frame-ancestors', ["'none'"]),
            ('base-uri', ["'self'"]),
            ('form-action', ["'self'"]),
            ('require-trusted-types-for', ["'script'"]),
            ('upgrade-insecure-requests', []),
        ]
        return '; '.join(
            f"{name} {' '.join(values)}" if values else name
            for name, values in directives
        )

    def apply_to_response(self, response):
        """Write the policy header with the current nonce"""
        response.headers[CSP_HEADER] = self.build_policy()
        return response

    def apply_nonce_to_html(self, html: str) -> str:
        """
        Tag inline scripts and styles in rendered HTML with the current nonce

        Scripts loaded by src are left alone; they are covered by 'self'.
        """
        if not html:
            return html
        soup = BeautifulSoup(html, 'html.parser')
        nonce = self.current_nonce
        for script in soup.find_all('script'):
            if not script.get('src'):
                script['nonce'] = nonce
        for style in soup.find_all('style'):
            style['nonce'] = nonce
        return str(soup)


def parse_violation_report(payload: Any) -> Dict[str, Optional[str]]:
    """
    Normalize a browser CSP report

    Accepts both the legacy {"csp-report": {...}} body and the Reporting API
    shape ({"type": "csp-violation", "body": {...}}).
    """
    if isinstance(payload, list):
        # Reporting API batches; entries that are not objects are ignored
        payload = next((entry for entry in payload if isinstance(entry, dict)), None)
    if not isinstance(payload, dict):
        payload = {}
    report = payload.get('csp-report') or payload.get('body') or payload
    if not isinstance(report, dict):
        report = {}

    return {
        'document_uri': report.get('document-uri') or report.get('documentURL'),
        'violated_directive': report.get('violated-directive') or report.get('effectiveDirective'),
        'blocked_uri': report.get('blocked-uri') or report.get('blockedURL'),
        'source_file': report.get('source-file') or report.get('sourceFile'),
        'line_number': report.get('line-number') or report.get('lineNumber'),
    }
