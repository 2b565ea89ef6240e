import re

import pytest
from flask import Flask

from core.csp import CSP_HEADER, CSPNonceManager, generate_nonce, parse_violation_report
from core.csrf import TOKEN_HEADER, TOKEN_KEY, CSRFProtection
from core.errors import CSRFTokenMissingError
from core.rate_limiter import MemoryTimestampStore, RateLimiter, RateLimitRule, rules_from_config


# CSRF

def test_generate_token_is_64_hex_and_stored():
    store = {}
    token = CSRFProtection(store).generate_token()
    assert re.fullmatch(r'[0-9a-f]{64}', token)
    assert store[TOKEN_KEY] == token


def test_validate_token():
    csrf = CSRFProtection({})
    assert not csrf.validate_token('anything')
    token = csrf.generate_token()
    assert csrf.validate_token(token)
    assert not csrf.validate_token(token[:-1] + ('0' if token[-1] != '0' else '1'))
    assert not csrf.validate_token(None)


def test_initialize_generates_once():
    csrf = CSRFProtection({})
    first = csrf.initialize()
    assert csrf.initialize() == first


def test_get_headers_requires_token():
    csrf = CSRFProtection({})
    with pytest.raises(CSRFTokenMissingError):
        csrf.get_headers()
    token = csrf.initialize()
    assert csrf.get_headers() == {TOKEN_HEADER: token}


def test_clear_token():
    csrf = CSRFProtection({})
    csrf.initialize()
    csrf.clear_token()
    assert csrf.get_token() is None
    assert not csrf.validate_token(None)


# Rate limiter

@pytest.fixture
def limiter(clock):
    return RateLimiter({'login': RateLimitRule(max_attempts=3, window_ms=60000)},
                       store=MemoryTimestampStore(), clock=clock)


def test_allows_up_to_max_attempts(limiter):
    assert [limiter.check('login') for _ in range(4)] == [True, True, True, False]


def test_remaining_attempts_and_time(limiter, clock):
    assert limiter.get_remaining_attempts('login') == 3
    assert limiter.get_remaining_time('login') == 0

    limiter.check('login')
    clock.advance(10000)
    limiter.check('login')
    assert limiter.get_remaining_attempts('login') == 1
    assert limiter.get_remaining_time('login') == 50000


def test_window_slides(limiter, clock):
    for _ in range(3):
        limiter.check('login')
    assert not limiter.check('login')

    clock.advance(60000)
    assert limiter.check('login')


def test_keys_are_independent(limiter):
    for _ in range(3):
        limiter.check('login:203.0.113.9')
    assert not limiter.check('login:203.0.113.9')
    assert limiter.check('login:198.51.100.4')


def test_namespaced_key_uses_action_rule(limiter):
    assert limiter.rule_for('login:203.0.113.9').max_attempts == 3
    assert limiter.rule_for('unknown').max_attempts == 5


def test_reset_clears_attempts(limiter):
    for _ in range(3):
        limiter.check('login')
    limiter.reset('login')
    assert limiter.check('login')


def test_rules_from_config_converts_seconds():
    rules = rules_from_config({'contact': (3, 300)})
    assert rules['contact'] == RateLimitRule(max_attempts=3, window_ms=300000)


# CSP

def test_nonce_is_32_hex():
    assert re.fullmatch(r'[0-9a-f]{32}', generate_nonce())


def test_refresh_replaces_nonce():
    manager = CSPNonceManager()
    first = manager.current_nonce
    assert manager.current_nonce == first
    assert manager.refresh() != first


def test_policy_carries_nonce_in_script_and_style():
    manager = CSPNonceManager(nonce_factory=lambda: 'abc123')
    policy = manager.build_policy()
    assert "script-src 'self' 'nonce-abc123'" in policy
    assert "style-src 'self' 'nonce-abc123'" in policy
    assert "object-src 'none'" in policy
    assert "frame-ancestors 'none'" in policy
    assert policy.endswith('upgrade-insecure-requests')


def test_custom_sources_are_rendered():
    manager = CSPNonceManager({'frame-src': ["'self'", 'https://calendly.com']})
    assert "frame-src 'self' https://calendly.com" in manager.build_policy()


def test_apply_to_response_sets_header():
    app = Flask(__name__)
    manager = CSPNonceManager(nonce_factory=lambda: 'n1')
    with app.test_request_context():
        response = manager.apply_to_response(app.make_response('ok'))
    assert "'nonce-n1'" in response.headers[CSP_HEADER]


def test_apply_nonce_to_inline_tags_only():
    manager = CSPNonceManager(nonce_factory=lambda: 'n2')
    html = manager.apply_nonce_to_html(
        '<script>init()</script><script src="/app.js"></script><style>p{}</style>'
    )
    assert '<script nonce="n2">init()</script>' in html
    assert '<script src="/app.js"></script>' in html
    assert '<style nonce="n2">' in html


def test_parse_legacy_violation_report():
    report = parse_violation_report({'csp-report': {
        'document-uri': 'https://polrydian.com/',
        'violated-directive': 'script-src',
        'blocked-uri': 'inline',
    }})
    assert report['document_uri'] == 'https://polrydian.com/'
    assert report['violated_directive'] == 'script-src'
    assert report['blocked_uri'] == 'inline'


def test_parse_reporting_api_violation():
    report = parse_violation_report([{'type': 'csp-violation', 'body': {
        'documentURL': 'https://polrydian.com/articles',
        'effectiveDirective': 'img-src',
    }}])
    assert report['document_uri'] == 'https://polrydian.com/articles'
    assert report['violated_directive'] == 'img-src'
