from __future__ import annotations

import pytest

from claude_vm.config import NetworkSection
from claude_vm.network import (
    evaluate,
    is_allowed,
    matches,
    policy_env,
    validate_domain_pattern,
    validate_policy,
)


def _policy(**kwargs) -> NetworkSection:
    kwargs.setdefault('enabled', True)
    return NetworkSection(**kwargs)


@pytest.mark.parametrize('host,pattern,expected', [
    ('github.com', 'github.com', True),
    ('api.github.com', 'github.com', False),
    ('api.github.com', '*.github.com', True),
    ('a.b.github.com', '*.github.com', True),
    ('github.com', '*.github.com', True),
    ('notgithub.com', '*.github.com', False),
    ('github.com', '', False),
])
def test_matches(host, pattern, expected) -> None:
    assert matches(host, pattern) is expected


def test_disabled_policy_allows_everything() -> None:
    decision = evaluate('evil.com', NetworkSection(blocked_domains=['evil.com']))
    assert decision.allowed and decision.reason == 'disabled'


def test_denylist() -> None:
    policy = _policy(blocked_domains=['*.evil.com'])
    assert not is_allowed('x.evil.com', policy)
    assert is_allowed('good.com', policy)
    decision = evaluate('EVIL.com.', policy)
    assert not decision.allowed
    assert decision.patterns == ['*.evil.com']


def test_allowlist() -> None:
    policy = _policy(mode='allowlist', allowed_domains=['*.github.com'])
    assert is_allowed('api.github.com', policy)
    decision = evaluate('pypi.org', policy)
    assert not decision.allowed and decision.reason == 'allowlist'


def test_denylist_ignores_allowed_domains() -> None:
    policy = _policy(allowed_domains=['*.example.com'], blocked_domains=['ads.example.com'])
    decision = evaluate('ads.example.com', policy)
    assert decision.allowed is False
    assert decision.reason == 'denylist'
    assert decision.patterns == ['ads.example.com']
    decision = evaluate('www.example.com', policy)
    assert decision.allowed is True and decision.patterns == []


def test_patterns_match_case_insensitively() -> None:
    assert is_allowed('API.x.com', _policy(mode='allowlist', allowed_domains=['API.x.com']))
    decision = evaluate('cdn.Tracker.IO', _policy(blocked_domains=['*.TRACKER.io']))
    assert not decision.allowed
    assert decision.patterns == ['*.TRACKER.io']


def test_bypass_short_circuits() -> None:
    policy = _policy(mode='allowlist', bypass_domains=['*.apple.com'])
    decision = evaluate('swscan.apple.com', policy)
    assert decision.allowed and decision.reason == 'bypass'


def test_validate_domain_pattern() -> None:
    assert validate_domain_pattern('*.github.com') == []
    assert validate_domain_pattern('') == ['empty domain pattern']
    assert validate_domain_pattern('git*hub.com')
    assert validate_domain_pattern('a_b.com')
    assert validate_domain_pattern('-bad.com')
    assert validate_domain_pattern('.lead.com')


def test_validate_policy() -> None:
    warnings = validate_policy(_policy(mode='graylist', allowed_domains=['a.com'], blocked_domains=['a.com']))
    assert any("'graylist'" in w for w in warnings)
    assert any('both allowed and blocked' in w for w in warnings)
    assert validate_policy(_policy(blocked_domains=['ok.com'])) == []
    warnings = validate_policy(_policy(allowed_domains=['a.com'], blocked_domains=['a.com']))
    assert warnings == ["'a.com' is both allowed and blocked; it will be blocked in denylist mode"]


def test_policy_env() -> None:
    env = policy_env(_policy(allowed_domains=['a.com', 'b.com'], block_tcp_udp=False))
    assert env['NETWORK_ISOLATION_ENABLED'] == 'true'
    assert env['POLICY_MODE'] == 'denylist'
    assert env['ALLOWED_DOMAINS'] == 'a.com,b.com'
    assert env['BLOCK_TCP_UDP'] == 'false'
    assert env['BLOCK_METADATA_SERVICES'] == 'true'
