"""Domain policy for the in-VM intercepting proxy: validation and evaluation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

ALLOWLIST = 'allowlist'
DENYLIST = 'denylist'
POLICY_MODES = (ALLOWLIST, DENYLIST)

_DOMAIN_CHARS_RE = re.compile(r'^[A-Za-z0-9.*-]+$')


def matches(host: str, pattern: str) -> bool:
    """
    Example:
        >>> from claude_vm.network import matches
        >>> matches('api.github.com', '*.github.com'), matches('github.com', '*.github.com')
        (True, True)
        >>> matches('github.org', '*.github.com')
        False
    """
    if not pattern:
        return False
    if pattern.startswith('*.'):
        suffix = pattern[2:]
        return host == suffix or host.endswith('.' + suffix)
    return host == pattern


def matching_patterns(host: str, patterns: Iterable[str]) -> list[str]:
    return [p for p in patterns if matches(host, p.strip().lower())]


@dataclass(frozen=True)
class Decision:
    allowed: bool
    # One of: disabled, bypass, allowlist, denylist
    reason: str
    patterns: list[str] = field(default_factory=list)


def evaluate(host: str, policy) -> Decision:
    """Decide whether ``host`` passes ``policy`` (a ``security.network`` section)."""
    host = host.strip().lower().rstrip('.')
    if not policy.enabled:
        return Decision(True, 'disabled')
    bypass = matching_patterns(host, policy.bypass_domains)
    if bypass:
        return Decision(True, 'bypass', bypass)
    if policy.mode == ALLOWLIST:
        allowed = matching_patterns(host, policy.allowed_domains)
        return Decision(bool(allowed), ALLOWLIST, allowed)
    blocked = matching_patterns(host, policy.blocked_domains)
    return Decision(not blocked, DENYLIST, blocked)


def is_allowed(host: str, policy) -> bool:
    return evaluate(host, policy).allowed


def validate_domain_pattern(pattern: str) -> list[str]:
    problems = []
    if not pattern:
        return ['empty domain pattern']
    if not _DOMAIN_CHARS_RE.match(pattern):
        problems.append(f"'{pattern}' contains invalid characters")
    if '*' in pattern:
        if pattern.count('*') != 1 or not pattern.startswith('*.') or len(pattern) < 3:
            problems.append(
                f"'{pattern}' misuses a wildcard; only a leading '*.' is supported"
            )
    body = pattern[2:] if pattern.startswith('*.') else pattern
    if '..' in body or body.startswith('.') or body.endswith('.'):
        problems.append(f"'{pattern}' has empty labels (stray dots)")
    for label in body.split('.'):
        if label.startswith('-') or label.endswith('-') or '--' in label:
            problems.append(f"'{pattern}' has misplaced hyphens")
            break
    return problems


def validate_policy(policy) -> list[str]:
    """Return warnings for a network policy; none of them are fatal."""
    warnings = []
    if policy.mode not in POLICY_MODES:
        warnings.append(
            f"security.network.mode '{policy.mode}' is not one of "
            f'{", ".join(POLICY_MODES)}'
        )
    if policy.mode == ALLOWLIST and not policy.allowed_domains:
        warnings.append(
            'Network isolation uses allowlist mode with no allowed_domains; '
            'only bypass domains will be reachable'
        )
    for key in ('allowed_domains', 'blocked_domains', 'bypass_domains'):
        for pattern in getattr(policy, key):
            for problem in validate_domain_pattern(pattern):
                warnings.append(f'security.network.{key}: {problem}')
    both = sorted(set(policy.allowed_domains) & set(policy.blocked_domains))
    # Only the list of the active mode is consulted.
    outcome = 'allowed' if policy.mode == ALLOWLIST else 'blocked'
    for domain in both:
        warnings.append(
            f"'{domain}' is both allowed and blocked; it will be {outcome} in {policy.mode} mode"
        )
    return warnings


def policy_env(policy) -> dict[str, str]:
    """Variables the in-VM proxy runtime reads to build its filter."""
    def flag(b):
        return 'true' if b else 'false'

    return {
        'NETWORK_ISOLATION_ENABLED': 'true',
        'POLICY_MODE': policy.mode,
        'ALLOWED_DOMAINS': ','.join(policy.allowed_domains),
        'BLOCKED_DOMAINS': ','.join(policy.blocked_domains),
        'BYPASS_DOMAINS': ','.join(policy.bypass_domains),
        'BLOCK_TCP_UDP': flag(policy.block_tcp_udp),
        'BLOCK_PRIVATE_NETWORKS': flag(policy.block_private_networks),
        'BLOCK_METADATA_SERVICES': flag(policy.block_metadata_services),
    }
