"""Network policy matcher: decides ALLOWED / DENIED / NO_MATCH for one flow."""

from __future__ import annotations

import enum
import fnmatch
import ipaddress
import re
from dataclasses import dataclass

from policyhub.errors import EvaluationError
from policyhub.policy.models import (
    NAMESPACE_LABEL,
    Direction,
    NetworkRule,
    ParsedNetworkPolicy,
    normalize_labels,
)
from policyhub.simulation.records import FlowRecord

NO_MATCH_REASON = "Policy does not apply to this flow"


class Verdict(enum.Enum):
    """Outcome of evaluating one flow against one network policy."""

    ALLOWED = "ALLOWED"
    DENIED = "DENIED"
    NO_MATCH = "NO_MATCH"


@dataclass(frozen=True)
class MatchResult:
    """Verdict plus the rule that produced it."""

    verdict: Verdict
    matched_rule: str | None = None
    reason: str = ""
    direction: Direction | None = None


@dataclass(frozen=True)
class _Endpoint:
    namespace: str
    labels: dict[str, str]
    ip: str | None
    dns_name: str | None

    @property
    def in_cluster(self) -> bool:
        return bool(self.namespace or self.labels)


@dataclass
class _CompiledRule:
    """A rule with pre-compiled FQDN patterns."""

    rule: NetworkRule
    fqdn_regexes: tuple[re.Pattern[str], ...] = ()


class NetworkPolicyMatcher:
    """Evaluates flows against one parsed policy. Holds no mutable state."""

    def __init__(self, policy: ParsedNetworkPolicy) -> None:
        self.policy = policy
        self._allow = {
            d: tuple(_compile_rule(r) for r in policy.rules_for(d)) for d in Direction
        }
        self._deny = {
            d: tuple(_compile_rule(r) for r in policy.deny_rules_for(d))
            for d in Direction
        }

    def selects(self, namespace: str, labels: dict[str, str]) -> bool:
        """Whether the policy's endpoint selector picks this endpoint."""
        if self.policy.namespace is not None and namespace != self.policy.namespace:
            return False
        return self.policy.endpoint_selector.matches(labels)

    def match(self, flow: FlowRecord) -> MatchResult:
        """Evaluate a flow.

        Ingress is checked when the destination is selected, egress when the
        source is. If both apply the flow must pass both.
        """
        src = _endpoint(flow.src_namespace, flow.src_labels, flow.src_ip, None)
        dst = _endpoint(
            flow.dst_namespace, flow.dst_labels, flow.dst_ip, flow.dst_dns_name
        )

        results: list[MatchResult] = []
        for direction in Direction:
            if not self.policy.enforces(direction):
                continue
            local, peer = (dst, src) if direction is Direction.INGRESS else (src, dst)
            if not self.selects(local.namespace, local.labels):
                continue
            results.append(self._evaluate_direction(direction, peer, flow))

        if not results:
            return MatchResult(Verdict.NO_MATCH, reason=NO_MATCH_REASON)
        for result in results:
            if result.verdict is Verdict.DENIED:
                return result
        return results[0]

    def _evaluate_direction(
        self, direction: Direction, peer: _Endpoint, flow: FlowRecord
    ) -> MatchResult:
        for cr in self._deny[direction]:
            if _matches(cr, peer, flow):
                return MatchResult(
                    Verdict.DENIED,
                    matched_rule=cr.rule.rule_id,
                    reason=f"Matched {cr.rule.rule_id}: {cr.rule.describe()}",
                    direction=direction,
                )

        # First match wins
        for cr in self._allow[direction]:
            if _matches(cr, peer, flow):
                return MatchResult(
                    Verdict.ALLOWED,
                    matched_rule=cr.rule.rule_id,
                    reason=f"Matched {cr.rule.rule_id}: {cr.rule.describe()}",
                    direction=direction,
                )

        return default_deny(direction)


def default_deny(direction: Direction) -> MatchResult:
    """Verdict for a selected endpoint that no rule allows."""
    return MatchResult(
        Verdict.DENIED,
        matched_rule=None,
        reason=f"No matching {direction.value} rule, default deny",
        direction=direction,
    )


def match_flow(policy: ParsedNetworkPolicy, flow: FlowRecord) -> MatchResult:
    """Evaluate a single flow. Prefer a reused NetworkPolicyMatcher for batches."""
    return NetworkPolicyMatcher(policy).match(flow)


def _endpoint(
    namespace: str, labels: dict[str, str], ip: str | None, dns_name: str | None
) -> _Endpoint:
    normalized = normalize_labels(labels)
    if namespace:
        normalized.setdefault(NAMESPACE_LABEL, namespace)
    return _Endpoint(namespace or "", normalized, ip, dns_name)


def _compile_rule(rule: NetworkRule) -> _CompiledRule:
    regexes = []
    for fq in rule.fqdns:
        if fq.match_name:
            regexes.append(re.compile(re.escape(fq.match_name) + r"\Z", re.IGNORECASE))
        if fq.match_pattern:
            regexes.append(
                re.compile(fnmatch.translate(fq.match_pattern), re.IGNORECASE)
            )
    return _CompiledRule(rule=rule, fqdn_regexes=tuple(regexes))


def _matches(cr: _CompiledRule, peer: _Endpoint, flow: FlowRecord) -> bool:
    rule = cr.rule

    # Port constraint first (cheapest check)
    if rule.ports and not any(
        p.matches(flow.dst_port, flow.protocol) for p in rule.ports
    ):
        return False

    if (rule.endpoints or rule.entities) and not _peer_selected(rule, peer):
        return False

    if rule.cidrs:
        if not peer.ip:
            return False
        try:
            addr = ipaddress.ip_address(peer.ip)
        except ValueError:
            raise EvaluationError(f"invalid IP address {peer.ip!r}") from None
        if not any(block.contains(addr) for block in rule.cidrs):
            return False

    if cr.fqdn_regexes:
        name = (peer.dns_name or "").rstrip(".")
        if not name or not any(rx.match(name) for rx in cr.fqdn_regexes):
            return False

    return True


def _peer_selected(rule: NetworkRule, peer: _Endpoint) -> bool:
    if any(sel.matches(peer.labels) for sel in rule.endpoints):
        return True
    for entity in rule.entities:
        if entity == "all":
            return True
        if entity == "world" and not peer.in_cluster:
            return True
        if entity == "cluster" and peer.in_cluster:
            return True
    return False
