"""Policy data models: immutable dataclasses used across the entire codebase."""

from __future__ import annotations

import enum
import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Union

# Cilium prefixes label keys with their source ("k8s:app=web"); selectors and
# endpoints may each carry or omit the prefix.
_LABEL_SOURCES = ("k8s:", "any:")

NAMESPACE_LABEL = "io.kubernetes.pod.namespace"


class PolicyType(enum.Enum):
    """Declared type of a stored policy document."""

    CILIUM_NETWORK = "CILIUM_NETWORK"
    CILIUM_CLUSTERWIDE = "CILIUM_CLUSTERWIDE"
    TETRAGON = "TETRAGON"
    GATEWAY_HTTPROUTE = "GATEWAY_HTTPROUTE"
    GATEWAY_GRPCROUTE = "GATEWAY_GRPCROUTE"
    GATEWAY_TCPROUTE = "GATEWAY_TCPROUTE"
    GATEWAY_TLSROUTE = "GATEWAY_TLSROUTE"
    GATEWAY = "GATEWAY"

    @property
    def kinds(self) -> tuple[str, ...]:
        return _TYPE_KINDS[self]

    @property
    def api_group(self) -> str:
        if self.is_gateway:
            return "gateway.networking.k8s.io"
        return "cilium.io"

    @property
    def is_gateway(self) -> bool:
        return self.value.startswith("GATEWAY")

    @property
    def is_network(self) -> bool:
        return self in (PolicyType.CILIUM_NETWORK, PolicyType.CILIUM_CLUSTERWIDE)

    @classmethod
    def from_kind(cls, kind: str) -> PolicyType | None:
        """Map a YAML ``kind`` to the policy type it implies."""
        for policy_type, kinds in _TYPE_KINDS.items():
            if kind in kinds:
                return policy_type
        return None


_TYPE_KINDS: dict[PolicyType, tuple[str, ...]] = {
    PolicyType.CILIUM_NETWORK: ("CiliumNetworkPolicy",),
    PolicyType.CILIUM_CLUSTERWIDE: ("CiliumClusterwideNetworkPolicy",),
    PolicyType.TETRAGON: ("TracingPolicy", "TracingPolicyNamespaced"),
    PolicyType.GATEWAY_HTTPROUTE: ("HTTPRoute",),
    PolicyType.GATEWAY_GRPCROUTE: ("GRPCRoute",),
    PolicyType.GATEWAY_TCPROUTE: ("TCPRoute",),
    PolicyType.GATEWAY_TLSROUTE: ("TLSRoute",),
    PolicyType.GATEWAY: ("Gateway",),
}

# Kinds whose objects live in a namespace (namespace defaults to "default").
NAMESPACED_KINDS = frozenset(
    {
        "CiliumNetworkPolicy",
        "TracingPolicyNamespaced",
        "HTTPRoute",
        "GRPCRoute",
        "TCPRoute",
        "TLSRoute",
        "Gateway",
    }
)


class PolicyStatus(enum.Enum):
    """Lifecycle state of a stored policy."""

    DRAFT = "DRAFT"
    SIMULATING = "SIMULATING"
    PENDING = "PENDING"
    DEPLOYED = "DEPLOYED"
    UNDEPLOYING = "UNDEPLOYING"
    FAILED = "FAILED"
    ARCHIVED = "ARCHIVED"


class Direction(enum.Enum):
    """Traffic direction a rule governs, relative to the selected endpoint."""

    INGRESS = "ingress"
    EGRESS = "egress"


@dataclass(frozen=True)
class PolicyDocument:
    """Raw policy text plus the type the caller declared for it."""

    content: str
    policy_type: PolicyType
    policy_id: str = ""
    name: str = ""


def strip_label_source(key: str) -> str:
    for prefix in _LABEL_SOURCES:
        if key.startswith(prefix):
            return key[len(prefix) :]
    return key


def normalize_labels(labels: Mapping[str, str]) -> dict[str, str]:
    """Drop Cilium source prefixes so keys compare equal across sources."""
    return {strip_label_source(k): str(v) for k, v in labels.items()}


@dataclass(frozen=True)
class LabelExpression:
    """One ``matchExpressions`` entry."""

    key: str
    operator: str
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        key = strip_label_source(self.key)
        if self.operator == "In":
            return labels.get(key) in self.values
        if self.operator == "NotIn":
            return labels.get(key) not in self.values
        if self.operator == "Exists":
            return key in labels
        if self.operator == "DoesNotExist":
            return key not in labels
        # Unknown operator never matches
        return False


@dataclass(frozen=True)
class LabelSelector:
    """Kubernetes-style label selector (matchLabels + matchExpressions).

    An empty selector selects every endpoint.
    """

    match_labels: tuple[tuple[str, str], ...] = ()
    match_expressions: tuple[LabelExpression, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Check a set of endpoint labels. ``labels`` must be normalized."""
        for key, value in self.match_labels:
            if labels.get(strip_label_source(key)) != value:
                return False
        return all(expr.matches(labels) for expr in self.match_expressions)

    def label_pairs(self) -> frozenset[str]:
        """The ``key=value`` pairs this selector pins down."""
        pairs = {f"{k}={v}" for k, v in self.match_labels}
        for expr in self.match_expressions:
            if expr.operator == "In" and len(expr.values) == 1:
                pairs.add(f"{expr.key}={expr.values[0]}")
        return frozenset(pairs)

    def namespace(self) -> str | None:
        """The namespace this selector pins via the namespace label, if any."""
        for key, value in self.match_labels:
            if strip_label_source(key) == NAMESPACE_LABEL:
                return value
        return None


@dataclass(frozen=True)
class PortProtocol:
    """A port/protocol pair. Port 0 matches any port, ANY any protocol."""

    port: int = 0
    protocol: str = "ANY"

    def matches(self, port: int, protocol: str) -> bool:
        if self.port != 0 and self.port != port:
            return False
        if self.protocol == "ANY":
            return True
        return self.protocol == protocol.upper()

    def __str__(self) -> str:
        port = str(self.port) if self.port else "*"
        return f"{port}/{self.protocol}"


@dataclass(frozen=True)
class CIDRBlock:
    """A CIDR with optional excluded sub-ranges (``fromCIDRSet.except``)."""

    network: ipaddress.IPv4Network | ipaddress.IPv6Network
    excepts: tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...] = ()

    def contains(
        self, addr: ipaddress.IPv4Address | ipaddress.IPv6Address
    ) -> bool:
        if addr.version != self.network.version or addr not in self.network:
            return False
        return not any(
            addr.version == ex.version and addr in ex for ex in self.excepts
        )


@dataclass(frozen=True)
class FQDNSelector:
    """A ``toFQDNs`` entry: exact name or ``*`` pattern."""

    match_name: str = ""
    match_pattern: str = ""


@dataclass(frozen=True)
class NetworkRule:
    """One allow or deny rule. Present categories are ANDed, entries ORed."""

    direction: Direction
    index: int
    deny: bool = False
    endpoints: tuple[LabelSelector, ...] = ()
    entities: tuple[str, ...] = ()
    cidrs: tuple[CIDRBlock, ...] = ()
    fqdns: tuple[FQDNSelector, ...] = ()
    ports: tuple[PortProtocol, ...] = ()

    @property
    def rule_id(self) -> str:
        section = self.direction.value + ("Deny" if self.deny else "")
        return f"{section}[{self.index}]"

    def describe(self) -> str:
        verb = "Deny" if self.deny else "Allow"
        text = f"{verb} {self.direction.value}"
        if self.ports:
            text += " on ports " + ", ".join(str(p) for p in self.ports)
        return text


@dataclass(frozen=True)
class ParsedNetworkPolicy:
    """A Cilium (clusterwide) network policy reduced to its rule sets."""

    name: str
    kind: str
    policy_type: PolicyType
    namespace: str | None
    endpoint_selector: LabelSelector
    ingress: tuple[NetworkRule, ...] = ()
    egress: tuple[NetworkRule, ...] = ()
    ingress_deny: tuple[NetworkRule, ...] = ()
    egress_deny: tuple[NetworkRule, ...] = ()
    enforces_ingress: bool = False
    enforces_egress: bool = False

    def rules_for(self, direction: Direction) -> tuple[NetworkRule, ...]:
        if direction is Direction.INGRESS:
            return self.ingress
        return self.egress

    def deny_rules_for(self, direction: Direction) -> tuple[NetworkRule, ...]:
        if direction is Direction.INGRESS:
            return self.ingress_deny
        return self.egress_deny

    def enforces(self, direction: Direction) -> bool:
        if direction is Direction.INGRESS:
            return self.enforces_ingress
        return self.enforces_egress


# Tetragon actions that stop the traced operation.
BLOCKING_ACTIONS = frozenset({"Sigkill", "Signal", "Override", "Block"})


@dataclass(frozen=True)
class ValueMatch:
    """An operator over a list of values, as used by matchBinaries and matchArgs."""

    operator: str
    values: tuple[str, ...] = ()
    index: int = 0


@dataclass(frozen=True)
class TracingSelector:
    """One entry of a hook's ``selectors`` list."""

    match_binaries: tuple[ValueMatch, ...] = ()
    match_args: tuple[ValueMatch, ...] = ()
    match_namespaces: tuple[ValueMatch, ...] = ()
    match_actions: tuple[str, ...] = ()

    @property
    def blocking_action(self) -> str | None:
        for action in self.match_actions:
            if action in BLOCKING_ACTIONS:
                return action
        return None


@dataclass(frozen=True)
class TracingHook:
    """A kprobe or tracepoint with its selectors."""

    kind: str  # kprobe | tracepoint
    call: str
    syscall: bool = False
    selectors: tuple[TracingSelector, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.kind}:{self.call}"


@dataclass(frozen=True)
class ParsedTracingPolicy:
    """A Tetragon TracingPolicy / TracingPolicyNamespaced."""

    name: str
    kind: str
    namespace: str | None = None
    kprobes: tuple[TracingHook, ...] = ()
    tracepoints: tuple[TracingHook, ...] = ()

    @property
    def is_namespaced(self) -> bool:
        return self.kind == "TracingPolicyNamespaced"


@dataclass(frozen=True)
class ParsedGatewayRoute:
    """A Gateway API route or Gateway. Routing content is passed through."""

    name: str
    kind: str
    policy_type: PolicyType
    namespace: str = "default"
    parent_refs: tuple = ()
    hostnames: tuple[str, ...] | None = None
    rules: tuple = ()
    listeners: tuple = ()
    labels: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    annotations: dict[str, str] = field(
        default_factory=dict, hash=False, compare=False
    )


ParsedPolicy = Union[ParsedNetworkPolicy, ParsedTracingPolicy, ParsedGatewayRoute]
