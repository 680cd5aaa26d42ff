"""Parse policy YAML documents into typed rule sets."""

from __future__ import annotations

import ipaddress
import logging
from pathlib import Path

import yaml

from policyhub.errors import InvalidField, InvalidYAML, KindMismatch, MissingField
from policyhub.policy.models import (
    NAMESPACED_KINDS,
    CIDRBlock,
    Direction,
    FQDNSelector,
    LabelExpression,
    LabelSelector,
    NetworkRule,
    ParsedGatewayRoute,
    ParsedNetworkPolicy,
    ParsedPolicy,
    ParsedTracingPolicy,
    PolicyDocument,
    PolicyType,
    PortProtocol,
    TracingHook,
    TracingSelector,
    ValueMatch,
)

logger = logging.getLogger(__name__)

# (spec key, direction, is deny section)
_SECTIONS = (
    ("ingress", Direction.INGRESS, False),
    ("ingressDeny", Direction.INGRESS, True),
    ("egress", Direction.EGRESS, False),
    ("egressDeny", Direction.EGRESS, True),
)


def load_document(content: str) -> dict:
    """Parse YAML text and require a mapping at the root."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        line = None
        mark = getattr(exc, "problem_mark", None)
        if mark is not None:
            line = mark.line + 1
        problem = getattr(exc, "problem", None) or str(exc)
        where = f" at line {line}" if line else ""
        raise InvalidYAML(f"Invalid YAML syntax{where}: {problem}", line=line) from exc

    if data is None:
        raise InvalidYAML("YAML content is empty or null")
    if not isinstance(data, dict):
        raise InvalidYAML("YAML must be an object at the root level")
    return data


def detect_policy_type(content: str) -> PolicyType | None:
    """Return the policy type implied by the document's ``kind``, if any."""
    data = load_document(content)
    kind = data.get("kind")
    if not isinstance(kind, str):
        return None
    return PolicyType.from_kind(kind)


def load_policy(path: str | Path, declared_type: PolicyType) -> ParsedPolicy:
    """Load and parse a policy from a YAML file path."""
    text = Path(path).read_text(encoding="utf-8")
    return parse_policy(text, declared_type)


def parse_document(document: PolicyDocument) -> ParsedPolicy:
    return parse_policy(document.content, document.policy_type)


def parse_policy(content: str, declared_type: PolicyType) -> ParsedPolicy:
    """Parse YAML text declared as ``declared_type``.

    Raises InvalidYAML, MissingField, KindMismatch or InvalidField.
    """
    data = load_document(content)

    kind = data.get("kind")
    if not kind:
        raise MissingField("kind")
    kind = str(kind)
    _check_kind(kind, declared_type)
    _check_api_version(data.get("apiVersion"), kind, declared_type)

    metadata = data.get("metadata")
    if metadata is None:
        raise MissingField("metadata")
    if not isinstance(metadata, dict):
        raise InvalidField("Field 'metadata' must be an object", field="metadata")
    name = metadata.get("name")
    if not name:
        raise MissingField("metadata.name")
    name = str(name)

    namespace: str | None = None
    if kind in NAMESPACED_KINDS:
        namespace = str(metadata.get("namespace") or "default")

    spec = data.get("spec")
    if spec is None:
        raise MissingField("spec")
    if not isinstance(spec, dict):
        raise InvalidField("Field 'spec' must be an object", field="spec")

    if declared_type.is_network:
        return _parse_network(kind, declared_type, name, namespace, spec)
    if declared_type is PolicyType.TETRAGON:
        return _parse_tracing(kind, name, namespace, spec)
    return _parse_gateway(kind, declared_type, name, namespace, metadata, spec)


def _check_kind(kind: str, declared_type: PolicyType) -> None:
    detected = PolicyType.from_kind(kind)
    if detected is declared_type:
        return
    expected = ", ".join(declared_type.kinds)
    if detected is None:
        raise KindMismatch(
            f"Unsupported kind '{kind}' for policy type {declared_type.value} "
            f"(expected {expected})"
        )
    if declared_type.is_gateway and not detected.is_gateway:
        raise KindMismatch(
            f"Policy type {declared_type.value} expects a Gateway API resource, "
            f"but YAML contains {kind}"
        )
    if detected.is_gateway and not declared_type.is_gateway:
        raise KindMismatch(
            f"YAML contains Gateway API {detected.value} resource, "
            f"but policy type was set to {declared_type.value}"
        )
    raise KindMismatch(
        f"Type mismatch: YAML contains {kind} ({detected.value}) "
        f"but policy type was set to {declared_type.value}"
    )


def _check_api_version(api_version, kind: str, declared_type: PolicyType) -> None:
    if api_version is None:
        return
    group = declared_type.api_group
    if not str(api_version).startswith(group + "/"):
        raise InvalidField(
            f"Invalid apiVersion for {kind}: expected {group}/*, got {api_version}",
            field="apiVersion",
        )


def _as_list(value, path: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidField(
            f"Field '{path}' must be an array, got {type(value).__name__}",
            field=path,
        )
    return value


def _as_mapping(value, path: str) -> dict:
    if not isinstance(value, dict):
        raise InvalidField(
            f"Field '{path}' must be an object, got {type(value).__name__}",
            field=path,
        )
    return value


# --- Cilium network policies ------------------------------------------------


def _parse_network(
    kind: str,
    policy_type: PolicyType,
    name: str,
    namespace: str | None,
    spec: dict,
) -> ParsedNetworkPolicy:
    selector_data = spec.get("endpointSelector")
    if selector_data is None:
        selector = LabelSelector()
    else:
        selector = _parse_selector(selector_data, "spec.endpointSelector")

    sections: dict[str, tuple[NetworkRule, ...]] = {}
    for key, direction, deny in _SECTIONS:
        items = _as_list(spec.get(key), f"spec.{key}")
        sections[key] = tuple(
            _parse_rule(item, direction, deny, i, f"spec.{key}[{i}]")
            for i, item in enumerate(items)
        )

    enforces_ingress = "ingress" in spec or "ingressDeny" in spec
    enforces_egress = "egress" in spec or "egressDeny" in spec
    if not enforces_ingress and not enforces_egress:
        # No rule sections at all: the selected endpoints are isolated for ingress
        enforces_ingress = True

    return ParsedNetworkPolicy(
        name=name,
        kind=kind,
        policy_type=policy_type,
        namespace=namespace,
        endpoint_selector=selector,
        ingress=sections["ingress"],
        egress=sections["egress"],
        ingress_deny=sections["ingressDeny"],
        egress_deny=sections["egressDeny"],
        enforces_ingress=enforces_ingress,
        enforces_egress=enforces_egress,
    )


def _parse_selector(data, path: str) -> LabelSelector:
    data = _as_mapping(data, path)
    labels = _as_mapping(data.get("matchLabels") or {}, f"{path}.matchLabels")
    expressions: list[LabelExpression] = []
    for i, expr in enumerate(
        _as_list(data.get("matchExpressions"), f"{path}.matchExpressions")
    ):
        expr = _as_mapping(expr, f"{path}.matchExpressions[{i}]")
        if "key" not in expr or "operator" not in expr:
            raise MissingField(f"{path}.matchExpressions[{i}].key")
        values = _as_list(expr.get("values"), f"{path}.matchExpressions[{i}].values")
        expressions.append(
            LabelExpression(
                key=str(expr["key"]),
                operator=str(expr["operator"]),
                values=tuple(str(v) for v in values),
            )
        )
    return LabelSelector(
        match_labels=tuple((str(k), str(v)) for k, v in labels.items()),
        match_expressions=tuple(expressions),
    )


def _parse_rule(
    item, direction: Direction, deny: bool, index: int, path: str
) -> NetworkRule:
    item = _as_mapping(item, path)
    peer = "from" if direction is Direction.INGRESS else "to"

    endpoint_path = f"{path}.{peer}Endpoints"
    endpoints = tuple(
        _parse_selector(sel, f"{endpoint_path}[{i}]")
        for i, sel in enumerate(_as_list(item.get(f"{peer}Endpoints"), endpoint_path))
    )
    entity_path = f"{path}.{peer}Entities"
    entities = tuple(
        str(e).lower() for e in _as_list(item.get(f"{peer}Entities"), entity_path)
    )

    cidrs: list[CIDRBlock] = []
    for i, cidr in enumerate(_as_list(item.get(f"{peer}CIDR"), f"{path}.{peer}CIDR")):
        cidrs.append(CIDRBlock(_parse_network_addr(cidr, f"{path}.{peer}CIDR[{i}]")))
    for i, entry in enumerate(
        _as_list(item.get(f"{peer}CIDRSet"), f"{path}.{peer}CIDRSet")
    ):
        entry_path = f"{path}.{peer}CIDRSet[{i}]"
        entry = _as_mapping(entry, entry_path)
        if "cidr" not in entry:
            # cidrGroupRef and selectors cannot be resolved offline
            logger.debug("Skipping %s without an inline cidr", entry_path)
            continue
        raw_excepts = _as_list(entry.get("except"), f"{entry_path}.except")
        excepts = tuple(
            _parse_network_addr(ex, f"{entry_path}.except[{j}]")
            for j, ex in enumerate(raw_excepts)
        )
        cidrs.append(CIDRBlock(_parse_network_addr(entry["cidr"], entry_path), excepts))

    fqdns: list[FQDNSelector] = []
    if direction is Direction.EGRESS:
        for i, fq in enumerate(_as_list(item.get("toFQDNs"), f"{path}.toFQDNs")):
            fq = _as_mapping(fq, f"{path}.toFQDNs[{i}]")
            fqdns.append(
                FQDNSelector(
                    match_name=str(fq.get("matchName", "")).rstrip(".").lower(),
                    match_pattern=str(fq.get("matchPattern", "")).rstrip(".").lower(),
                )
            )

    ports: list[PortProtocol] = []
    for i, port_rule in enumerate(_as_list(item.get("toPorts"), f"{path}.toPorts")):
        port_rule = _as_mapping(port_rule, f"{path}.toPorts[{i}]")
        if port_rule.get("rules"):
            logger.debug("Ignoring L7 rules in %s.toPorts[%d]", path, i)
        for j, port in enumerate(
            _as_list(port_rule.get("ports"), f"{path}.toPorts[{i}].ports")
        ):
            ports.append(_parse_port(port, f"{path}.toPorts[{i}].ports[{j}]"))

    return NetworkRule(
        direction=direction,
        index=index,
        deny=deny,
        endpoints=endpoints,
        entities=entities,
        cidrs=tuple(cidrs),
        fqdns=tuple(fqdns),
        ports=tuple(ports),
    )


def _parse_network_addr(value, path: str):
    try:
        return ipaddress.ip_network(str(value), strict=False)
    except ValueError:
        raise InvalidField(f"Invalid CIDR '{value}'", field=path) from None


def _parse_port(data, path: str) -> PortProtocol:
    data = _as_mapping(data, path)
    raw = data.get("port", 0)
    try:
        port = int(raw)
    except (TypeError, ValueError):
        raise InvalidField(
            f"Named port '{raw}' is not supported, use a port number",
            field=f"{path}.port",
        ) from None
    if not 0 <= port <= 65535:
        raise InvalidField(f"Port {port} out of range", field=f"{path}.port")
    protocol = str(data.get("protocol") or "ANY").upper()
    return PortProtocol(port=port, protocol=protocol)


# --- Tetragon tracing policies ----------------------------------------------


def _parse_tracing(
    kind: str, name: str, namespace: str | None, spec: dict
) -> ParsedTracingPolicy:
    kprobes: list[TracingHook] = []
    for i, kp in enumerate(_as_list(spec.get("kprobes"), "spec.kprobes")):
        path = f"spec.kprobes[{i}]"
        kp = _as_mapping(kp, path)
        if not kp.get("call"):
            raise MissingField(f"{path}.call")
        kprobes.append(
            TracingHook(
                kind="kprobe",
                call=str(kp["call"]),
                syscall=bool(kp.get("syscall", False)),
                selectors=_parse_tracing_selectors(kp.get("selectors"), path),
            )
        )

    tracepoints: list[TracingHook] = []
    for i, tp in enumerate(_as_list(spec.get("tracepoints"), "spec.tracepoints")):
        path = f"spec.tracepoints[{i}]"
        tp = _as_mapping(tp, path)
        for key in ("subsystem", "event"):
            if not tp.get(key):
                raise MissingField(f"{path}.{key}")
        tracepoints.append(
            TracingHook(
                kind="tracepoint",
                call=f"{tp['subsystem']}/{tp['event']}",
                selectors=_parse_tracing_selectors(tp.get("selectors"), path),
            )
        )

    return ParsedTracingPolicy(
        name=name,
        kind=kind,
        namespace=namespace,
        kprobes=tuple(kprobes),
        tracepoints=tuple(tracepoints),
    )


def _parse_tracing_selectors(data, hook_path: str) -> tuple[TracingSelector, ...]:
    selectors: list[TracingSelector] = []
    for i, sel in enumerate(_as_list(data, f"{hook_path}.selectors")):
        path = f"{hook_path}.selectors[{i}]"
        sel = _as_mapping(sel, path)
        actions = []
        for j, action in enumerate(
            _as_list(sel.get("matchActions"), f"{path}.matchActions")
        ):
            action = _as_mapping(action, f"{path}.matchActions[{j}]")
            if action.get("action"):
                actions.append(str(action["action"]))
        selectors.append(
            TracingSelector(
                match_binaries=_parse_value_matches(sel, "matchBinaries", path),
                match_args=_parse_value_matches(sel, "matchArgs", path),
                match_namespaces=_parse_value_matches(sel, "matchNamespaces", path),
                match_actions=tuple(actions),
            )
        )
    return tuple(selectors)


def _parse_value_matches(sel: dict, key: str, path: str) -> tuple[ValueMatch, ...]:
    matches: list[ValueMatch] = []
    for i, entry in enumerate(_as_list(sel.get(key), f"{path}.{key}")):
        entry_path = f"{path}.{key}[{i}]"
        entry = _as_mapping(entry, entry_path)
        if not entry.get("operator"):
            raise MissingField(f"{entry_path}.operator")
        values = _as_list(entry.get("values"), f"{entry_path}.values")
        try:
            index = int(entry.get("index", 0))
        except (TypeError, ValueError):
            raise InvalidField(
                f"Argument index '{entry.get('index')}' must be an integer",
                field=f"{entry_path}.index",
            ) from None
        matches.append(
            ValueMatch(
                operator=str(entry["operator"]),
                values=tuple(str(v) for v in values),
                index=index,
            )
        )
    return tuple(matches)


# --- Gateway API ------------------------------------------------------------


def _parse_gateway(
    kind: str,
    policy_type: PolicyType,
    name: str,
    namespace: str | None,
    metadata: dict,
    spec: dict,
) -> ParsedGatewayRoute:
    listeners: list = []
    parent_refs: list = []
    if policy_type is PolicyType.GATEWAY:
        listeners = _as_list(spec.get("listeners"), "spec.listeners")
    else:
        if not spec.get("parentRefs"):
            raise MissingField("spec.parentRefs")
        parent_refs = _as_list(spec.get("parentRefs"), "spec.parentRefs")
        for i, ref in enumerate(parent_refs):
            ref = _as_mapping(ref, f"spec.parentRefs[{i}]")
            if not ref.get("name"):
                raise MissingField(
                    f"spec.parentRefs[{i}].name",
                    "Invalid parentRef: missing 'name' field (Gateway reference)",
                )

    hostnames = None
    if spec.get("hostnames") is not None:
        hostnames = tuple(str(h) for h in _as_list(spec["hostnames"], "spec.hostnames"))

    return ParsedGatewayRoute(
        name=name,
        kind=kind,
        policy_type=policy_type,
        namespace=namespace or "default",
        parent_refs=tuple(parent_refs),
        hostnames=hostnames,
        rules=tuple(_as_list(spec.get("rules"), "spec.rules")),
        listeners=tuple(listeners),
        labels=dict(metadata.get("labels") or {}),
        annotations=dict(metadata.get("annotations") or {}),
    )
