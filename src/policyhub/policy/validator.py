"""Two-layer policy validation: YAML syntax first, then schema checks.

Unlike :func:`policyhub.policy.parser.parse_policy`, which stops at the first
problem, :func:`validate_policy` reports every problem it can find so an editor
can show them all at once.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from policyhub.errors import FieldError, ParseError
from policyhub.policy.models import ParsedPolicy, PolicyType
from policyhub.policy.parser import load_document, parse_policy


@dataclass(frozen=True)
class _SchemaRules:
    api_versions: tuple[str, ...]
    required: tuple[str, ...]
    arrays: tuple[str, ...]


_CILIUM_ARRAYS = (
    "spec.ingress",
    "spec.egress",
    "spec.ingressDeny",
    "spec.egressDeny",
    "spec.ingress[].fromEndpoints",
    "spec.ingress[].toPorts",
    "spec.ingress[].fromCIDR",
    "spec.ingress[].fromCIDRSet",
    "spec.egress[].toEndpoints",
    "spec.egress[].toPorts",
    "spec.egress[].toFQDNs",
    "spec.egress[].toCIDR",
    "spec.egress[].toCIDRSet",
)

_ROUTE_REQUIRED = ("metadata.name", "spec", "spec.parentRefs")

SCHEMAS: dict[PolicyType, _SchemaRules] = {
    PolicyType.CILIUM_NETWORK: _SchemaRules(
        ("cilium.io/v2",), ("metadata.name", "spec"), _CILIUM_ARRAYS
    ),
    PolicyType.CILIUM_CLUSTERWIDE: _SchemaRules(
        ("cilium.io/v2",), ("metadata.name", "spec"), _CILIUM_ARRAYS
    ),
    PolicyType.TETRAGON: _SchemaRules(
        ("cilium.io/v1alpha1",),
        ("metadata.name", "spec"),
        (
            "spec.kprobes",
            "spec.tracepoints",
            "spec.kprobes[].args",
            "spec.kprobes[].selectors",
            "spec.tracepoints[].selectors",
        ),
    ),
    PolicyType.GATEWAY_HTTPROUTE: _SchemaRules(
        ("gateway.networking.k8s.io/v1", "gateway.networking.k8s.io/v1beta1"),
        _ROUTE_REQUIRED,
        ("spec.parentRefs", "spec.hostnames", "spec.rules"),
    ),
    PolicyType.GATEWAY_GRPCROUTE: _SchemaRules(
        ("gateway.networking.k8s.io/v1alpha2", "gateway.networking.k8s.io/v1"),
        _ROUTE_REQUIRED,
        ("spec.parentRefs", "spec.hostnames", "spec.rules"),
    ),
    PolicyType.GATEWAY_TCPROUTE: _SchemaRules(
        ("gateway.networking.k8s.io/v1alpha2",),
        _ROUTE_REQUIRED,
        ("spec.parentRefs", "spec.rules"),
    ),
    PolicyType.GATEWAY_TLSROUTE: _SchemaRules(
        ("gateway.networking.k8s.io/v1alpha2",),
        _ROUTE_REQUIRED,
        ("spec.parentRefs", "spec.hostnames", "spec.rules"),
    ),
    PolicyType.GATEWAY: _SchemaRules(
        ("gateway.networking.k8s.io/v1", "gateway.networking.k8s.io/v1beta1"),
        ("metadata.name", "spec", "spec.listeners"),
        ("spec.listeners",),
    ),
}


@dataclass
class ValidationResult:
    """Outcome of validating one document."""

    valid: bool
    errors: list[FieldError] = field(default_factory=list)
    parsed: ParsedPolicy | None = None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
        }


def validate_policy(content: str, declared_type: PolicyType) -> ValidationResult:
    """Validate ``content`` against the schema for ``declared_type``."""
    try:
        doc = load_document(content)
    except ParseError as exc:
        return ValidationResult(valid=False, errors=list(exc.errors))

    errors = _schema_errors(doc, declared_type)
    if errors:
        return ValidationResult(valid=False, errors=errors)

    # Schema is sound; the parser catches the remaining semantic problems
    try:
        parsed = parse_policy(content, declared_type)
    except ParseError as exc:
        return ValidationResult(valid=False, errors=list(exc.errors))
    return ValidationResult(valid=True, parsed=parsed)


def _schema_errors(doc: dict, declared_type: PolicyType) -> list[FieldError]:
    rules = SCHEMAS[declared_type]
    errors: list[FieldError] = []

    api_version = doc.get("apiVersion")
    if not api_version:
        errors.append(
            FieldError("field", "Missing required field: apiVersion", "apiVersion")
        )
    elif api_version not in rules.api_versions:
        errors.append(
            FieldError(
                "schema",
                f"Invalid apiVersion '{api_version}'. Expected one of: "
                + ", ".join(rules.api_versions),
                "apiVersion",
            )
        )

    kind = doc.get("kind")
    if not kind:
        errors.append(FieldError("field", "Missing required field: kind", "kind"))
    elif kind not in declared_type.kinds:
        errors.append(
            FieldError(
                "schema",
                f"Invalid kind '{kind}'. Expected one of: "
                + ", ".join(declared_type.kinds),
                "kind",
            )
        )

    for path in rules.required:
        if _get_nested(doc, path) is None:
            errors.append(
                FieldError("field", f"Missing required field: {path}", path)
            )

    errors.extend(_array_errors(doc, rules.arrays))

    if declared_type.is_network:
        errors.extend(_endpoint_selector_errors(doc))
    return errors


def _get_nested(doc: dict, path: str):
    current = doc
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _array_errors(doc: dict, paths: tuple[str, ...]) -> list[FieldError]:
    errors: list[FieldError] = []
    for path in paths:
        if "[]." in path:
            parent_path, child = path.split("[].", 1)
            parent = _get_nested(doc, parent_path)
            if not isinstance(parent, list):
                continue
            for i, item in enumerate(parent):
                if not isinstance(item, dict) or child not in item:
                    continue
                value = item[child]
                if value is not None and not isinstance(value, list):
                    field_path = f"{parent_path}[{i}].{child}"
                    errors.append(
                        FieldError(
                            "schema",
                            f"Field '{field_path}' must be an array, "
                            f"got {_type_name(value)}",
                            field_path,
                        )
                    )
        else:
            value = _get_nested(doc, path)
            if value is not None and not isinstance(value, list):
                errors.append(
                    FieldError(
                        "schema",
                        f"Field '{path}' must be an array, got {_type_name(value)}",
                        path,
                    )
                )
    return errors


def _endpoint_selector_errors(doc: dict) -> list[FieldError]:
    spec = doc.get("spec")
    if not isinstance(spec, dict) or spec.get("endpointSelector") is None:
        return []
    selector = spec["endpointSelector"]
    if isinstance(selector, dict):
        return []
    return [
        FieldError(
            "schema",
            "Field 'spec.endpointSelector' must be an object, "
            f"got {_type_name(selector)}",
            "spec.endpointSelector",
        )
    ]


def _type_name(value) -> str:
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    return "string"
