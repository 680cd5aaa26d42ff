"""Draft CiliumNetworkPolicies that would close observed coverage gaps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import yaml

from policyhub.recommend.models import CoverageGap

logger = logging.getLogger(__name__)

NAMESPACE_LABEL = "k8s:io.kubernetes.pod.namespace"


def _policy_name(src_namespace: str, dst_namespace: str, dst_port: int) -> str:
    return f"allow-{src_namespace}-to-{dst_namespace}-{dst_port}"


def _ingress_rule(src_namespace: str, ports: list[int]) -> dict:
    return {
        "fromEndpoints": [{"matchLabels": {NAMESPACE_LABEL: src_namespace}}],
        "toPorts": [
            {"ports": [{"port": str(port), "protocol": "TCP"} for port in ports]}
        ],
    }


def _document(name: str, namespace: str, ingress: list[dict]) -> dict:
    # An empty endpointSelector selects every pod in the policy's namespace.
    return {
        "apiVersion": "cilium.io/v2",
        "kind": "CiliumNetworkPolicy",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"endpointSelector": {}, "ingress": ingress},
    }


def _dump(data: dict) -> str:
    result: str = yaml.dump(data, default_flow_style=False, sort_keys=False)
    return result


def generate_policy_for_gap(gap: CoverageGap) -> str:
    """YAML for a policy admitting the gap's source namespace on its port."""
    name = _policy_name(gap.src_namespace, gap.dst_namespace, gap.dst_port)
    ingress = [_ingress_rule(gap.src_namespace, [gap.dst_port])]
    return _dump(_document(name, gap.dst_namespace, ingress))


@dataclass
class _ObservedPeer:
    ports: set[int] = field(default_factory=set)
    count: int = 0


class GapPolicyGenerator:
    """Collects coverage gaps and drafts one policy per destination namespace.

    Usage:
        1. Create a generator
        2. Feed it CoverageGaps via observe()
        3. Call generate_policies() for the documents, or export_yaml()
           for a multi-document YAML string
    """

    def __init__(self) -> None:
        # dst namespace -> src namespace -> observed ports
        self._peers: dict[str, dict[str, _ObservedPeer]] = {}

    @property
    def namespace_count(self) -> int:
        return len(self._peers)

    def observe(self, gap: CoverageGap) -> None:
        peers = self._peers.setdefault(gap.dst_namespace, {})
        peer = peers.setdefault(gap.src_namespace, _ObservedPeer())
        peer.ports.add(gap.dst_port)
        peer.count += gap.count

    def generate_policies(self) -> list[dict]:
        """Policy documents, sources ordered by observed traffic (desc)."""
        documents = []
        for dst_namespace in sorted(self._peers):
            peers = self._peers[dst_namespace]
            ingress = [
                _ingress_rule(src, sorted(peer.ports))
                for src, peer in sorted(
                    peers.items(), key=lambda item: (-item[1].count, item[0])
                )
            ]
            documents.append(
                _document(f"allow-observed-to-{dst_namespace}", dst_namespace, ingress)
            )
        logger.debug("Drafted %d policies from coverage gaps", len(documents))
        return documents

    def export_yaml(self) -> str:
        result: str = yaml.dump_all(
            self.generate_policies(), default_flow_style=False, sort_keys=False
        )
        return result
