"""Selector similarity between network policies (consolidation candidates)."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass

from policyhub.errors import ParseError
from policyhub.policy.models import ParsedNetworkPolicy, PolicyStatus, PolicyType
from policyhub.policy.parser import parse_policy
from policyhub.recommend.models import PolicyRef, SimilarityScore

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 80


@dataclass(frozen=True)
class StoredPolicy:
    """A stored policy as the recommendation engine sees it."""

    id: str
    name: str
    content: str
    policy_type: PolicyType
    cluster_id: str = ""
    status: PolicyStatus = PolicyStatus.DRAFT
    deployed_at: float | None = None
    created_at: float = 0.0


@dataclass(frozen=True)
class SimilarPair:
    policy_a: PolicyRef
    policy_b: PolicyRef
    similarity: SimilarityScore


def _percent(shared: int, total: int) -> int:
    if total == 0:
        return 0
    # Round half up
    return math.floor(shared * 100 / total + 0.5)


def compute_similarity(
    policy_a: ParsedNetworkPolicy, policy_b: ParsedNetworkPolicy
) -> SimilarityScore:
    """Jaccard overlap of the ``key=value`` labels both endpoint selectors pin."""
    labels_a = policy_a.endpoint_selector.label_pairs()
    labels_b = policy_b.endpoint_selector.label_pairs()
    shared = labels_a & labels_b
    return SimilarityScore(
        similarity_percent=_percent(len(shared), len(labels_a | labels_b)),
        shared_labels=tuple(sorted(shared)),
        unique_to_a=tuple(sorted(labels_a - labels_b)),
        unique_to_b=tuple(sorted(labels_b - labels_a)),
        same_type=policy_a.kind == policy_b.kind,
    )


def find_similar_policies(
    policies: Iterable[StoredPolicy], threshold: int = DEFAULT_THRESHOLD
) -> list[SimilarPair]:
    """Pairs of same-type, non-archived Cilium policies at or above ``threshold``.

    Unparseable policies are skipped. Sorted by similarity, highest first.
    """
    parsed: list[tuple[StoredPolicy, ParsedNetworkPolicy]] = []
    for policy in policies:
        if not policy.policy_type.is_network or policy.status is PolicyStatus.ARCHIVED:
            continue
        try:
            result = parse_policy(policy.content, policy.policy_type)
        except ParseError as exc:
            logger.debug("Skipping policy %s in similarity scan: %s", policy.id, exc)
            continue
        parsed.append((policy, result))

    pairs: list[SimilarPair] = []
    for i, (a, parsed_a) in enumerate(parsed):
        for b, parsed_b in parsed[i + 1 :]:
            if a.policy_type is not b.policy_type:
                continue
            score = compute_similarity(parsed_a, parsed_b)
            if score.similarity_percent >= threshold:
                pairs.append(
                    SimilarPair(PolicyRef(a.id, a.name), PolicyRef(b.id, b.name), score)
                )

    pairs.sort(key=lambda p: p.similarity.similarity_percent, reverse=True)
    return pairs
