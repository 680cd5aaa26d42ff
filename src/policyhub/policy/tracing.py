"""Evaluate Tetragon TracingPolicies against per-pod process summaries."""

from __future__ import annotations

import enum
import fnmatch
import logging
from dataclasses import dataclass

from policyhub.policy.models import (
    ParsedTracingPolicy,
    TracingHook,
    TracingSelector,
    ValueMatch,
)
from policyhub.simulation.records import ProcessSummaryRecord

logger = logging.getLogger(__name__)

_SYSCALL_PREFIXES = ("__x64_sys_", "__arm64_sys_", "__ia32_sys_", "sys_")


class ProcessVerdict(enum.Enum):
    """Outcome of evaluating one process summary against one tracing policy."""

    WOULD_BLOCK = "WOULD_BLOCK"
    WOULD_ALLOW = "WOULD_ALLOW"
    NO_MATCH = "NO_MATCH"


@dataclass(frozen=True)
class ProcessMatch:
    """Verdict plus the hook that produced it."""

    verdict: ProcessVerdict
    blocked_execs: int = 0
    matched_selector: str | None = None
    action: str | None = None
    reason: str = ""


def normalize_syscall(name: str) -> str:
    """``sys_execve`` / ``__x64_sys_execve`` / ``execve`` all become ``execve``."""
    for prefix in _SYSCALL_PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix) :]
    return name


class TracingPolicyEvaluator:
    """Evaluates process summaries against one parsed TracingPolicy."""

    def __init__(self, policy: ParsedTracingPolicy) -> None:
        self.policy = policy

    @property
    def scope(self) -> str | None:
        """Namespace the policy is restricted to, or None when cluster-wide."""
        return self.policy.namespace if self.policy.is_namespaced else None

    def evaluate(self, record: ProcessSummaryRecord) -> ProcessMatch:
        scope = self.scope
        if scope is not None and record.namespace != scope:
            return ProcessMatch(
                ProcessVerdict.NO_MATCH,
                reason=f"Policy is scoped to namespace {scope}",
            )

        if not self.policy.kprobes and not self.policy.tracepoints:
            return ProcessMatch(
                ProcessVerdict.NO_MATCH,
                reason="Policy defines no kprobes or tracepoints",
            )

        for hook in self.policy.kprobes:
            count = _kprobe_count(hook, record)
            if count <= 0:
                continue
            match = _evaluate_hook(hook, record, count)
            if match is not None:
                return match

        for hook in self.policy.tracepoints:
            if record.exec_count <= 0:
                break
            match = _evaluate_hook(hook, record, record.exec_count)
            if match is not None:
                return match

        return ProcessMatch(
            ProcessVerdict.WOULD_ALLOW,
            reason=f"No blocking selector matches {record.binary}",
        )


def evaluate_process(
    policy: ParsedTracingPolicy, record: ProcessSummaryRecord
) -> ProcessMatch:
    return TracingPolicyEvaluator(policy).evaluate(record)


def _kprobe_count(hook: TracingHook, record: ProcessSummaryRecord) -> int:
    """How many times this record would have hit the hook."""
    call = normalize_syscall(hook.call)
    counts = {normalize_syscall(k): v for k, v in record.syscall_counts.items()}
    count = counts.get(call, 0)
    if count > 0:
        return count
    if call == "execve":
        return record.exec_count
    return 0


def _evaluate_hook(
    hook: TracingHook, record: ProcessSummaryRecord, count: int
) -> ProcessMatch | None:
    for selector in hook.selectors:
        if not _selector_matches(selector, record):
            continue
        action = selector.blocking_action
        if action is None:
            logger.debug(
                "%s matches %s without a blocking action", record.binary, hook.label
            )
            continue
        return ProcessMatch(
            ProcessVerdict.WOULD_BLOCK,
            blocked_execs=count,
            matched_selector=hook.label,
            action=action,
            reason=f"Process {record.binary} matches selector with {action} action",
        )
    return None


def _selector_matches(selector: TracingSelector, record: ProcessSummaryRecord) -> bool:
    if selector.match_namespaces and not any(
        _namespace_matches(m, record.namespace) for m in selector.match_namespaces
    ):
        return False
    if selector.match_binaries and not any(
        _binary_matches(m, record.binary) for m in selector.match_binaries
    ):
        return False
    # Only argument 0 (the executed path) is known from a summary
    return all(
        m.index != 0 or _arg_matches(m, record.binary) for m in selector.match_args
    )


def _namespace_matches(m: ValueMatch, namespace: str) -> bool:
    if m.operator == "NotIn":
        return namespace not in m.values
    return namespace in m.values


def _path_equals(path: str, value: str) -> bool:
    if "*" in value or "?" in value:
        return fnmatch.fnmatchcase(path, value)
    return path == value


def _binary_matches(m: ValueMatch, path: str) -> bool:
    if m.operator == "In":
        return any(_path_equals(path, v) for v in m.values)
    if m.operator == "NotIn":
        return not any(_path_equals(path, v) for v in m.values)
    if m.operator == "Prefix":
        return any(path.startswith(v) for v in m.values)
    if m.operator == "Postfix":
        return any(path.endswith(v) for v in m.values)
    return False


def _arg_matches(m: ValueMatch, path: str) -> bool:
    if m.operator == "Equal":
        return any(_path_equals(path, v) for v in m.values)
    if m.operator == "NotEqual":
        return not any(_path_equals(path, v) for v in m.values)
    if m.operator == "Prefix":
        return any(path.startswith(v) for v in m.values)
    if m.operator == "Postfix":
        return any(path.endswith(v) for v in m.values)
    return False
