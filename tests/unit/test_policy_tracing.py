"""Tests for the Tetragon tracing policy evaluator."""

from __future__ import annotations

from policyhub.policy.models import PolicyType
from policyhub.policy.parser import parse_policy
from policyhub.policy.tracing import (
    ProcessVerdict,
    TracingPolicyEvaluator,
    evaluate_process,
    normalize_syscall,
)
from policyhub.simulation.records import ProcessSummaryRecord


def _tracing(spec: str, kind: str = "TracingPolicy"):
    content = (
        "apiVersion: cilium.io/v1alpha1\n"
        f"kind: {kind}\n"
        "metadata:\n  name: t\n  namespace: prod\n"
        "spec:\n" + spec
    )
    return parse_policy(content, PolicyType.TETRAGON)


def _proc(binary="/bin/bash", namespace="prod", exec_count=10, **kwargs):
    return ProcessSummaryRecord(
        namespace=namespace, binary=binary, exec_count=exec_count, **kwargs
    )


def test_matching_binary_would_block(block_bash_policy):
    result = evaluate_process(block_bash_policy, _proc())
    assert result.verdict is ProcessVerdict.WOULD_BLOCK
    assert result.blocked_execs == 10
    assert result.action == "Sigkill"
    assert result.matched_selector == "kprobe:sys_execve"
    assert "Sigkill" in result.reason


def test_other_binary_would_allow(block_bash_policy):
    record = _proc("/usr/bin/python3", exec_count=4)
    result = evaluate_process(block_bash_policy, record)
    assert result.verdict is ProcessVerdict.WOULD_ALLOW
    assert result.blocked_execs == 0


def test_namespaced_policy_ignores_other_namespaces(block_bash_policy):
    result = evaluate_process(block_bash_policy, _proc(namespace="staging"))
    assert result.verdict is ProcessVerdict.NO_MATCH
    assert result.reason == "Policy is scoped to namespace prod"


def test_cluster_wide_policy_has_no_scope():
    policy = _tracing(
        "  kprobes:\n"
        "    - call: sys_execve\n"
        "      selectors:\n"
        "        - matchBinaries: [{operator: In, values: [/bin/bash]}]\n"
        "          matchActions: [{action: Sigkill}]\n"
    )
    evaluator = TracingPolicyEvaluator(policy)
    assert evaluator.scope is None
    result = evaluator.evaluate(_proc(namespace="staging"))
    assert result.verdict is ProcessVerdict.WOULD_BLOCK


def test_policy_without_hooks_is_no_match():
    policy = _tracing("  kprobes: []\n")
    result = evaluate_process(policy, _proc())
    assert result.verdict is ProcessVerdict.NO_MATCH
    assert result.blocked_execs == 0


def test_selector_without_blocking_action_allows():
    policy = _tracing(
        "  kprobes:\n"
        "    - call: sys_execve\n"
        "      selectors:\n"
        "        - matchBinaries: [{operator: In, values: [/bin/bash]}]\n"
        "          matchActions: [{action: Post}]\n"
    )
    assert evaluate_process(policy, _proc()).verdict is ProcessVerdict.WOULD_ALLOW


def test_kprobe_uses_matching_syscall_count():
    policy = _tracing(
        "  kprobes:\n"
        "    - call: __x64_sys_openat\n"
        "      selectors:\n"
        "        - matchActions: [{action: Override}]\n"
    )
    result = evaluate_process(
        policy, _proc(syscall_counts={"openat": 25, "execve": 10})
    )
    assert result.verdict is ProcessVerdict.WOULD_BLOCK
    assert result.blocked_execs == 25
    # A process that never made the syscall is untouched
    untouched = evaluate_process(policy, _proc(syscall_counts={"execve": 10}))
    assert untouched.verdict is ProcessVerdict.WOULD_ALLOW


def test_binary_operators():
    policy = _tracing(
        "  kprobes:\n"
        "    - call: sys_execve\n"
        "      selectors:\n"
        "        - matchBinaries: [{operator: Prefix, values: [/tmp/]}]\n"
        "          matchActions: [{action: Sigkill}]\n"
        "        - matchBinaries: [{operator: NotIn, values: [/bin/sh, /bin/bash]}]\n"
        "          matchNamespaces: [{operator: In, values: [prod]}]\n"
        "          matchActions: [{action: Override}]\n"
    )
    assert evaluate_process(policy, _proc("/tmp/x")).action == "Sigkill"
    assert evaluate_process(policy, _proc("/usr/bin/curl")).action == "Override"
    assert (
        evaluate_process(policy, _proc("/bin/sh")).verdict
        is ProcessVerdict.WOULD_ALLOW
    )


def test_tracepoint_uses_exec_count():
    policy = _tracing(
        "  tracepoints:\n"
        "    - subsystem: syscalls\n"
        "      event: sys_enter_execve\n"
        "      selectors:\n"
        "        - matchArgs: [{index: 0, operator: Postfix, values: [nc]}]\n"
        "          matchActions: [{action: Sigkill}]\n"
    )
    result = evaluate_process(policy, _proc("/usr/bin/nc", exec_count=3))
    assert result.verdict is ProcessVerdict.WOULD_BLOCK
    assert result.blocked_execs == 3
    assert result.matched_selector == "tracepoint:syscalls/sys_enter_execve"


def test_normalize_syscall():
    assert normalize_syscall("sys_execve") == "execve"
    assert normalize_syscall("__arm64_sys_execve") == "execve"
    assert normalize_syscall("execve") == "execve"
