"""Repository classes for async CRUD operations on SQLite."""

from __future__ import annotations

import json
import time
from collections.abc import Iterable, Sequence

import aiosqlite

from policyhub.policy.models import PolicyStatus, PolicyType
from policyhub.recommend.engine import Cluster, PolicyMatch
from policyhub.recommend.models import CoverageGap
from policyhub.recommend.similarity import StoredPolicy
from policyhub.reporting.summary import HourlySummary
from policyhub.simulation.export import to_json
from policyhub.simulation.models import Simulation
from policyhub.simulation.records import FlowRecord, ProcessSummaryRecord


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


class ClusterRepo:
    """CRUD for clusters."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def save(self, cluster: Cluster) -> None:
        await self._db.execute(
            "INSERT INTO clusters (id, name, organization_id, created_at) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET name = excluded.name, "
            "organization_id = excluded.organization_id",
            (cluster.id, cluster.name, cluster.organization_id, time.time()),
        )
        await self._db.commit()

    async def get(self, cluster_id: str) -> Cluster | None:
        cursor = await self._db.execute(
            "SELECT * FROM clusters WHERE id = ?", (cluster_id,)
        )
        row = await cursor.fetchone()
        return _cluster(row) if row else None

    async def list_all(self, organization_id: str | None = None) -> list[Cluster]:
        if organization_id is None:
            cursor = await self._db.execute("SELECT * FROM clusters ORDER BY name")
        else:
            cursor = await self._db.execute(
                "SELECT * FROM clusters WHERE organization_id = ? ORDER BY name",
                (organization_id,),
            )
        return [_cluster(row) async for row in cursor]


class PolicyRepo:
    """CRUD for stored policies."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def save(self, policy: StoredPolicy) -> None:
        await self._db.execute(
            "INSERT OR REPLACE INTO policies "
            "(id, name, policy_type, content, cluster_id, status, "
            "deployed_at, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                policy.id,
                policy.name,
                policy.policy_type.value,
                policy.content,
                policy.cluster_id,
                policy.status.value,
                policy.deployed_at,
                policy.created_at or time.time(),
            ),
        )
        await self._db.commit()

    async def update_status(
        self,
        policy_id: str,
        status: PolicyStatus,
        deployed_at: float | None = None,
    ) -> None:
        await self._db.execute(
            "UPDATE policies SET status = ?, "
            "deployed_at = COALESCE(?, deployed_at) WHERE id = ?",
            (status.value, deployed_at, policy_id),
        )
        await self._db.commit()

    async def get(self, policy_id: str) -> StoredPolicy | None:
        cursor = await self._db.execute(
            "SELECT * FROM policies WHERE id = ?", (policy_id,)
        )
        row = await cursor.fetchone()
        return _policy(row) if row else None

    async def list_by_clusters(self, cluster_ids: Sequence[str]) -> list[StoredPolicy]:
        if not cluster_ids:
            return []
        cursor = await self._db.execute(
            "SELECT * FROM policies WHERE cluster_id IN "
            f"({_placeholders(cluster_ids)}) ORDER BY created_at",
            tuple(cluster_ids),
        )
        return [_policy(row) async for row in cursor]


class FlowRepo:
    """Stored flow records."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def add_many(self, cluster_id: str, records: Iterable[FlowRecord]) -> int:
        rows = [
            (
                r.id,
                cluster_id,
                r.src_namespace,
                r.src_pod_name,
                json.dumps(r.src_labels),
                r.src_ip,
                r.dst_namespace,
                r.dst_pod_name,
                json.dumps(r.dst_labels),
                r.dst_ip,
                r.dst_dns_name,
                r.dst_port,
                r.protocol,
                r.verdict,
                r.count,
                r.timestamp,
            )
            for r in records
        ]
        await self._db.executemany(
            "INSERT OR REPLACE INTO flow_records "
            "(id, cluster_id, src_namespace, src_pod_name, src_labels, src_ip, "
            "dst_namespace, dst_pod_name, dst_labels, dst_ip, dst_dns_name, "
            "dst_port, protocol, verdict, flow_count, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
        await self._db.commit()
        return len(rows)

    async def fetch(
        self, cluster_id: str, start: float, end: float
    ) -> list[FlowRecord]:
        cursor = await self._db.execute(
            "SELECT * FROM flow_records WHERE cluster_id = ? "
            "AND timestamp >= ? AND timestamp <= ? ORDER BY timestamp",
            (cluster_id, start, end),
        )
        return [_flow(row) async for row in cursor]


class ProcessRepo:
    """Stored process summaries."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def add_many(
        self,
        cluster_id: str,
        records: Iterable[ProcessSummaryRecord],
        window_start: float | None = None,
        window_end: float | None = None,
    ) -> int:
        rows = [
            (
                r.id,
                cluster_id,
                r.namespace,
                r.pod_name,
                r.binary,
                r.exec_count,
                json.dumps(r.syscall_counts),
                window_start,
                window_end,
            )
            for r in records
        ]
        await self._db.executemany(
            "INSERT OR REPLACE INTO process_summaries "
            "(id, cluster_id, namespace, pod_name, binary, exec_count, "
            "syscall_counts, window_start, window_end) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
        await self._db.commit()
        return len(rows)

    async def fetch(
        self, cluster_id: str, start: float, end: float
    ) -> list[ProcessSummaryRecord]:
        """Summaries whose window overlaps [start, end]. Unbounded windows always do."""
        cursor = await self._db.execute(
            "SELECT * FROM process_summaries WHERE cluster_id = ? "
            "AND (window_end IS NULL OR window_end >= ?) "
            "AND (window_start IS NULL OR window_start <= ?)",
            (cluster_id, start, end),
        )
        return [_process(row) async for row in cursor]


class SummaryRepo:
    """Hourly verdict summaries, one row per cluster and hour."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def save(self, summary: HourlySummary) -> None:
        await self._db.execute(
            "INSERT OR REPLACE INTO hourly_summaries "
            "(cluster_id, hour, allowed_count, blocked_count, "
            "no_policy_count, coverage_gaps) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                summary.cluster_id,
                summary.hour,
                summary.allowed_count,
                summary.blocked_count,
                summary.no_policy_count,
                json.dumps([g.to_dict() for g in summary.coverage_gaps]),
            ),
        )
        await self._db.commit()

    async def list_since(
        self, cluster_ids: Sequence[str], since: float, until: float | None = None
    ) -> list[HourlySummary]:
        if not cluster_ids:
            return []
        query = (
            "SELECT * FROM hourly_summaries WHERE cluster_id IN "
            f"({_placeholders(cluster_ids)}) AND hour >= ?"
        )
        params: list = [*cluster_ids, since]
        if until is not None:
            query += " AND hour <= ?"
            params.append(until)
        cursor = await self._db.execute(query + " ORDER BY hour", tuple(params))
        return [_summary(row) async for row in cursor]


class MatchRepo:
    """Which deployed policy governed observed traffic, and when."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def add_many(self, matches: Iterable[PolicyMatch]) -> None:
        await self._db.executemany(
            "INSERT INTO policy_matches (cluster_id, policy_name, timestamp) "
            "VALUES (?, ?, ?)",
            [(m.cluster_id, m.policy_name, m.timestamp) for m in matches],
        )
        await self._db.commit()

    async def list_since(
        self, cluster_ids: Sequence[str], since: float
    ) -> list[PolicyMatch]:
        if not cluster_ids:
            return []
        cursor = await self._db.execute(
            "SELECT cluster_id, policy_name, MAX(timestamp) AS timestamp "
            "FROM policy_matches WHERE cluster_id IN "
            f"({_placeholders(cluster_ids)}) AND timestamp >= ? "
            "GROUP BY cluster_id, policy_name",
            (*cluster_ids, since),
        )
        return [
            PolicyMatch(row["cluster_id"], row["policy_name"], row["timestamp"])
            async for row in cursor
        ]


class SimulationRepo:
    """Persisted simulation runs. Results are stored as safe-integer JSON."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def save(self, sim: Simulation) -> None:
        result = to_json(sim.result, indent=None) if sim.result is not None else None
        await self._db.execute(
            "INSERT OR REPLACE INTO simulations "
            "(id, policy_id, policy_name, cluster_id, status, start_time, "
            "end_time, error, result, created_at, started_at, completed_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                sim.id,
                sim.policy.policy_id,
                sim.policy.name,
                sim.cluster_id,
                sim.status.value,
                sim.start_time,
                sim.end_time,
                sim.error,
                result,
                sim.created_at,
                sim.started_at,
                sim.completed_at,
            ),
        )
        await self._db.commit()

    async def get(self, simulation_id: str) -> dict | None:
        cursor = await self._db.execute(
            "SELECT * FROM simulations WHERE id = ?", (simulation_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        data = dict(row)
        if data["result"] is not None:
            data["result"] = json.loads(data["result"])
        return data

    async def list_all(self, limit: int = 50, offset: int = 0) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT id, policy_id, policy_name, cluster_id, status, error, "
            "created_at, completed_at FROM simulations "
            "ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [dict(row) async for row in cursor]


def _cluster(row: aiosqlite.Row) -> Cluster:
    return Cluster(
        id=row["id"], name=row["name"], organization_id=row["organization_id"]
    )


def _policy(row: aiosqlite.Row) -> StoredPolicy:
    return StoredPolicy(
        id=row["id"],
        name=row["name"],
        content=row["content"],
        policy_type=PolicyType(row["policy_type"]),
        cluster_id=row["cluster_id"],
        status=PolicyStatus(row["status"]),
        deployed_at=row["deployed_at"],
        created_at=row["created_at"],
    )


def _flow(row: aiosqlite.Row) -> FlowRecord:
    return FlowRecord(
        id=row["id"],
        src_namespace=row["src_namespace"],
        src_pod_name=row["src_pod_name"],
        src_labels=json.loads(row["src_labels"]),
        src_ip=row["src_ip"],
        dst_namespace=row["dst_namespace"],
        dst_pod_name=row["dst_pod_name"],
        dst_labels=json.loads(row["dst_labels"]),
        dst_ip=row["dst_ip"],
        dst_dns_name=row["dst_dns_name"],
        dst_port=row["dst_port"],
        protocol=row["protocol"],
        verdict=row["verdict"],
        count=row["flow_count"],
        timestamp=row["timestamp"],
    )


def _process(row: aiosqlite.Row) -> ProcessSummaryRecord:
    return ProcessSummaryRecord(
        id=row["id"],
        namespace=row["namespace"],
        pod_name=row["pod_name"],
        binary=row["binary"],
        exec_count=row["exec_count"],
        syscall_counts=json.loads(row["syscall_counts"]),
    )


def _summary(row: aiosqlite.Row) -> HourlySummary:
    return HourlySummary(
        cluster_id=row["cluster_id"],
        hour=row["hour"],
        allowed_count=row["allowed_count"],
        blocked_count=row["blocked_count"],
        no_policy_count=row["no_policy_count"],
        coverage_gaps=tuple(
            CoverageGap.from_dict(g) for g in json.loads(row["coverage_gaps"])
        ),
    )
