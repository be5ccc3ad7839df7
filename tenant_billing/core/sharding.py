"""
Deterministic tenant sharding for batch runs.

Tenant ids are sorted and dealt round-robin, so the same tenant set always
yields the same shards. A ``ShardPlan`` also tracks which tenants have been
processed so a resumed worker can skip them; the repository can persist those
marks per run for other processes to see.
"""

import threading
from typing import Dict, Iterable, List, Optional, Set

from tenant_billing.storage.repository import BillingRepository


class ShardPlan:

    def __init__(
        self,
        tenant_ids: Iterable[str],
        shard_count: int,
        run_id: Optional[str] = None,
        repository: Optional[BillingRepository] = None
    ):
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        self.shard_count = shard_count
        self.run_id = run_id
        self.repository = repository
        self._shards: Dict[int, List[str]] = {shard: [] for shard in range(shard_count)}
        self._owner: Dict[str, int] = {}
        for index, tenant_id in enumerate(sorted(set(tenant_ids))):
            shard = index % shard_count
            self._shards[shard].append(tenant_id)
            self._owner[tenant_id] = shard
        self._processed: Dict[int, Set[str]] = {shard: set() for shard in range(shard_count)}
        self._lock = threading.Lock()

    def _check(self, shard_id: int) -> None:
        if shard_id not in self._shards:
            raise ValueError(f"Unknown shard {shard_id}; plan has {self.shard_count}")

    def tenants_for(self, shard_id: int) -> List[str]:
        self._check(shard_id)
        return list(self._shards[shard_id])

    def shard_of(self, tenant_id: str) -> int:
        if tenant_id not in self._owner:
            raise KeyError(tenant_id)
        return self._owner[tenant_id]

    def mark_processed(self, shard_id: int, tenant_id: str) -> None:
        self._check(shard_id)
        if self._owner.get(tenant_id) != shard_id:
            raise ValueError(f"Tenant {tenant_id} is not in shard {shard_id}")
        with self._lock:
            self._processed[shard_id].add(tenant_id)
        if self.repository is not None and self.run_id:
            self.repository.mark_shard_tenant_processed(self.run_id, shard_id, tenant_id)

    def processed(self, shard_id: int) -> Set[str]:
        self._check(shard_id)
        with self._lock:
            marks = set(self._processed[shard_id])
        if self.repository is not None and self.run_id:
            marks |= self.repository.processed_shard_tenants(self.run_id, shard_id)
        return marks

    def pending(self, shard_id: int) -> List[str]:
        done = self.processed(shard_id)
        return [tenant_id for tenant_id in self.tenants_for(shard_id) if tenant_id not in done]

    def as_dict(self) -> Dict[int, List[str]]:
        return {shard: list(tenants) for shard, tenants in self._shards.items()}
