"""
Execution Orchestrator

Turns a test catalogue into an ExecutionPlan under time and concurrency
budgets.

Pipeline:
1. Filter by minimum priority and (optionally) minimum stability
2. Ask the optimisation service for a dependency-respecting schedule
3. Normalise whatever comes back so the plan partitions the eligible set
4. On any service failure, fall back to a sequential priority order
"""

import logging
from typing import Dict, List, Optional, Tuple

from ..brain.schemas import OptimizedPlan
from ..errors import ServiceError
from .models import (
    PRIORITY_RANK,
    ExecutionConstraints,
    ExecutionPlan,
    ParallelShard,
    SequentialStep,
    TestSpec,
)

logger = logging.getLogger(__name__)

# Stability assumed for tests nobody has recorded yet
UNTRACKED_STABILITY = 1.0


class ExecutionOrchestrator:
    """
    Builds execution plans.

    The service answer is never trusted structurally: unknown names and
    duplicates are dropped, shards are split to the parallel capacity,
    eligible tests the service forgot are appended to the sequential list,
    and shard members whose dependencies would not have run yet are moved
    to the sequential phase.
    """

    def __init__(self, gateway=None, store=None):
        """
        Args:
            gateway: Optional AIGateway for plan optimisation
            store: Optional ReliabilityStore for current test stability
        """
        self.gateway = gateway
        self.store = store

    def get_stability(self, test: TestSpec) -> float:
        if self.store is not None and self.store.has_test_stability(test.name):
            return self.store.get_test_stability(test.name)
        if test.stability is not None:
            return test.stability
        return UNTRACKED_STABILITY

    async def create_execution_plan(
        self,
        tests: List[TestSpec],
        constraints: Optional[ExecutionConstraints] = None
    ) -> ExecutionPlan:
        """
        Build a plan for tests under constraints.

        Never raises for service problems; the fallback plan is always available.
        """
        constraints = constraints or ExecutionConstraints()
        eligible, excluded = self._filter(tests, constraints)
        logger.info(f"[PLAN] {len(eligible)} eligible tests, {len(excluded)} excluded by filters")

        if not eligible:
            return ExecutionPlan(excluded=excluded, reasoning="No tests passed the filters")

        if self.gateway is not None:
            try:
                optimized = await self.gateway.optimize_test_execution(
                    tests=[
                        {
                            "name": t.name,
                            "duration": t.duration_seconds,
                            "priority": t.priority.value,
                            "stability": self.get_stability(t),
                            "dependencies": t.dependencies
                        }
                        for t in eligible
                    ],
                    available_time=constraints.available_time,
                    parallel_capacity=constraints.parallel_capacity
                )
            except ServiceError as e:
                logger.warning(f"[PLAN] Optimisation service failed, using priority order: {e}")
            else:
                plan = self._normalize(optimized, eligible, constraints)
                plan.excluded = excluded
                return plan

        plan = self._fallback_plan(eligible)
        plan.excluded = excluded
        return plan

    # ==================== Filtering ====================

    def _filter(self, tests: List[TestSpec], constraints: ExecutionConstraints):
        min_rank = PRIORITY_RANK[constraints.min_priority]
        eligible: List[TestSpec] = []
        excluded: List[str] = []
        seen = set()

        for test in tests:
            if test.name in seen:
                continue
            seen.add(test.name)

            if PRIORITY_RANK[test.priority] < min_rank:
                excluded.append(test.name)
            elif constraints.skip_flaky and self.get_stability(test) < constraints.min_stability:
                logger.debug(f"[PLAN] Excluding flaky test {test.name}")
                excluded.append(test.name)
            else:
                eligible.append(test)

        return eligible, excluded

    # ==================== Normalisation ====================

    def _normalize(
        self,
        optimized: OptimizedPlan,
        eligible: List[TestSpec],
        constraints: ExecutionConstraints
    ) -> ExecutionPlan:
        by_name = {t.name: t for t in eligible}
        assigned = set()

        def claim(name: str) -> bool:
            if name in by_name and name not in assigned:
                assigned.add(name)
                return True
            return False

        body = optimized.execution_plan
        sequential = [
            entry.test for entry in sorted(body.sequential, key=lambda e: e.order) if claim(entry.test)
        ]

        capacity = constraints.parallel_capacity
        shards: List[List[str]] = []
        for entry in sorted(body.parallel, key=lambda e: e.order):
            members = [name for name in entry.tests if claim(name)]
            if not members:
                continue
            size = capacity or len(members)
            shards.extend(members[i:i + size] for i in range(0, len(members), size))

        skipped = [name for name in body.skipped if claim(name)]

        missing = [t.name for t in self._priority_order(eligible) if t.name not in assigned]
        if missing:
            logger.info(f"[PLAN] Service plan omitted {len(missing)} tests, running them sequentially")
            sequential.extend(missing)

        sequential, shards = self._enforce_dependencies(sequential, shards, by_name)

        return self._build_plan(
            sequential, shards, skipped, by_name,
            reasoning=optimized.reasoning,
            source="service"
        )

    def _enforce_dependencies(
        self,
        sequential: List[str],
        shards: List[List[str]],
        by_name: Dict[str, TestSpec]
    ) -> Tuple[List[str], List[List[str]]]:
        """
        Make a normalised plan dependency-safe.

        The sequential phase runs before the shards and shards run in order,
        so a shard member may only depend on sequential tests or on earlier
        shards. Members that break this move to the sequential phase, taking
        any dependency still sitting in a shard with them. The sequential
        phase is then reordered so every test follows its dependencies.
        """
        scheduled = set(sequential)
        for shard in shards:
            scheduled.update(shard)

        def dependencies(name: str) -> List[str]:
            return [d for d in by_name[name].dependencies if d in scheduled and d != name]

        in_sequence = set(sequential)
        moved_order: List[str] = []
        while True:
            moved = []
            earlier = set(in_sequence)
            for shard in shards:
                for name in shard:
                    if name not in in_sequence and any(d not in earlier for d in dependencies(name)):
                        moved.append(name)
                earlier.update(shard)
            for name in [*sequential, *moved_order, *moved]:
                moved.extend(d for d in dependencies(name) if d not in in_sequence)

            moved = [name for name in dict.fromkeys(moved) if name not in in_sequence]
            if not moved:
                break
            in_sequence.update(moved)
            moved_order.extend(moved)

        if moved_order:
            logger.info(
                f"[PLAN] Moved {len(moved_order)} shard tests to the sequential phase to respect dependencies"
            )

        remaining_shards = []
        for shard in shards:
            kept = [name for name in shard if name not in in_sequence]
            if kept:
                remaining_shards.append(kept)

        ordered = self._place_after_dependencies([by_name[name] for name in sequential + moved_order])
        return [t.name for t in ordered], remaining_shards

    # ==================== Fallback ====================

    @staticmethod
    def _priority_order(tests: List[TestSpec]) -> List[TestSpec]:
        """Priority descending, then shortest first"""
        return sorted(tests, key=lambda t: (-PRIORITY_RANK[t.priority], t.duration_seconds))

    def _dependency_order(self, tests: List[TestSpec]) -> List[TestSpec]:
        """Priority order, with every test placed after its (eligible) dependencies"""
        return self._place_after_dependencies(self._priority_order(tests))

    @staticmethod
    def _place_after_dependencies(tests: List[TestSpec]) -> List[TestSpec]:
        """Stable reorder so each test follows its dependencies among tests"""
        pending = list(tests)
        names = {t.name for t in pending}
        placed: List[TestSpec] = []
        placed_names = set()

        while pending:
            ready = next(
                (t for t in pending if all(d in placed_names for d in t.dependencies if d in names)),
                None
            )
            if ready is None:
                logger.warning(
                    f"[PLAN] Dependency cycle among {', '.join(t.name for t in pending)}, keeping current order"
                )
                placed.extend(pending)
                break
            placed.append(ready)
            placed_names.add(ready.name)
            pending.remove(ready)

        return placed

    def _fallback_plan(self, eligible: List[TestSpec]) -> ExecutionPlan:
        by_name = {t.name: t for t in eligible}
        ordered = [t.name for t in self._dependency_order(eligible)]
        return self._build_plan(
            ordered, [], [], by_name,
            reasoning="Fallback: sequential by priority, then duration, dependencies first",
            source="fallback"
        )

    # ==================== Assembly ====================

    @staticmethod
    def _build_plan(
        sequential: List[str],
        shards: List[List[str]],
        skipped: List[str],
        by_name: Dict[str, TestSpec],
        reasoning: str,
        source: str
    ) -> ExecutionPlan:
        duration = sum(by_name[name].duration_seconds for name in sequential)
        duration += sum(max(by_name[name].duration_seconds for name in shard) for shard in shards)

        total_units = len(shards) + len(sequential)
        ratio = len(shards) / total_units if total_units else 0.0

        return ExecutionPlan(
            sequential=[SequentialStep(test=name, order=i) for i, name in enumerate(sequential, 1)],
            parallel_shards=[ParallelShard(tests=shard, order=i) for i, shard in enumerate(shards, 1)],
            skipped=skipped,
            estimated_duration_seconds=duration,
            parallelization_ratio=ratio,
            reasoning=reasoning,
            source=source
        )
