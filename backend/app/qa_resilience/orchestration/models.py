from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TestPriority(str, Enum):
    __test__ = False

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {
    TestPriority.LOW: 1,
    TestPriority.MEDIUM: 2,
    TestPriority.HIGH: 3,
    TestPriority.CRITICAL: 4,
}


class TestSpec(BaseModel):
    """A schedulable test"""
    __test__ = False
    model_config = ConfigDict(populate_by_name=True)

    name: str
    duration_seconds: float = Field(default=60.0, alias="duration", ge=0)
    priority: TestPriority = TestPriority.MEDIUM
    dependencies: List[str] = []
    path: str = ""
    stability: Optional[float] = Field(default=None, ge=0, le=1)  # used when the store has no record


class ExecutionConstraints(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    available_time: Optional[float] = Field(default=None, alias="availableTime", gt=0)  # seconds
    parallel_capacity: Optional[int] = Field(default=None, alias="parallelCapacity", ge=1)
    min_priority: TestPriority = Field(default=TestPriority.LOW, alias="minPriority")
    skip_flaky: bool = Field(default=False, alias="skipFlaky")
    min_stability: float = Field(default=0.7, alias="minStability", ge=0, le=1)


class SequentialStep(BaseModel):
    test: str
    order: int


class ParallelShard(BaseModel):
    tests: List[str]
    order: int


class ExecutionPlan(BaseModel):
    """
    Concrete schedule for one run.

    sequential + parallel_shards + skipped partition the eligible tests;
    excluded lists tests removed by the priority/stability filters.
    Sequential steps run first, then the shards in order; every test runs
    after its scheduled dependencies.
    """
    model_config = ConfigDict(populate_by_name=True)

    sequential: List[SequentialStep] = []
    parallel_shards: List[ParallelShard] = Field(default_factory=list, alias="parallelShards")
    skipped: List[str] = []
    excluded: List[str] = []
    estimated_duration_seconds: float = Field(default=0.0, alias="estimatedDurationSeconds")
    parallelization_ratio: float = Field(default=0.0, alias="parallelizationRatio")
    reasoning: str = ""
    source: str = "fallback"  # service, fallback

    def scheduled_tests(self) -> List[str]:
        """Every test the plan runs, in plan order"""
        names = [step.test for step in self.sequential]
        for shard in self.parallel_shards:
            names.extend(shard.tests)
        return names

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, data: str) -> "ExecutionPlan":
        return cls.model_validate_json(data)
