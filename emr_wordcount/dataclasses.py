# emr_wordcount/dataclasses.py

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

COORDINATOR_ROLE = "coordinator"
WORKER_ROLE = "worker"


@dataclass(frozen=True)
class ServiceSpec:
    """Credentials and identity of the cluster, resolved once at startup."""
    provider: str
    account: str
    key: str
    secret_key_file: str
    cluster_name: str

    def __repr__(self) -> str:
        # Never echo the credential key into logs or tracebacks.
        return (f"ServiceSpec(provider={self.provider!r}, account={self.account!r}, "
                f"key='***', secret_key_file={self.secret_key_file!r}, "
                f"cluster_name={self.cluster_name!r})")


@dataclass(frozen=True)
class InstanceTemplate:
    count: int
    role: str


@dataclass(frozen=True)
class ClusterSpec:
    """Ordered set of (role, instance count) pairs requested at launch."""
    templates: Tuple[InstanceTemplate, ...]

    @classmethod
    def default(cls) -> "ClusterSpec":
        return cls((InstanceTemplate(1, COORDINATOR_ROLE), InstanceTemplate(1, WORKER_ROLE)))

    def count_for(self, role: str) -> int:
        return sum(t.count for t in self.templates if t.role == role)


@dataclass
class ClusterHandle:
    """Live cluster as reported by the provisioner."""
    cluster_id: str
    cluster_name: str
    master_dns: Optional[str] = None
    configuration: Dict[str, str] = field(default_factory=dict)


@dataclass
class ClusterStatus:
    worker_count: int


@dataclass
class JobDescription:
    mapper: str
    reducer: str
    output_key_class: str
    output_value_class: str
    input_path: str
    output_path: str
    name: str = "word-count"


@dataclass(frozen=True)
class ReadinessPolicy:
    """Bounded exponential backoff for the worker readiness gate (seconds)."""
    initial_interval: float = 1.0
    backoff: float = 2.0
    max_interval: float = 30.0
    timeout: float = 900.0


@dataclass
class JobResult:
    input_path: str
    output_path: str
    output_part: str
    step_id: Optional[str] = None


@dataclass
class RunState:
    """Handles owned by one demo run, threaded through start, run and stop."""
    service_spec: ServiceSpec
    cluster: Optional[ClusterHandle] = None
    proxy: Optional[Any] = None
    job_result: Optional[JobResult] = None
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return bool(self.errors)
