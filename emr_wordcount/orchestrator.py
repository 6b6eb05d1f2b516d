# emr_wordcount/orchestrator.py

import sys
import time
from enum import Enum
from typing import Callable, Optional

from .cluster_manager import start_cluster, stop_cluster
from .dataclasses import ClusterSpec, ReadinessPolicy, RunState
from .job_runner import run_job


class ErrorPolicy(str, Enum):
    """What a failed phase means for the phases after it.

    CONTINUE runs every phase regardless (best effort). ABORT skips the job
    once the cluster failed to start. Teardown is attempted under both.
    """
    CONTINUE = 'continue'
    ABORT = 'abort'


class WordCountDemo:
    """Starts the cluster, runs the word-count job and brings the cluster down."""

    def __init__(self, provisioner, proxy, job_client_factory: Callable, filesystem_factory: Callable,
                 readiness: Optional[ReadinessPolicy] = None,
                 error_policy: ErrorPolicy = ErrorPolicy.CONTINUE,
                 cluster_spec: Optional[ClusterSpec] = None,
                 sleep=time.sleep, clock=time.monotonic):
        self.provisioner = provisioner
        self.proxy = proxy
        self.job_client_factory = job_client_factory
        self.filesystem_factory = filesystem_factory
        self.readiness = readiness or ReadinessPolicy()
        self.error_policy = ErrorPolicy(error_policy)
        self.cluster_spec = cluster_spec or ClusterSpec.default()
        self._sleep = sleep
        self._clock = clock

    def run(self, state: RunState) -> RunState:
        """Runs the three phases; failures are reported and recorded on ``state``."""
        print("Starting the cluster.")
        started = self._phase(state, 'start', "Could not start cluster",
                              lambda: start_cluster(state, self.provisioner, self.proxy, self.cluster_spec))
        if started:
            print("Cluster started.")

        try:
            if started or self.error_policy is ErrorPolicy.CONTINUE:
                print("Running MapReduce job.")
                if self._phase(state, 'job', "Could not run job",
                               lambda: run_job(state, self.job_client_factory, self.filesystem_factory,
                                               self.readiness, sleep=self._sleep, clock=self._clock)):
                    print("Finished MapReduce job.")
            else:
                print("INFO: Skipping MapReduce job, the cluster did not start.")
        finally:
            print("Bringing down the cluster.")
            if self._phase(state, 'stop', "Could not bring down the cluster",
                           lambda: stop_cluster(state, self.provisioner)):
                print("Cluster stopped.")
        return state

    @staticmethod
    def _phase(state: RunState, name: str, message: str, action: Callable) -> bool:
        try:
            action()
        except Exception as e:
            state.errors[name] = str(e)
            print(f"{message}: {e}", file=sys.stderr)
            return False
        return True
