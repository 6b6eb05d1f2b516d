"""Fakes of the cluster collaborators shared by the test modules."""

from __future__ import annotations

import io

import pytest

from emr_wordcount.dataclasses import ClusterHandle, ClusterStatus, RunState, ServiceSpec
from emr_wordcount.errors import ProvisioningError


class FakeProvisioner:
    def __init__(self, calls: list, launch_error: Exception | None = None, configuration=None):
        self.calls = calls
        self.launch_error = launch_error
        self.configuration = configuration if configuration is not None else {
            'fs.defaultFS': 's3://demo-bucket/work',
            'emr.cluster.id': 'j-FAKE',
        }
        self.launched_specs = []
        self.destroyed = []

    def launch(self, cluster_spec):
        self.calls.append('launch')
        self.launched_specs.append(cluster_spec)
        if self.launch_error is not None:
            raise self.launch_error
        return ClusterHandle(
            cluster_id='j-FAKE',
            cluster_name='wordcountdemo',
            master_dns='master.example.internal',
            configuration=dict(self.configuration),
        )

    def destroy(self, cluster):
        self.calls.append('destroy')
        self.destroyed.append(cluster.cluster_id)


class FakeProxy:
    def __init__(self, calls: list, open_error: Exception | None = None, close_error: Exception | None = None):
        self.calls = calls
        self.open_error = open_error
        self.close_error = close_error

    def open(self, service_spec, cluster):
        self.calls.append('open')
        if self.open_error is not None:
            raise self.open_error

    def close(self):
        self.calls.append('close')
        if self.close_error is not None:
            raise self.close_error


class FakeJobClient:
    def __init__(self, calls: list, worker_counts=(1,), submit_error: Exception | None = None):
        self.calls = calls
        self.worker_counts = list(worker_counts)
        self.submit_error = submit_error
        self.submitted = []

    def cluster_status(self):
        self.calls.append('status')
        count = self.worker_counts.pop(0) if len(self.worker_counts) > 1 else self.worker_counts[0]
        return ClusterStatus(worker_count=count)

    def submit(self, job):
        self.calls.append('submit')
        self.submitted.append(job)
        if self.submit_error is not None:
            raise self.submit_error
        return 's-FAKE'


class FakeFileSystem:
    def __init__(self, calls: list):
        self.calls = calls
        self.files = {}

    def resolve(self, path):
        return f"s3://demo-bucket/work/{path}"

    def create(self, path):
        self.calls.append(('create', path))
        files = self.files

        class _Writer(io.BytesIO):
            def close(self):
                if not self.closed:
                    files[path] = self.getvalue()
                super().close()

        return _Writer()

    def open(self, path):
        self.calls.append(('open', path))
        return io.BytesIO(self.files.get(path, b""))

    def delete(self, path):
        self.calls.append(('delete', path))
        return 0


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def calls() -> list:
    return []


@pytest.fixture
def service_spec() -> ServiceSpec:
    return ServiceSpec(
        provider='aws',
        account='AKIAFAKE',
        key='secret',
        secret_key_file='/home/demo/.ssh/id_rsa',
        cluster_name='wordcountdemo',
    )


@pytest.fixture
def state(service_spec) -> RunState:
    return RunState(service_spec=service_spec)


@pytest.fixture
def cluster() -> ClusterHandle:
    return ClusterHandle(
        cluster_id='j-FAKE',
        cluster_name='wordcountdemo',
        master_dns='master.example.internal',
        configuration={'fs.defaultFS': 's3://demo-bucket/work', 'emr.cluster.id': 'j-FAKE'},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def launch_failure() -> ProvisioningError:
    return ProvisioningError("EMR refused the cluster request: LimitExceeded")
