# emr_wordcount/job_runner.py

import io
import time
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .dataclasses import (
    ClusterHandle,
    ClusterStatus,
    JobDescription,
    JobResult,
    ReadinessPolicy,
    RunState,
)
from .errors import ClusterError, ClusterNotReadyError, FileSystemError, JobSubmissionError

INPUT_PATH = "input"
OUTPUT_PATH = "output"
OUTPUT_PART = "part-00000"
INPUT_RECORD = b"b a\n"

TOKEN_COUNT_MAPPER = 'org.apache.hadoop.mapred.lib.TokenCountMapper'
LONG_SUM_REDUCER = 'org.apache.hadoop.mapred.lib.LongSumReducer'
TEXT_CLASS = 'org.apache.hadoop.io.Text'
LONG_WRITABLE_CLASS = 'org.apache.hadoop.io.LongWritable'


def build_client_configuration(cluster: ClusterHandle, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Fresh client configuration copied from the cluster's live settings."""
    conf = dict(base or {})
    for key, value in cluster.configuration.items():
        conf[str(key)] = str(value)
    return conf


def word_count_job(input_path: str = INPUT_PATH, output_path: str = OUTPUT_PATH) -> JobDescription:
    return JobDescription(
        mapper=TOKEN_COUNT_MAPPER,
        reducer=LONG_SUM_REDUCER,
        output_key_class=TEXT_CLASS,
        output_value_class=LONG_WRITABLE_CLASS,
        input_path=input_path,
        output_path=output_path,
    )


class _S3Upload(io.BytesIO):
    """Buffered writable stream; the object is written to S3 on close."""

    def __init__(self, client, bucket: str, key: str):
        super().__init__()
        self._client = client
        self._bucket = bucket
        self._key = key
        self._discard = False

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self._discard = True
        self.close()

    def close(self):
        if self.closed:
            return
        try:
            if not self._discard:
                self._client.put_object(Bucket=self._bucket, Key=self._key, Body=self.getvalue())
        except (BotoCoreError, ClientError) as e:
            raise FileSystemError(f"Could not write s3://{self._bucket}/{self._key}: {e}") from e
        finally:
            super().close()


class S3FileSystem:
    """Shared filesystem rooted at the cluster's ``fs.defaultFS`` S3 URI."""

    def __init__(self, default_fs: str, client):
        parsed = urlparse(default_fs)
        if parsed.scheme != 's3' or not parsed.netloc:
            raise FileSystemError(f"Unsupported default filesystem: {default_fs}")
        self.bucket = parsed.netloc
        self.prefix = parsed.path.strip('/')
        self.s3 = client

    @classmethod
    def from_configuration(cls, conf: Mapping[str, str], session: boto3.Session) -> "S3FileSystem":
        default_fs = conf.get('fs.defaultFS')
        if not default_fs:
            raise FileSystemError("Client configuration has no 'fs.defaultFS'")
        return cls(default_fs, session.client('s3', region_name=conf.get('emr.region') or None))

    def _key(self, path: str) -> str:
        if path.startswith('s3://'):
            parsed = urlparse(path)
            if parsed.netloc != self.bucket:
                raise FileSystemError(f"{path} is outside the default filesystem")
            return parsed.path.lstrip('/')
        path = path.strip('/')
        return f"{self.prefix}/{path}" if self.prefix else path

    def resolve(self, path: str) -> str:
        return f"s3://{self.bucket}/{self._key(path)}"

    def create(self, path: str) -> _S3Upload:
        """Opens ``path`` for writing, replacing any existing object."""
        return _S3Upload(self.s3, self.bucket, self._key(path))

    def open(self, path: str):
        key = self._key(path)
        try:
            return self.s3.get_object(Bucket=self.bucket, Key=key)['Body']
        except (BotoCoreError, ClientError) as e:
            raise FileSystemError(f"Could not open s3://{self.bucket}/{key}: {e}") from e

    def delete(self, path: str) -> int:
        """Removes ``path`` and everything below it. Returns the number of objects deleted."""
        key = self._key(path)
        try:
            keys = [key] if self._exists(key) else []
            paginator = self.s3.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=key + '/'):
                keys.extend(obj['Key'] for obj in page.get('Contents', []))
            for start in range(0, len(keys), 1000):
                batch = keys[start:start + 1000]
                self.s3.delete_objects(
                    Bucket=self.bucket,
                    Delete={'Objects': [{'Key': k} for k in batch], 'Quiet': True},
                )
        except (BotoCoreError, ClientError) as e:
            raise FileSystemError(f"Could not delete s3://{self.bucket}/{key}: {e}") from e
        return len(keys)

    def _exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise
        return True


def streaming_args(job: JobDescription) -> List[str]:
    """hadoop-streaming arguments running the job's Java mapper and reducer."""
    return [
        'hadoop-streaming',
        '-D', f"mapreduce.job.name={job.name}",
        '-D', f"mapreduce.map.output.key.class={job.output_key_class}",
        '-D', f"mapreduce.map.output.value.class={job.output_value_class}",
        '-D', f"mapreduce.job.output.key.class={job.output_key_class}",
        '-D', f"mapreduce.job.output.value.class={job.output_value_class}",
        '-D', 'mapreduce.job.reduces=1',
        '-input', job.input_path,
        '-output', job.output_path,
        '-mapper', job.mapper,
        '-reducer', job.reducer,
    ]


class EMRJobClient:
    """Submits steps to a running EMR cluster and reports its worker count."""

    def __init__(self, cluster_id: str, client, step_delay: int = 15, step_max_attempts: int = 240):
        self.cluster_id = cluster_id
        self.emr = client
        self.step_delay = step_delay
        self.step_max_attempts = step_max_attempts

    @classmethod
    def from_configuration(cls, conf: Mapping[str, str], session: boto3.Session) -> "EMRJobClient":
        cluster_id = conf.get('emr.cluster.id')
        if not cluster_id:
            raise JobSubmissionError("Client configuration has no 'emr.cluster.id'")
        return cls(cluster_id, session.client('emr', region_name=conf.get('emr.region') or None))

    def cluster_status(self) -> ClusterStatus:
        try:
            response = self.emr.list_instances(
                ClusterId=self.cluster_id,
                InstanceGroupTypes=['CORE'],
                InstanceStates=['RUNNING']
            )
        except (BotoCoreError, ClientError) as e:
            raise JobSubmissionError(f"Could not read status of cluster {self.cluster_id}: {e}") from e
        return ClusterStatus(worker_count=len(response.get('Instances', [])))

    def submit(self, job: JobDescription) -> str:
        """Adds the job as a step and blocks until it completes. Returns the step id."""
        step = {
            'Name': job.name,
            'ActionOnFailure': 'CONTINUE',
            'HadoopJarStep': {
                'Jar': 'command-runner.jar',
                'Args': streaming_args(job),
            },
        }
        try:
            step_id = self.emr.add_job_flow_steps(JobFlowId=self.cluster_id, Steps=[step])['StepIds'][0]
        except (BotoCoreError, ClientError) as e:
            raise JobSubmissionError(f"Could not submit step to {self.cluster_id}: {e}") from e

        print(f"WAITING: Step {step_id} ({job.name}) is running...")
        waiter = self.emr.get_waiter('step_complete')
        try:
            waiter.wait(
                ClusterId=self.cluster_id,
                StepId=step_id,
                WaiterConfig={'Delay': self.step_delay, 'MaxAttempts': self.step_max_attempts}
            )
        except (BotoCoreError, ClientError) as e:
            raise JobSubmissionError(self._failure_reason(step_id, e), step_id=step_id) from e

        print(f"SUCCESS: Step {step_id} completed.")
        return step_id

    def _failure_reason(self, step_id: str, error: Exception) -> str:
        try:
            status = self.emr.describe_step(ClusterId=self.cluster_id, StepId=step_id)['Step']['Status']
        except (BotoCoreError, ClientError):
            return f"Step {step_id} failed: {error}"
        details = status.get('FailureDetails') or {}
        reason = details.get('Message') or details.get('Reason') or str(error)
        return f"Step {step_id} ended in state {status.get('State', 'UNKNOWN')}: {reason}"


def wait_for_workers(client, policy: ReadinessPolicy, sleep=time.sleep, clock=time.monotonic) -> ClusterStatus:
    """Polls until at least one worker is registered.

    Prints a dot per wait. Sleeps grow by ``policy.backoff`` up to
    ``policy.max_interval``; an interrupt during a sleep ends the wait early.
    """
    deadline = clock() + policy.timeout
    interval = policy.initial_interval
    waited = False
    try:
        while True:
            status = client.cluster_status()
            if status.worker_count > 0:
                break
            remaining = deadline - clock()
            if remaining <= 0:
                raise ClusterNotReadyError(
                    f"Cluster never became ready: no worker registered within {policy.timeout:g}s")
            print(".", end="", flush=True)
            waited = True
            try:
                sleep(min(interval, policy.max_interval, remaining))
            except KeyboardInterrupt:
                break
            interval *= policy.backoff
    finally:
        if waited:
            print()
    return status


def run_job(state: RunState, job_client_factory, filesystem_factory,
            policy: Optional[ReadinessPolicy] = None, sleep=time.sleep, clock=time.monotonic) -> JobResult:
    """Runs the word-count job against the cluster recorded on ``state``."""
    if state.cluster is None:
        raise ClusterError("No running cluster to submit the job to")

    print("\n" + "="*80)
    print(f"Running word count on {state.cluster.cluster_id}")
    print("="*80)

    conf = build_client_configuration(state.cluster)
    fs = filesystem_factory(conf)
    client = job_client_factory(conf)

    with fs.create(INPUT_PATH) as stream:
        stream.write(INPUT_RECORD)
    print(f"SUCCESS: Wrote input to {fs.resolve(INPUT_PATH)}")

    print("WAITING: Waiting for a worker to register...")
    status = wait_for_workers(client, policy or ReadinessPolicy(), sleep=sleep, clock=clock)
    print(f"INFO: {status.worker_count} worker(s) registered.")

    # The job fails if its output directory already exists
    fs.delete(OUTPUT_PATH)
    job = word_count_job(fs.resolve(INPUT_PATH), fs.resolve(OUTPUT_PATH))
    step_id = client.submit(job)

    output_part = f"{OUTPUT_PATH}/{OUTPUT_PART}"
    reader = fs.open(output_part)
    reader.close()
    print(f"SUCCESS: Output available at {fs.resolve(output_part)}")

    state.job_result = JobResult(
        input_path=job.input_path,
        output_path=job.output_path,
        output_part=fs.resolve(output_part),
        step_id=step_id,
    )
    return state.job_result
