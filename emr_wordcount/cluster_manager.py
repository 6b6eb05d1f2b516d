# emr_wordcount/cluster_manager.py

import os
import subprocess
import tempfile
import time
from typing import Dict, Mapping, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import DEFAULT_PROXY_PORT, DEFAULT_RELEASE_LABEL
from .dataclasses import (
    COORDINATOR_ROLE,
    WORKER_ROLE,
    ClusterHandle,
    ClusterSpec,
    InstanceTemplate,
    RunState,
    ServiceSpec,
)
from .errors import ClusterError, ProvisioningError, ProxyError

# EMR instance group type for each node role
INSTANCE_ROLES = {
    COORDINATOR_ROLE: 'MASTER',
    WORKER_ROLE: 'CORE',
}

SOCKS_SOCKET_FACTORY = 'org.apache.hadoop.net.SocksSocketFactory'


def create_session(service_spec: ServiceSpec, region: str) -> boto3.Session:
    """Builds a boto3 session from the resolved account and credential key."""
    return boto3.Session(
        aws_access_key_id=service_spec.account,
        aws_secret_access_key=service_spec.key,
        region_name=region,
    )


class EMRProvisioner:
    """Launches and terminates the demo cluster on EMR."""

    def __init__(self, service_spec: ServiceSpec, config: Mapping, session: boto3.Session):
        self.service_spec = service_spec
        self.config = config
        self.region = session.region_name
        self.emr = session.client('emr', region_name=self.region)

    # --- Public Methods ---

    def launch(self, cluster_spec: ClusterSpec) -> ClusterHandle:
        """Requests the cluster and blocks until EMR reports it running."""
        print("\n" + "="*80)
        print(f"Creating EMR Cluster '{self.service_spec.cluster_name}'...")
        print("="*80)

        request = self._job_flow_request(cluster_spec)
        try:
            response = self.emr.run_job_flow(**request)
        except (BotoCoreError, ClientError) as e:
            raise ProvisioningError(f"EMR refused the cluster request: {e}") from e

        cluster_id = response['JobFlowId']
        print(f"SUCCESS: EMR Cluster requested: {cluster_id}")

        try:
            self._wait_for_cluster(cluster_id)
            cluster_info = self._get_cluster_details(cluster_id)
            master_dns = self._get_master_address(cluster_id, cluster_info)
        except (BotoCoreError, ClientError) as e:
            raise ProvisioningError(
                f"Cluster {cluster_id} did not come up: {e}", cluster_id=cluster_id
            ) from e

        return ClusterHandle(
            cluster_id=cluster_id,
            cluster_name=self.service_spec.cluster_name,
            master_dns=master_dns,
            configuration=self._cluster_configuration(cluster_id, master_dns),
        )

    def destroy(self, cluster: ClusterHandle) -> None:
        print(f"Terminating Cluster: {cluster.cluster_id}")
        try:
            self.emr.terminate_job_flows(JobFlowIds=[cluster.cluster_id])
        except (BotoCoreError, ClientError) as e:
            raise ProvisioningError(
                f"Could not terminate cluster {cluster.cluster_id}: {e}", cluster_id=cluster.cluster_id
            ) from e
        print("SUCCESS: Termination initiated. EMR cleanup will complete in a few minutes.")

    # --- Utility/Internal Methods ---

    def _instance_group(self, template: InstanceTemplate) -> Dict:
        try:
            group_type = INSTANCE_ROLES[template.role]
        except KeyError:
            raise ProvisioningError(f"Unknown instance role: {template.role}")

        if group_type == 'MASTER':
            instance_type = self.config.get('master_instance_type', 'm5.xlarge')
        else:
            instance_type = self.config.get('worker_instance_type', 'm5.large')

        return {
            'Name': f"{self.service_spec.cluster_name}-{template.role}",
            'Market': 'ON_DEMAND',
            'InstanceRole': group_type,
            'InstanceType': instance_type,
            'InstanceCount': template.count,
        }

    def _job_flow_request(self, cluster_spec: ClusterSpec) -> Dict:
        instances = {
            'InstanceGroups': [self._instance_group(t) for t in cluster_spec.templates],
            'Ec2KeyName': self.config['key_pair_name'],
            'KeepJobFlowAliveWhenNoSteps': True,
            'TerminationProtected': False,
        }
        if self.config.get('subnet_id'):
            instances['Ec2SubnetId'] = self.config['subnet_id']

        request = {
            'Name': self.service_spec.cluster_name,
            'ReleaseLabel': self.config.get('release_label', DEFAULT_RELEASE_LABEL),
            'ServiceRole': self.config.get('service_role', 'EMR_DefaultRole'),
            'JobFlowRole': self.config.get('instance_profile', 'EMR_EC2_DefaultRole'),
            'Instances': instances,
            'Applications': [{'Name': 'Hadoop'}],
            'VisibleToAllUsers': True,
            'Tags': [{'Key': 'ClusterName', 'Value': self.service_spec.cluster_name}],
        }
        if self.config.get('log_uri'):
            request['LogUri'] = self.config['log_uri']
        return request

    def _wait_for_cluster(self, cluster_id: str):
        """Waits for the EMR cluster to enter the RUNNING or WAITING state."""
        print(f"WAITING: Cluster {cluster_id} is starting (this takes 10-15 min)...")
        waiter = self.emr.get_waiter('cluster_running')
        waiter.wait(
            ClusterId=cluster_id,
            WaiterConfig={'Delay': 30, 'MaxAttempts': 100}
        )
        print("SUCCESS: EMR Cluster is RUNNING/WAITING.")

    def _get_cluster_details(self, cluster_id: str) -> Dict:
        return self.emr.describe_cluster(ClusterId=cluster_id)['Cluster']

    def _get_master_address(self, cluster_id: str, cluster_info: Dict) -> Optional[str]:
        """Public DNS of the master node, or its private IP inside a private subnet."""
        if cluster_info.get('MasterPublicDnsName'):
            return cluster_info['MasterPublicDnsName']
        response = self.emr.list_instances(
            ClusterId=cluster_id,
            InstanceGroupTypes=['MASTER']
        )
        instances = response.get('Instances', [])
        if instances:
            return instances[0].get('PrivateIpAddress')
        return None

    def _cluster_configuration(self, cluster_id: str, master_dns: Optional[str]) -> Dict[str, str]:
        """Client-side settings reflecting the live cluster's endpoints."""
        proxy_port = int(self.config.get('proxy_port', DEFAULT_PROXY_PORT))
        configuration = {
            'fs.defaultFS': self.config['work_uri'].rstrip('/'),
            'emr.cluster.id': cluster_id,
            'emr.region': self.region or '',
            'hadoop.socks.server': f"localhost:{proxy_port}",
            'hadoop.rpc.socket.factory.class.default': SOCKS_SOCKET_FACTORY,
        }
        if master_dns:
            configuration['yarn.resourcemanager.hostname'] = master_dns
        return configuration


class SSHProxy:
    """SOCKS tunnel into the cluster network through the master node."""

    def __init__(self, port: int = DEFAULT_PROXY_PORT, user: str = 'hadoop', ssh_binary: str = 'ssh',
                 startup_grace: float = 2.0, popen=subprocess.Popen, sleep=time.sleep):
        self.port = port
        self.user = user
        self.ssh_binary = ssh_binary
        self.startup_grace = startup_grace
        self.process = None
        self._stderr = None
        self._popen = popen
        self._sleep = sleep

    @property
    def is_open(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def command(self, service_spec: ServiceSpec, cluster: ClusterHandle) -> list:
        return [
            self.ssh_binary,
            '-i', service_spec.secret_key_file,
            '-o', 'ConnectTimeout=10',
            '-o', 'ServerAliveInterval=60',
            '-o', 'StrictHostKeyChecking=no',
            '-o', 'UserKnownHostsFile=/dev/null',
            '-o', 'LogLevel=ERROR',
            '-N',
            '-D', str(self.port),
            f"{self.user}@{cluster.master_dns}",
        ]

    def open(self, service_spec: ServiceSpec, cluster: ClusterHandle) -> None:
        if self.process is not None:
            raise ProxyError("Proxy is already open")
        if not cluster.master_dns:
            raise ProxyError(f"Cluster {cluster.cluster_id} reported no master address")
        if not os.path.isfile(service_spec.secret_key_file):
            raise ProxyError(f"SSH key not found: {service_spec.secret_key_file}")

        print(f"INFO: Opening SOCKS proxy on localhost:{self.port} via {cluster.master_dns}")
        # ssh output goes to a file so a long-lived tunnel never blocks on a full pipe
        stderr = tempfile.TemporaryFile()
        try:
            process = self._popen(
                self.command(service_spec, cluster),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr,
            )
        except OSError as e:
            stderr.close()
            raise ProxyError(f"Could not start {self.ssh_binary}: {e}") from e

        # ssh exits quickly on auth or connection failures
        self._sleep(self.startup_grace)
        if process.poll() is not None:
            stderr.seek(0)
            details = stderr.read().decode('utf-8', errors='replace').strip()
            stderr.close()
            raise ProxyError(f"SSH tunnel exited with status {process.returncode}: {details}")

        self.process = process
        self._stderr = stderr
        print("SUCCESS: Proxy is up.")

    def close(self) -> None:
        if self.process is None:
            return
        process, self.process = self.process, None
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        if self._stderr is not None:
            self._stderr.close()
            self._stderr = None
        print("INFO: Proxy closed.")


def start_cluster(state: RunState, provisioner, proxy, cluster_spec: Optional[ClusterSpec] = None) -> RunState:
    """Launches the cluster and opens the proxy into its network.

    The proxy is only opened once the launch has succeeded. A launch that
    failed after EMR accepted the request still records the cluster on
    ``state`` so that teardown can terminate it.
    """
    cluster_spec = cluster_spec or ClusterSpec.default()
    try:
        state.cluster = provisioner.launch(cluster_spec)
    except ProvisioningError as e:
        if e.cluster_id:
            state.cluster = ClusterHandle(cluster_id=e.cluster_id,
                                          cluster_name=state.service_spec.cluster_name)
        raise

    state.proxy = proxy
    proxy.open(state.service_spec, state.cluster)
    return state


def stop_cluster(state: RunState, provisioner) -> None:
    """Closes the proxy, then destroys the cluster.

    Destruction is attempted even when closing the proxy fails; the close
    error is then raised once the destroy step has run.
    """
    proxy, state.proxy = state.proxy, None
    cluster, state.cluster = state.cluster, None

    close_error = None
    if proxy is not None:
        try:
            proxy.close()
        except Exception as e:
            close_error = e

    try:
        if cluster is None:
            raise ClusterError("No cluster to bring down")
        provisioner.destroy(cluster)
    except Exception as e:
        if close_error is None:
            raise
        raise close_error from e

    if close_error is not None:
        raise close_error
