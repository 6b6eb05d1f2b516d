#!/usr/bin/env python3
"""
EMR Word Count Demo Launcher
============================
Provisions a small EMR cluster (one master, one core node), runs a single
word-count MapReduce job on it and tears the cluster down again.

Steps:
- Launch the cluster and open a SOCKS proxy into its network over SSH
- Write a one-line input file to the shared S3 working directory
- Wait for a worker to register, then run TokenCountMapper/LongSumReducer
- Close the proxy and terminate the cluster

Credentials are read from the config file, or from CLUSTER_ACCOUNT /
CLUSTER_KEY (falling back to AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY).
The SSH key defaults to ~/.ssh/id_rsa (override with CLUSTER_SSH_KEYFILE).

Usage:
    # Run the whole demo
    python wordcount_launcher.py --config config.json

    # Stop after a failed start instead of trying the job anyway
    python wordcount_launcher.py --config config.json --on-error abort

    # Only resolve and print the configuration
    python wordcount_launcher.py --config config.json --dry-run
"""

import argparse
import os
import sys
from typing import Dict, List, Optional

# Check for required external dependencies first
try:
    import boto3
    from botocore.exceptions import NoCredentialsError
except ImportError:
    print("ERROR: boto3 is required. Install with: pip install boto3")
    sys.exit(1)

from emr_wordcount.cluster_manager import EMRProvisioner, SSHProxy, create_session
from emr_wordcount.config import (
    DEFAULT_PROXY_PORT,
    load_config,
    resolve_readiness_policy,
    resolve_service_spec,
    validate_config,
)
from emr_wordcount.dataclasses import (
    COORDINATOR_ROLE,
    WORKER_ROLE,
    ClusterSpec,
    ReadinessPolicy,
    RunState,
    ServiceSpec,
)
from emr_wordcount.errors import ConfigurationError
from emr_wordcount.job_runner import EMRJobClient, S3FileSystem
from emr_wordcount.orchestrator import ErrorPolicy, WordCountDemo


def build_demo(config: Dict, service_spec: ServiceSpec, session: boto3.Session,
               readiness: ReadinessPolicy, error_policy: str) -> WordCountDemo:
    """Wires the EMR-backed collaborators into the demo."""
    proxy = SSHProxy(
        port=int(config.get('proxy_port', DEFAULT_PROXY_PORT)),
        user=config.get('ssh_user', 'hadoop'),
    )
    return WordCountDemo(
        provisioner=EMRProvisioner(service_spec, config, session),
        proxy=proxy,
        job_client_factory=lambda conf: EMRJobClient.from_configuration(conf, session),
        filesystem_factory=lambda conf: S3FileSystem.from_configuration(conf, session),
        readiness=readiness,
        error_policy=ErrorPolicy(error_policy),
    )


def print_plan(service_spec: ServiceSpec, config: Dict, region: str, readiness: ReadinessPolicy):
    cluster_spec = ClusterSpec.default()
    print("\n" + "="*80)
    print("DRY RUN: Resolved configuration")
    print("="*80)
    print(f"Cluster: {service_spec.cluster_name}")
    print(f"    Provider: {service_spec.provider} ({region})")
    print(f"    Account: {service_spec.account}")
    print(f"    SSH key: {service_spec.secret_key_file}")
    for role in (COORDINATOR_ROLE, WORKER_ROLE):
        print(f"    {role}: {cluster_spec.count_for(role)} instance(s)")
    print(f"    Working directory: {config['work_uri']}")
    print(f"    Readiness timeout: {readiness.timeout:g}s")
    print("\nConfiguration is valid (dry-run mode)")


def main(argv: Optional[List[str]] = None) -> int:
    """Parses arguments and runs the demo. Returns the process exit status."""
    parser = argparse.ArgumentParser(
        description="Launch an EMR cluster, run one word-count job and tear the cluster down."
    )
    parser.add_argument(
        '--config',
        type=str,
        default='config.json',
        help='Path to the configuration JSON file (default: config.json).'
    )
    parser.add_argument(
        '--region',
        type=str,
        default=os.environ.get('AWS_REGION', 'us-east-1'),
        help='AWS region (default: us-east-1 or AWS_REGION env var).'
    )
    parser.add_argument(
        '--on-error',
        type=str,
        default=ErrorPolicy.CONTINUE.value,
        choices=[p.value for p in ErrorPolicy],
        help='continue: run every phase regardless; abort: skip the job if the cluster did not start.'
    )
    parser.add_argument(
        '--ssh-keyfile',
        type=str,
        help='Private key used for the proxy (overrides config and CLUSTER_SSH_KEYFILE).'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Only resolve and validate the configuration, do not make any AWS changes.'
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        if args.ssh_keyfile:
            config['ssh_keyfile'] = args.ssh_keyfile
        validate_config(config)
        service_spec = resolve_service_spec(config)
        readiness = resolve_readiness_policy(config)
    except ConfigurationError as e:
        print(f"ERROR: Configuration error: {e}", file=sys.stderr)
        return 1

    print(f"Running in AWS Region: {args.region}")

    if args.dry_run:
        print_plan(service_spec, config, args.region, readiness)
        return 0

    try:
        session = create_session(service_spec, args.region)
        demo = build_demo(config, service_spec, session, readiness, args.on_error)
        state = demo.run(RunState(service_spec=service_spec))
    except NoCredentialsError:
        print("\nFATAL ERROR: AWS credentials not found. Set CLUSTER_ACCOUNT and CLUSTER_KEY.", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"\nFATAL ERROR: A critical error occurred during execution: {type(e).__name__}", file=sys.stderr)
        print(f"   Error details: {e}", file=sys.stderr)
        return 1

    if state.failed:
        print(f"\nERROR: Demo finished with failures in: {', '.join(state.errors)}", file=sys.stderr)
        return 1
    if state.job_result:
        print(f"\nSUCCESS: Word count output: {state.job_result.output_part}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
