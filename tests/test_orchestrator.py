from __future__ import annotations

import pytest
from conftest import FakeFileSystem, FakeJobClient, FakeProvisioner, FakeProxy

from emr_wordcount.dataclasses import ReadinessPolicy
from emr_wordcount.errors import JobSubmissionError, ProvisioningError, ProxyError
from emr_wordcount.orchestrator import ErrorPolicy, WordCountDemo


def _demo(calls, clock, provisioner=None, proxy=None, client=None, fs=None,
          error_policy=ErrorPolicy.CONTINUE) -> WordCountDemo:
    client = client or FakeJobClient(calls)
    fs = fs or FakeFileSystem(calls)
    return WordCountDemo(
        provisioner=provisioner or FakeProvisioner(calls),
        proxy=proxy or FakeProxy(calls),
        job_client_factory=lambda conf: client,
        filesystem_factory=lambda conf: fs,
        readiness=ReadinessPolicy(),
        error_policy=error_policy,
        sleep=clock.sleep,
        clock=clock,
    )


def test_end_to_end_with_all_collaborators_succeeding(calls, clock, state, capsys) -> None:
    provisioner = FakeProvisioner(calls)

    result = _demo(calls, clock, provisioner=provisioner).run(state)

    assert result is state
    assert not state.failed
    assert calls.count(("create", "input")) == 1
    assert calls.count("submit") == 1
    assert calls.count(("open", "output/part-00000")) == 1
    assert calls.count("destroy") == 1
    assert calls[:2] == ["launch", "open"]
    assert calls[-2:] == ["close", "destroy"]
    assert state.job_result.step_id == "s-FAKE"

    out = capsys.readouterr()
    assert "Cluster started." in out.out
    assert "Cluster stopped." in out.out
    assert out.err == ""


def test_launch_failure_still_attempts_job_and_teardown(calls, clock, state, launch_failure, capsys) -> None:
    demo = _demo(calls, clock, provisioner=FakeProvisioner(calls, launch_error=launch_failure))

    demo.run(state)

    assert set(state.errors) == {"start", "job", "stop"}
    err = capsys.readouterr().err
    assert "Could not start cluster: EMR refused the cluster request" in err
    assert "Could not run job: No running cluster" in err
    assert "Could not bring down the cluster: No cluster to bring down" in err


def test_abort_policy_skips_job_but_still_tears_down(calls, clock, state, launch_failure) -> None:
    demo = _demo(calls, clock, provisioner=FakeProvisioner(calls, launch_error=launch_failure),
                 error_policy=ErrorPolicy.ABORT)

    demo.run(state)

    assert "job" not in state.errors
    assert "submit" not in calls
    assert "stop" in state.errors


def test_abort_policy_destroys_partially_launched_cluster(calls, clock, state) -> None:
    provisioner = FakeProvisioner(calls, launch_error=ProvisioningError("timed out", cluster_id="j-PARTIAL"))
    demo = _demo(calls, clock, provisioner=provisioner, error_policy="abort")

    demo.run(state)

    assert provisioner.destroyed == ["j-PARTIAL"]
    assert set(state.errors) == {"start"}


def test_job_failure_is_followed_by_teardown(calls, clock, state, capsys) -> None:
    client = FakeJobClient(calls, submit_error=JobSubmissionError("Step s-1 ended in state FAILED"))

    _demo(calls, clock, client=client).run(state)

    assert set(state.errors) == {"job"}
    assert calls[-2:] == ["close", "destroy"]
    assert "Could not run job: Step s-1 ended in state FAILED" in capsys.readouterr().err


def test_interrupt_outside_the_wait_still_tears_down(calls, clock, state) -> None:
    class InterruptingFileSystem(FakeFileSystem):
        def create(self, path):
            raise KeyboardInterrupt

    demo = _demo(calls, clock, fs=InterruptingFileSystem(calls))

    with pytest.raises(KeyboardInterrupt):
        demo.run(state)

    assert calls[-2:] == ["close", "destroy"]


def test_proxy_close_failure_is_recorded_and_cluster_destroyed(calls, clock, state, capsys) -> None:
    provisioner = FakeProvisioner(calls)
    proxy = FakeProxy(calls, close_error=ProxyError("ssh hung"))

    _demo(calls, clock, provisioner=provisioner, proxy=proxy).run(state)

    assert state.errors == {"stop": "ssh hung"}
    assert provisioner.destroyed == ["j-FAKE"]
    assert "Could not bring down the cluster: ssh hung" in capsys.readouterr().err

def test_unknown_error_policy_is_rejected(calls, clock) -> None:
    with pytest.raises(ValueError):
        _demo(calls, clock, error_policy="retry")
