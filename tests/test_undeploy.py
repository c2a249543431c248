"""Test the undeploy orchestration loop against a scripted service."""

from stack_tester.config import OrchestrationConfig
from stack_tester.orchestrator import (
    DiagnosticsError,
    MemberFailedError,
    ResyncError,
    StackFailedError,
    StackOrchestrator,
    StackTimeoutError,
    TriggerError,
)
from stack_tester.projects import (
    MemberRef,
    MockCloudInfoService,
    NotModifiedError,
    ProjectConfig,
    ProjectsAPIError,
    StackConfig,
    State,
    StateCode,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


STACK = StackConfig(project_id="proj-1", config_id="stack-1", name="demo-stack")


def root(state, code=None):
    return ProjectConfig(
        id="stack-1",
        name="demo-stack",
        project_id="proj-1",
        state=state,
        state_code=code,
        members=[MemberRef("network", "a"), MemberRef("database", "b")],
    )


def member(member_id, state, code=None):
    return ProjectConfig(id=member_id, name=member_id, state=state, state_code=code)


def deployed_members():
    return [member("a", State.DEPLOYED), member("b", State.DEPLOYED)]


def make_orchestrator(service, clock, **overrides):
    settings = {"poll_interval_seconds": 30, "deploy_timeout_minutes": 10}
    settings.update(overrides)
    config = OrchestrationConfig(**settings)
    return StackOrchestrator(service, config=config, clock=clock, sleep=clock.sleep)


def test_not_modified_means_nothing_to_undeploy():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED)],
        member_snapshots=[deployed_members()],
    )
    service.undeploy_errors = [NotModifiedError()]

    triggered, errors = make_orchestrator(service, clock).run_undeploy(STACK)

    assert triggered is False
    assert errors == []
    assert service.call_count("undeploy_config") == 1
    assert clock.sleeps == []


def test_readiness_timeout_never_triggers_undeploy():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYING)],
        member_snapshots=[[member("a", State.DEPLOYING), member("b", State.DEPLOYED)]],
    )

    triggered, errors = make_orchestrator(service, clock).run_undeploy(STACK, timeout_minutes=2)

    assert triggered is False
    assert len(errors) == 1
    assert isinstance(errors[0], StackTimeoutError)
    assert "timeout waiting to trigger undeploy for stack demo-stack" in str(errors[0])
    assert service.call_count("undeploy_config") == 0


def test_waits_for_busy_members_before_triggering():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED), root(State.DEPLOYED), root(State.DRAFT, StateCode.AWAITING_MEMBER_DEPLOYMENT)],
        member_snapshots=[
            [member("a", State.VALIDATING), member("b", State.DEPLOYED)],
            deployed_members(),
        ],
    )

    triggered, errors = make_orchestrator(service, clock).run_undeploy(STACK)

    assert (triggered, errors) == (True, [])
    assert clock.sleeps == [30]
    assert service.call_count("undeploy_config") == 1


def test_successful_undeploy():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED), root(State.UNDEPLOYING), root(State.UNDEPLOYING)],
        member_snapshots=[
            deployed_members(),
            [member("a", State.UNDEPLOYING), member("b", State.DEPLOYED)],
            [member("a", State.DRAFT), member("b", State.DRAFT)],
        ],
    )

    outcome = make_orchestrator(service, clock).undeploy(STACK)

    assert outcome.triggered
    assert outcome.completed
    assert outcome.error_list() == []
    assert clock.sleeps == [30]


def test_root_back_in_draft_is_terminal():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED), root(State.DRAFT, StateCode.AWAITING_MEMBER_DEPLOYMENT)],
        member_snapshots=[deployed_members()],
    )

    triggered, errors = make_orchestrator(service, clock).run_undeploy(STACK)

    assert (triggered, errors) == (True, [])
    # 只有就绪检查时读取了成员
    assert service.call_count("get_stack_members") == 1


def test_member_undeploy_failure_includes_job_logs():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED), root(State.UNDEPLOYING)],
        member_snapshots=[
            deployed_members(),
            [member("a", State.DRAFT), member("b", State.UNDEPLOYING_FAILED)],
        ],
        job_logs={"b": ("destroy summary", "terraform destroy exploded")},
    )

    triggered, errors = make_orchestrator(service, clock).run_undeploy(STACK)

    assert triggered is True
    assert [type(err) for err in errors] == [MemberFailedError, DiagnosticsError]
    assert errors[0].member_name == "database"
    assert "terraform destroy exploded" in str(errors[1])


def test_root_undeploy_failure():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED), root(State.UNDEPLOYING_FAILED)],
        member_snapshots=[deployed_members()],
    )

    triggered, errors = make_orchestrator(service, clock).run_undeploy(STACK)

    assert triggered is True
    assert len(errors) == 1
    assert isinstance(errors[0], StackFailedError)


def test_undeploy_trigger_failure():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED)],
        member_snapshots=[deployed_members()],
    )
    service.undeploy_errors = [ProjectsAPIError("forbidden", status_code=403)]

    triggered, errors = make_orchestrator(service, clock).run_undeploy(STACK)

    assert triggered is False
    assert len(errors) == 1
    assert isinstance(errors[0], TriggerError)


def test_undeploy_timeout_after_trigger():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED), root(State.UNDEPLOYING)],
        member_snapshots=[
            deployed_members(),
            [member("a", State.UNDEPLOYING), member("b", State.DEPLOYED)],
        ],
    )

    triggered, errors = make_orchestrator(service, clock).run_undeploy(STACK, timeout_minutes=1)

    assert triggered is True
    assert len(errors) == 1
    assert isinstance(errors[0], StackTimeoutError)
    assert "to undeploy after 1 minutes" in str(errors[0])


def busy_members():
    return [member("a", State.UNDEPLOYING), member("b", State.DEPLOYED)]


def test_auto_sync_nudges_member_stuck_while_undeploying():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED), root(State.UNDEPLOYING)],
        member_snapshots=[deployed_members()]
        + [busy_members()] * 4
        + [[member("a", State.DRAFT), member("b", State.DRAFT)]],
    )
    orchestrator = make_orchestrator(service, clock, auto_sync=True, auto_sync_interval_minutes=1)

    triggered, errors = orchestrator.run_undeploy(STACK)

    assert (triggered, errors) == (True, [])
    # 成员 a 在 t=0 开始计时，t=90 超过 60 秒后同步一次
    assert service.calls_to("sync_config") == [("proj-1", "a")]
    assert clock.sleeps == [30, 30, 30, 30]


def test_undeploy_sync_failure_listed_after_stack_failure():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED)]
        + [root(State.UNDEPLOYING)] * 4
        + [root(State.UNDEPLOYING_FAILED)],
        member_snapshots=[deployed_members(), busy_members()],
    )
    service.sync_errors = [ProjectsAPIError("sync failed", status_code=500)]
    orchestrator = make_orchestrator(service, clock, auto_sync=True, auto_sync_interval_minutes=1)

    triggered, errors = orchestrator.run_undeploy(STACK)

    assert triggered is True
    assert [type(err) for err in errors] == [StackFailedError, ResyncError]
    assert "failed to sync member a" in str(errors[1])


def test_auto_sync_runs_while_waiting_to_trigger_undeploy():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED)] * 5
        + [root(State.DRAFT, StateCode.AWAITING_MEMBER_DEPLOYMENT)],
        member_snapshots=[[member("a", State.VALIDATING), member("b", State.DEPLOYED)]] * 4
        + [deployed_members()],
    )
    orchestrator = make_orchestrator(service, clock, auto_sync=True, auto_sync_interval_minutes=1)

    triggered, errors = orchestrator.run_undeploy(STACK)

    assert (triggered, errors) == (True, [])
    assert service.calls_to("sync_config") == [("proj-1", "a")]
    assert service.call_count("undeploy_config") == 1
    assert clock.sleeps == [30, 30, 30, 30]


def test_auto_sync_disabled_never_syncs_during_undeploy():
    clock = FakeClock()
    service = MockCloudInfoService(
        root_snapshots=[root(State.DEPLOYED), root(State.UNDEPLOYING)],
        member_snapshots=[deployed_members()]
        + [busy_members()] * 4
        + [[member("a", State.DRAFT), member("b", State.DRAFT)]],
    )

    triggered, errors = make_orchestrator(service, clock).run_undeploy(STACK)

    assert (triggered, errors) == (True, [])
    assert service.call_count("sync_config") == 0
