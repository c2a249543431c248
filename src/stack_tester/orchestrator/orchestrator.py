"""Stack orchestrator: drives a stack through deploy and undeploy and waits for it."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from ..config import OrchestrationConfig
from ..projects.models import (
    ProjectConfig,
    StackConfig,
    State,
    StateCode,
    member_is_deploying,
    member_is_undeployed,
)
from ..projects.service import CloudInfoService, NotModifiedError, ProjectsAPIError
from .diagnostics import DiagnosticsAggregator
from .models import (
    DeployOutcome,
    DiagnosticsError,
    MemberClass,
    MemberFailedError,
    StackFailedError,
    StackStuckError,
    StackTestError,
    StackTimeoutError,
    TriggerError,
    UndeployOutcome,
)
from .stall_detector import StallDetector

logger = logging.getLogger(__name__)

_ROOT_DEPLOY_FAILED = (State.APPLY_FAILED, State.DEPLOYING_FAILED, State.VALIDATING_FAILED)
_BUSY = (State.VALIDATING, State.DEPLOYING, State.UNDEPLOYING)


class StackOrchestrator:
    """
    栈编排器

    触发 validate（自动部署）或 undeploy，然后轮询栈及其成员的状态，
    直到完成、明确失败或超时。所有远端调用都是同步的，
    两次轮询之间的 sleep 是唯一的等待点。
    """

    def __init__(
        self,
        service: CloudInfoService,
        config: Optional[OrchestrationConfig] = None,
        stall_detector: Optional[StallDetector] = None,
        diagnostics: Optional[DiagnosticsAggregator] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.service = service
        self.config = (config or OrchestrationConfig()).normalized()
        self._clock = clock
        self._sleep = sleep
        self.stall_detector = stall_detector or StallDetector(
            service,
            enabled=self.config.auto_sync,
            sync_interval_minutes=self.config.auto_sync_interval_minutes,
            clock=clock,
        )
        self.diagnostics = diagnostics or DiagnosticsAggregator(
            service,
            sleep=sleep,
            max_attempts=self.config.workspace_info_max_attempts,
        )

    # ===== 对外接口 =====

    def run_deploy(
        self,
        stack: StackConfig,
        timeout_minutes: Optional[int] = None,
    ) -> List[StackTestError]:
        """Deploy the stack and wait for it. Returns an empty list on success."""
        return self.deploy(stack, timeout_minutes).error_list()

    def run_undeploy(
        self,
        stack: StackConfig,
        timeout_minutes: Optional[int] = None,
    ) -> Tuple[bool, List[StackTestError]]:
        """Undeploy the stack and wait for it.

        Returns:
            (triggered, errors): ``triggered`` is False when nothing was deployed
        """
        outcome = self.undeploy(stack, timeout_minutes)
        return outcome.triggered, outcome.error_list()

    # ===== 部署 =====

    def deploy(self, stack: StackConfig, timeout_minutes: Optional[int] = None) -> DeployOutcome:
        name = stack.display_name
        timeout = timeout_minutes or self.config.deploy_timeout_minutes
        poll = self.config.poll_interval_seconds
        outcome = DeployOutcome(stack_name=name)
        started = self._clock()

        logger.info("=" * 60)
        logger.info(f"🚀 Deploying stack {name} (timeout {timeout}m, poll {poll}s)")
        logger.info("=" * 60)

        try:
            self.service.validate_project_config(stack)
        except NotModifiedError:
            logger.info(f"Stack {name} already validated, nothing to trigger")
        except ProjectsAPIError as exc:
            outcome.errors.append(TriggerError(f"failed to trigger validate for stack {name}: {exc}"))
            return self._finish_deploy(outcome, started)

        deadline = self._clock() + timeout * 60
        expected = len(stack.member_ids)
        last_state = "unknown"

        while self._clock() <= deadline:
            outcome.iterations += 1

            try:
                stack_details = self.service.get_config(stack)
            except ProjectsAPIError as exc:
                outcome.errors.append(StackFailedError(f"failed to get state of stack {name}: {exc}"))
                return self._finish_deploy(outcome, started)
            last_state = stack_details.describe_state()
            logger.info(f"[{outcome.iterations}] Stack {name}: {last_state}")

            if stack_details.state in _ROOT_DEPLOY_FAILED:
                outcome.errors.append(
                    StackFailedError(f"stack {name} failed to deploy, state: {last_state}")
                )
                return self._finish_deploy(outcome, started)

            expected = max(expected, len(stack_details.members))
            try:
                members, expected = self._fetch_members(stack, expected)
            except ProjectsAPIError as exc:
                outcome.errors.append(StackFailedError(f"failed to get members of stack {name}: {exc}"))
                return self._finish_deploy(outcome, started)

            outcome.warnings.extend(self.stall_detector.track_and_resync(stack, members))

            classes = self._classify_members(members)
            self._log_members(members, classes)

            failed = [m for m in members if classes[m.id] is MemberClass.FAILED]
            if failed:
                self._record_member_failures(outcome.errors, stack, stack_details, failed, "deploy")
                return self._finish_deploy(outcome, started)

            if stack_details.state == State.DEPLOYED and not self._awaiting(stack_details):
                outcome.completed = True
                return self._finish_deploy(outcome, started)

            if not members:
                logger.info(f"   No members reported for stack {name} yet")
            elif not any(c.is_active for c in classes.values()):
                if self._all_deployed(members):
                    outcome.completed = True
                    return self._finish_deploy(outcome, started)

                # 读写延迟：等一个轮询周期后再确认
                logger.info(f"   Nothing in flight for stack {name}, re-checking in {poll}s")
                self._sleep(poll)
                try:
                    stack_details = self.service.get_config(stack)
                    members, expected = self._fetch_members(stack, expected)
                except ProjectsAPIError as exc:
                    outcome.errors.append(
                        StackFailedError(f"failed to re-check state of stack {name}: {exc}")
                    )
                    return self._finish_deploy(outcome, started)

                # 复查时同样先看栈根状态
                last_state = stack_details.describe_state()
                if stack_details.state in _ROOT_DEPLOY_FAILED:
                    outcome.errors.append(
                        StackFailedError(f"stack {name} failed to deploy, state: {last_state}")
                    )
                    return self._finish_deploy(outcome, started)
                if stack_details.state == State.DEPLOYED and not self._awaiting(stack_details):
                    outcome.completed = True
                    return self._finish_deploy(outcome, started)

                if self._all_deployed(members):
                    outcome.completed = True
                    return self._finish_deploy(outcome, started)

                classes = self._classify_members(members)
                if any(c.is_active or c is MemberClass.FAILED for c in classes.values()):
                    continue

                logger.error(f"❌ Stack {name} is stuck")
                outcome.errors.append(
                    StackStuckError(
                        f"stack {name} is {stack_details.describe_state()} "
                        "and no member is deploying"
                    )
                )
                outcome.errors.append(
                    DiagnosticsError(
                        self.diagnostics.collect_stuck_report(stack, stack_details, members)
                    )
                )
                return self._finish_deploy(outcome, started)

            if any(c is MemberClass.NUDGED for c in classes.values()):
                self._nudge(stack, outcome)

            self._sleep(poll)

        outcome.errors.append(
            StackTimeoutError(
                f"timeout waiting for stack {name} to deploy after {timeout} minutes "
                f"(last state: {last_state})"
            )
        )
        return self._finish_deploy(outcome, started)

    def _classify_members(self, members: List[ProjectConfig]) -> Dict[str, MemberClass]:
        return {member.id: self.classify_deploy_member(member) for member in members}

    def classify_deploy_member(self, member: ProjectConfig) -> MemberClass:
        """Classify one member during deploy polling."""
        state, code = member.state, member.state_code

        if state is None:
            return MemberClass.TRANSIENT
        if state.is_failed:
            return MemberClass.FAILED
        if state == State.DEPLOYED:
            return MemberClass.DEPLOYED
        # approved 表示已排队等待自动部署，与 validated 一样算作进行中
        if member_is_deploying(member):
            return MemberClass.IN_FLIGHT
        # 状态码缺失或未知时视为短暂抖动，继续轮询
        if code is None or code == StateCode.UNKNOWN or state == State.UNRECOGNIZED:
            return MemberClass.TRANSIENT
        if state == State.DRAFT:
            if code == StateCode.AWAITING_PREREQUISITE:
                return MemberClass.AWAITING
            if code == StateCode.AWAITING_MEMBER_DEPLOYMENT and self.is_container_member(member):
                return MemberClass.AWAITING
            return MemberClass.NUDGED
        return MemberClass.IDLE

    def is_container_member(self, member: ProjectConfig) -> bool:
        # TODO: switch to an explicit member kind once the Projects API exposes one
        suffix = self.config.container_member_suffix
        return bool(suffix) and member.name.endswith(suffix)

    def _nudge(self, stack: StackConfig, outcome: DeployOutcome) -> None:
        logger.warning(f"⚠️ Stack {stack.display_name} has members stuck in draft, re-validating")
        try:
            self.service.validate_project_config(stack)
        except NotModifiedError:
            logger.info("   Validate returned Not Modified, stack already in desired state")
        except ProjectsAPIError as exc:
            logger.warning(f"   Re-validate failed: {exc}")
            outcome.warnings.append(
                TriggerError(f"failed to re-validate stack {stack.display_name}: {exc}")
            )

    @staticmethod
    def _awaiting(config: ProjectConfig) -> bool:
        return config.state_code is not None and config.state_code.is_awaiting

    @staticmethod
    def _all_deployed(members: List[ProjectConfig]) -> bool:
        return bool(members) and all(m.state == State.DEPLOYED for m in members)

    def _finish_deploy(self, outcome: DeployOutcome, started: float) -> DeployOutcome:
        outcome.elapsed_seconds = self._clock() - started
        if outcome.errors:
            logger.error(f"❌ Deploy of stack {outcome.stack_name} failed")
            for err in outcome.error_list():
                logger.error(f"   {err}")
        else:
            for warning in outcome.warnings:
                logger.warning(f"   {warning}")
            logger.info(
                f"🎉 Stack {outcome.stack_name} deployed in {outcome.elapsed_seconds:.0f}s "
                f"({outcome.iterations} polls)"
            )
        return outcome

    # ===== 卸载 =====

    def undeploy(self, stack: StackConfig, timeout_minutes: Optional[int] = None) -> UndeployOutcome:
        name = stack.display_name
        timeout = timeout_minutes or self.config.deploy_timeout_minutes
        poll = self.config.poll_interval_seconds
        outcome = UndeployOutcome(stack_name=name)
        started = self._clock()
        expected = len(stack.member_ids)

        logger.info("=" * 60)
        logger.info(f"🧹 Undeploying stack {name} (timeout {timeout}m, poll {poll}s)")
        logger.info("=" * 60)

        # 阶段一：等待栈进入可以安全卸载的状态
        deadline = self._clock() + timeout * 60
        ready = False
        while self._clock() <= deadline:
            outcome.iterations += 1
            try:
                stack_details = self.service.get_config(stack)
                expected = max(expected, len(stack_details.members))
                members, expected = self._fetch_members(stack, expected)
            except ProjectsAPIError as exc:
                outcome.errors.append(StackFailedError(f"failed to get state of stack {name}: {exc}"))
                return self._finish_undeploy(outcome, started)

            outcome.warnings.extend(self.stall_detector.track_and_resync(stack, members))

            busy = [m for m in members if m.state in _BUSY]
            if stack_details.state not in (State.DEPLOYING, State.UNDEPLOYING) and not busy:
                ready = True
                break

            logger.info(
                f"[{outcome.iterations}] Waiting to undeploy stack {name}: "
                f"{stack_details.describe_state()}, {len(busy)} member(s) busy"
            )
            self._sleep(poll)

        if not ready:
            outcome.errors.append(
                StackTimeoutError(
                    f"timeout waiting to trigger undeploy for stack {name} after {timeout} minutes"
                )
            )
            return self._finish_undeploy(outcome, started)

        # 阶段二：触发 undeploy 并等待完成
        try:
            self.service.undeploy_config(stack)
        except NotModifiedError:
            logger.info(f"Stack {name} has nothing to undeploy")
            outcome.completed = True
            outcome.detail = "nothing to undeploy"
            return self._finish_undeploy(outcome, started)
        except ProjectsAPIError as exc:
            outcome.errors.append(TriggerError(f"failed to trigger undeploy for stack {name}: {exc}"))
            return self._finish_undeploy(outcome, started)
        outcome.triggered = True

        deadline = self._clock() + timeout * 60
        last_state = "unknown"
        while self._clock() <= deadline:
            outcome.iterations += 1
            try:
                stack_details = self.service.get_config(stack)
            except ProjectsAPIError as exc:
                outcome.errors.append(StackFailedError(f"failed to get state of stack {name}: {exc}"))
                return self._finish_undeploy(outcome, started)
            last_state = stack_details.describe_state()
            logger.info(f"[{outcome.iterations}] Stack {name}: {last_state}")

            if stack_details.state == State.UNDEPLOYING_FAILED:
                outcome.errors.append(
                    StackFailedError(f"stack {name} failed to undeploy, state: {last_state}")
                )
                return self._finish_undeploy(outcome, started)

            if (
                stack_details.state == State.DRAFT
                and stack_details.state_code == StateCode.AWAITING_MEMBER_DEPLOYMENT
            ):
                outcome.completed = True
                outcome.detail = "stack is back in draft awaiting member deployment"
                return self._finish_undeploy(outcome, started)

            try:
                members, expected = self._fetch_members(stack, expected)
            except ProjectsAPIError as exc:
                outcome.errors.append(StackFailedError(f"failed to get members of stack {name}: {exc}"))
                return self._finish_undeploy(outcome, started)

            outcome.warnings.extend(self.stall_detector.track_and_resync(stack, members))
            for member in members:
                logger.info(f"   {member.name or member.id}: {member.describe_state()}")

            failed = [m for m in members if m.state == State.UNDEPLOYING_FAILED]
            if failed:
                self._record_member_failures(outcome.errors, stack, stack_details, failed, "undeploy")
                return self._finish_undeploy(outcome, started)

            if all(member_is_undeployed(m) for m in members) and (
                members or member_is_undeployed(stack_details)
            ):
                outcome.completed = True
                return self._finish_undeploy(outcome, started)

            self._sleep(poll)

        outcome.errors.append(
            StackTimeoutError(
                f"timeout waiting for stack {name} to undeploy after {timeout} minutes "
                f"(last state: {last_state})"
            )
        )
        return self._finish_undeploy(outcome, started)

    def _finish_undeploy(self, outcome: UndeployOutcome, started: float) -> UndeployOutcome:
        outcome.elapsed_seconds = self._clock() - started
        if outcome.errors:
            logger.error(f"❌ Undeploy of stack {outcome.stack_name} failed")
            for err in outcome.error_list():
                logger.error(f"   {err}")
        else:
            for warning in outcome.warnings:
                logger.warning(f"   {warning}")
            logger.info(
                f"✅ Stack {outcome.stack_name} undeploy finished in "
                f"{outcome.elapsed_seconds:.0f}s ({outcome.detail or 'all members undeployed'})"
            )
        return outcome

    # ===== 公共辅助 =====

    def _fetch_members(
        self,
        stack: StackConfig,
        expected: int,
    ) -> Tuple[List[ProjectConfig], int]:
        """Fetch the member list, retrying while it is shorter than already observed.

        Returns:
            (members, expected): expected grows to the largest count seen
        """
        attempts = self.config.member_list_max_attempts
        members: List[ProjectConfig] = []
        for attempt in range(1, attempts + 1):
            members = self.service.get_stack_members(stack)
            if len(members) >= expected:
                break
            logger.info(
                f"   Member list returned {len(members)} of {expected} members "
                f"(attempt {attempt}/{attempts})"
            )
        else:
            logger.info(f"   Continuing with {len(members)} of {expected} members")
        return members, max(expected, len(members))

    def _record_member_failures(
        self,
        errors: List[StackTestError],
        stack: StackConfig,
        stack_details: ProjectConfig,
        failed: List[ProjectConfig],
        action: str,
    ) -> None:
        for member in failed:
            member_name = self.diagnostics.member_display_name(stack_details, member)
            logger.error(f"❌ Member {member_name} failed to {action}: {member.describe_state()}")
            errors.append(
                MemberFailedError(
                    f"member {member_name} of stack {stack.display_name} failed to {action}, "
                    f"state: {member.describe_state()}",
                    member_id=member.id,
                    member_name=member_name,
                )
            )
            errors.append(
                DiagnosticsError(
                    self.diagnostics.collect_failure_report(
                        member, stack, stack_details, member_name=member_name
                    )
                )
            )

    @staticmethod
    def _log_members(members: List[ProjectConfig], classes: Dict[str, MemberClass]) -> None:
        for member in members:
            logger.info(
                f"   {member.name or member.id}: {member.describe_state()} "
                f"[{classes[member.id].value}]"
            )
