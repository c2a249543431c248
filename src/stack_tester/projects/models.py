"""Data models for project configurations and stacks."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class State(Enum):
    """配置的主状态（由远端部署服务维护）"""
    DRAFT = "draft"
    VALIDATING = "validating"
    VALIDATED = "validated"
    APPROVED = "approved"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    VALIDATING_FAILED = "validating_failed"
    DEPLOYING_FAILED = "deploying_failed"
    APPLY_FAILED = "apply_failed"
    UNDEPLOYING = "undeploying"
    UNDEPLOYING_FAILED = "undeploying_failed"
    DELETING = "deleting"
    DELETING_FAILED = "deleting_failed"
    DELETED = "deleted"
    # 服务端返回了未知的值
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["State"]:
        """Parse an API value. ``None`` stays ``None``; unknown values map to UNRECOGNIZED."""
        if value is None:
            return None
        try:
            return cls(value.lower())
        except ValueError:
            return cls.UNRECOGNIZED

    @property
    def is_failed(self) -> bool:
        return self.value.endswith("_failed")


class StateCode(Enum):
    """状态子码，用于限定 draft / deployed 的过渡状态"""
    AWAITING_VALIDATION = "awaiting_validation"
    AWAITING_PREREQUISITE = "awaiting_prerequisite"
    AWAITING_INPUT = "awaiting_input"
    AWAITING_MEMBER_DEPLOYMENT = "awaiting_member_deployment"
    AWAITING_STACK_SETUP = "awaiting_stack_setup"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["StateCode"]:
        if value is None:
            return None
        try:
            return cls(value.lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_awaiting(self) -> bool:
        return self.value.startswith("awaiting_")

    def explain(self) -> str:
        return STATE_CODE_EXPLANATIONS.get(self, "")


STATE_CODE_EXPLANATIONS = {
    StateCode.AWAITING_INPUT: "waiting for required inputs to be provided",
    StateCode.AWAITING_PREREQUISITE: "waiting for dependent configurations to complete",
    StateCode.AWAITING_VALIDATION: "ready to validate - inputs complete",
    StateCode.AWAITING_MEMBER_DEPLOYMENT: "waiting for member configurations to deploy",
    StateCode.AWAITING_STACK_SETUP: "waiting for the stack to be set up",
}


@dataclass
class StackConfig:
    """Identifies the stack under test. Owned by the calling test, read-only here."""

    project_id: str
    config_id: str
    name: str = ""
    region: str = "us-south"
    # 期望的成员 ID 列表（可选，用于校验成员列表是否完整）
    member_ids: List[str] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.config_id


@dataclass
class MemberRef:
    """A member entry of a stack definition."""

    name: str
    config_id: str


@dataclass
class JobInfo:
    """Last validate/deploy/undeploy job reported for a configuration."""

    job_id: Optional[str] = None
    result: Optional[str] = None
    failed_resources: List[str] = field(default_factory=list)
    error_messages: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], kind: str) -> Optional["JobInfo"]:
        """Parse a ``last_validated`` / ``last_deployed`` / ``last_undeployed`` block.

        Args:
            data: Raw block from the API (may be None)
            kind: "plan", "apply" or "destroy", selects the summary fields
        """
        if not data:
            return None
        job = data.get("job") or {}
        summary = job.get("summary") or {}

        if kind == "destroy":
            resources = (summary.get("destroy_summary") or {}).get("resources") or {}
            failed = resources.get("failed") or []
        else:
            failed = (summary.get(f"{kind}_summary") or {}).get("failed_resources") or []
        messages = (summary.get(f"{kind}_messages") or {}).get("error_messages") or []

        return cls(
            job_id=job.get("id"),
            result=data.get("result"),
            failed_resources=list(failed),
            error_messages=list(messages),
        )


@dataclass
class ProjectConfig:
    """Snapshot of a project configuration (stack root or stack member)."""

    id: str
    name: str = ""
    project_id: Optional[str] = None
    state: Optional[State] = None
    state_code: Optional[StateCode] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    # outputs 保持 API 的顺序: [{"name": ..., "value": ...}]
    outputs: List[Dict[str, Any]] = field(default_factory=list)
    members: List[MemberRef] = field(default_factory=list)
    workspace_crn: Optional[str] = None
    action_urls: List[str] = field(default_factory=list)
    last_validated: Optional[JobInfo] = None
    last_deployed: Optional[JobInfo] = None
    last_undeployed: Optional[JobInfo] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectConfig":
        definition = data.get("definition") or {}
        members = [
            MemberRef(name=m.get("name", ""), config_id=m.get("config_id", ""))
            for m in definition.get("members") or []
        ]
        action_urls = [
            s["action_url"]
            for s in data.get("needs_attention_state") or []
            if s.get("action_url")
        ]
        return cls(
            id=data.get("id", ""),
            name=definition.get("name", ""),
            project_id=(data.get("project") or {}).get("id"),
            state=State.parse(data.get("state")),
            state_code=StateCode.parse(data.get("state_code")),
            inputs=dict(definition.get("inputs") or {}),
            outputs=list(data.get("outputs") or []),
            members=members,
            workspace_crn=(data.get("schematics") or {}).get("workspace_crn"),
            action_urls=action_urls,
            last_validated=JobInfo.from_dict(data.get("last_validated"), "plan"),
            last_deployed=JobInfo.from_dict(data.get("last_deployed"), "apply"),
            last_undeployed=JobInfo.from_dict(data.get("last_undeployed"), "destroy"),
        )

    def describe_state(self) -> str:
        state = self.state.value if self.state else "unknown"
        code = self.state_code.value if self.state_code else "unknown"
        return f"{state} ({code})"


def member_is_deploying(member: ProjectConfig) -> bool:
    return member.state in (
        State.DEPLOYING,
        State.VALIDATING,
        State.APPROVED,
        State.VALIDATED,
    )


def member_is_undeployed(member: ProjectConfig) -> bool:
    return member.state in (
        State.APPROVED,
        State.DRAFT,
        State.VALIDATED,
        State.DELETED,
    )


def member_is_deploy_failed(member: ProjectConfig) -> bool:
    return member.state in (State.DEPLOYING_FAILED, State.VALIDATING_FAILED)


def job_url_from_action_url(action_url: str, job_id: str) -> str:
    """Derive the schematics job log URL from a needs-attention action URL."""
    base = action_url.split("/jobs?region=")[0]
    return f"{base}/log/{job_id}"


def describe_member_job(member: ProjectConfig, member_name: str) -> str:
    """Compose the human readable summary of a member's most relevant job.

    The undeploy job wins over deploy, deploy over validate, matching the
    order in which a failing member would have run them.
    """
    lines = [f"Schematics job logs for member: {member_name}"]
    if member.workspace_crn:
        lines[0] += f", Schematics Workspace CRN: {member.workspace_crn}"
    else:
        lines[0] += ", Unknown Schematics Workspace CRN"

    if member.last_undeployed is not None:
        job, label, action = member.last_undeployed, "Undeploy", "Undeployment"
    elif member.last_deployed is not None:
        job, label, action = member.last_deployed, "Deploy", "Deployment"
    elif member.last_validated is not None:
        job, label, action = member.last_validated, "Validate", "Validation"
    else:
        lines.append(f"\t({member_name}) no job information available")
        return "\n".join(lines)

    job_id = job.job_id or "unknown"
    lines[0] += f", Schematics {label} Job ID: {job_id}"
    if member.action_urls:
        url = member.action_urls[0]
        lines.append(f"Schematics workspace URL: {url}")
        if job.job_id:
            lines.append(f"Schematics Job URL: {job_url_from_action_url(url, job.job_id)}")

    lines.append(f"\t({member_name}) {action} result: {job.result or 'nil'}")
    if action == "Validation" and job.result == "failed":
        lines.append(
            f"\t({member_name}) Note: Validation = terraform plan. Infrastructure "
            "deployment (terraform apply) cannot proceed without successful validation."
        )

    if job.failed_resources:
        for resource in job.failed_resources:
            lines.append(f"\t({member_name}) Failed resource: {resource}")
    else:
        lines.append(f"\t({member_name}) failed {action}, no failed resources returned")

    if job.error_messages:
        for message in job.error_messages:
            lines.append(f"\t({member_name}) {action} error:")
            for key, value in message.items():
                lines.append(f"\t\t{key}: {value}")
    else:
        lines.append(f"\t({member_name}) no error messages returned")

    return "\n".join(lines)
