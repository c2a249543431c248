"""Scripted in-memory deployment service.

Useful for exercising the orchestrator without a real Projects instance:
each poll consumes the next scripted snapshot, the last snapshot repeats
forever, and every call is recorded in ``calls``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import ProjectConfig, StackConfig, describe_member_job
from .service import CloudInfoService, ProjectsAPIError


def _next_snapshot(queue: List[Any]) -> Any:
    # 最后一个快照会一直重复
    if len(queue) > 1:
        return queue.pop(0)
    if queue:
        return queue[0]
    return None


def _next_error(queue: List[Optional[Exception]]) -> Optional[Exception]:
    if queue:
        return queue.pop(0)
    return None


class MockCloudInfoService(CloudInfoService):
    """In-memory CloudInfoService driven by scripted snapshots."""

    def __init__(
        self,
        root_snapshots: Optional[Sequence[ProjectConfig]] = None,
        member_snapshots: Optional[Sequence[List[ProjectConfig]]] = None,
        configs: Optional[Dict[str, ProjectConfig]] = None,
        job_logs: Optional[Dict[str, Tuple[str, str]]] = None,
    ) -> None:
        self.root_snapshots: List[ProjectConfig] = list(root_snapshots or [])
        self.member_snapshots: List[List[ProjectConfig]] = list(member_snapshots or [])
        self.configs: Dict[str, ProjectConfig] = dict(configs or {})
        self.job_logs: Dict[str, Tuple[str, str]] = dict(job_logs or {})

        # 按顺序消费的错误队列，None 表示该次调用成功
        self.get_config_errors: List[Optional[Exception]] = []
        self.get_members_errors: List[Optional[Exception]] = []
        self.validate_errors: List[Optional[Exception]] = []
        self.undeploy_errors: List[Optional[Exception]] = []
        self.sync_errors: List[Optional[Exception]] = []

        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        # 最近一次返回的成员列表，get_config 按 ID 从中查找成员
        self._last_members: List[ProjectConfig] = []

    def call_count(self, name: str) -> int:
        return sum(1 for call_name, _ in self.calls if call_name == name)

    def calls_to(self, name: str) -> List[Tuple[Any, ...]]:
        return [args for call_name, args in self.calls if call_name == name]

    def get_config(self, details: StackConfig) -> ProjectConfig:
        self.calls.append(("get_config", (details.project_id, details.config_id)))
        error = _next_error(self.get_config_errors)
        if error:
            raise error
        if details.config_id in self.configs:
            return self.configs[details.config_id]
        for member in self._last_members:
            if member.id == details.config_id:
                return member
        snapshot = _next_snapshot(self.root_snapshots)
        if snapshot is None:
            raise ProjectsAPIError(f"config {details.config_id} not found", status_code=404)
        return snapshot

    def get_stack_members(self, stack: StackConfig) -> List[ProjectConfig]:
        self.calls.append(("get_stack_members", (stack.project_id, stack.config_id)))
        error = _next_error(self.get_members_errors)
        if error:
            raise error
        self._last_members = list(_next_snapshot(self.member_snapshots) or [])
        return list(self._last_members)

    def validate_project_config(self, stack: StackConfig) -> None:
        self.calls.append(("validate_project_config", (stack.project_id, stack.config_id)))
        error = _next_error(self.validate_errors)
        if error:
            raise error

    def undeploy_config(self, stack: StackConfig) -> None:
        self.calls.append(("undeploy_config", (stack.project_id, stack.config_id)))
        error = _next_error(self.undeploy_errors)
        if error:
            raise error

    def sync_config(self, project_id: str, config_id: str) -> None:
        self.calls.append(("sync_config", (project_id, config_id)))
        error = _next_error(self.sync_errors)
        if error:
            raise error

    def get_schematics_job_logs_for_member(
        self,
        member: ProjectConfig,
        member_name: str,
        region: str,
    ) -> Tuple[str, str]:
        self.calls.append(("get_schematics_job_logs_for_member", (member.id, member_name, region)))
        if member.id in self.job_logs:
            return self.job_logs[member.id]
        return describe_member_job(member, member_name), ""
