"""Contract of the deployment service consumed by the orchestrator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from .models import ProjectConfig, StackConfig


class ProjectsAPIError(RuntimeError):
    """Raised when a call to the deployment service fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotModifiedError(ProjectsAPIError):
    """The service reported the configuration is already in the requested state (HTTP 304)."""

    def __init__(self, message: str = "Not Modified") -> None:
        super().__init__(message, status_code=304)


class CloudInfoService(ABC):
    """Abstract deployment service client.

    Implementations talk to the remote control plane. The orchestrator only
    relies on the methods declared here.
    """

    @abstractmethod
    def get_config(self, details: StackConfig) -> ProjectConfig:
        """Return the current snapshot of the configuration ``details.config_id``."""

    @abstractmethod
    def get_stack_members(self, stack: StackConfig) -> List[ProjectConfig]:
        """Return the current snapshot of every member of the stack."""

    @abstractmethod
    def validate_project_config(self, stack: StackConfig) -> None:
        """Trigger validation (and, with auto-deploy, the full deploy chain).

        Raises:
            NotModifiedError: nothing to do, already in the desired state
        """

    @abstractmethod
    def undeploy_config(self, stack: StackConfig) -> None:
        """Trigger teardown of the stack.

        Raises:
            NotModifiedError: nothing is deployed
        """

    @abstractmethod
    def sync_config(self, project_id: str, config_id: str) -> None:
        """Ask the service to re-evaluate a configuration against its workspace."""

    @abstractmethod
    def get_schematics_job_logs_for_member(
        self,
        member: ProjectConfig,
        member_name: str,
        region: str,
    ) -> Tuple[str, str]:
        """Return ``(summary, full_log)`` for the member's last job. Never raises."""

    def lookup_member_name_by_id(self, stack_details: ProjectConfig, member_id: str) -> str:
        """Resolve a member's display name.

        The stack definition member list is consulted first, then the member
        configuration itself is fetched.
        """
        for member in stack_details.members:
            if member.config_id == member_id:
                return member.name

        if not stack_details.project_id:
            raise ProjectsAPIError(f"member ID {member_id} not found in stack details")
        try:
            member_config = self.get_config(
                StackConfig(project_id=stack_details.project_id, config_id=member_id)
            )
        except ProjectsAPIError as exc:
            raise ProjectsAPIError(f"member ID {member_id} not found in stack details") from exc
        return member_config.name
