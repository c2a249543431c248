"""Failure diagnostics: job logs and unresolved references."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from ..projects.models import ProjectConfig, StackConfig
from ..projects.service import CloudInfoService, ProjectsAPIError
from .ref_resolver import build_stack_refs, resolve_references, unresolved_refs_as_text

logger = logging.getLogger(__name__)

# 失败成员的 workspace CRN 和 job ID 由后端延迟填充
WORKSPACE_INFO_INITIAL_DELAY_SECONDS = 5
WORKSPACE_INFO_MAX_DELAY_SECONDS = 30


def has_workspace_info(member: ProjectConfig) -> bool:
    """True once the member reports a workspace CRN and at least one job ID."""
    jobs = (member.last_validated, member.last_deployed, member.last_undeployed)
    return bool(member.workspace_crn) and any(job is not None and job.job_id for job in jobs)


class DiagnosticsAggregator:
    """Builds the human readable text attached to a failed run."""

    def __init__(
        self,
        service: CloudInfoService,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = 12,
    ) -> None:
        self.service = service
        self._sleep = sleep
        self.max_attempts = max(1, max_attempts)

    def member_display_name(self, stack_details: ProjectConfig, member: ProjectConfig) -> str:
        try:
            name = self.service.lookup_member_name_by_id(stack_details, member.id)
        except ProjectsAPIError as exc:
            logger.debug(f"Could not look up name of member {member.id}: {exc}")
            return f"Unknown name, ID: {member.id}"
        return name or member.name or f"Unknown name, ID: {member.id}"

    def refresh_member(self, member: ProjectConfig, project_id: str) -> ProjectConfig:
        """Re-fetch a failed member until its workspace CRN and job ID show up.

        Falls back to the polled snapshot when the retries run out.
        """
        if has_workspace_info(member):
            return member

        delay = WORKSPACE_INFO_INITIAL_DELAY_SECONDS
        for attempt in range(1, self.max_attempts + 1):
            try:
                fresh = self.service.get_config(
                    StackConfig(project_id=project_id, config_id=member.id)
                )
            except ProjectsAPIError as exc:
                logger.debug(f"Fetching member {member.id} failed (attempt {attempt}): {exc}")
            else:
                if has_workspace_info(fresh):
                    return fresh
            if attempt < self.max_attempts:
                self._sleep(delay)
                delay = min(delay * 2, WORKSPACE_INFO_MAX_DELAY_SECONDS)

        logger.warning(
            f"⚠️ Workspace info of member {member.id} still incomplete after "
            f"{self.max_attempts} attempts, using available data"
        )
        return member

    def collect_failure_report(
        self,
        member: ProjectConfig,
        stack: StackConfig,
        stack_details: ProjectConfig,
        member_name: Optional[str] = None,
    ) -> str:
        """Job summary plus full job log of a failed member."""
        name = member_name or self.member_display_name(stack_details, member)
        member = self.refresh_member(member, stack.project_id)
        summary, full_log = self.service.get_schematics_job_logs_for_member(
            member, name, stack.region
        )
        if full_log:
            return f"{summary}\n{full_log}"
        return summary

    def collect_stuck_report(
        self,
        stack: StackConfig,
        stack_details: ProjectConfig,
        members: List[ProjectConfig],
    ) -> str:
        """Describe a stack that stopped progressing without an explicit failure.

        Only the text depends on the reference resolution; callers never
        branch on it.
        """
        lines = [
            f"Stack {stack.display_name} is {stack_details.describe_state()} "
            f"but not all members are deployed:"
        ]
        for member in members:
            name = self.member_display_name(stack_details, member)
            line = f"\t{name}: {member.describe_state()}"
            if member.state_code and member.state_code.explain():
                line += f" - {member.state_code.explain()}"
            lines.append(line)

        stack_ref = resolve_references(build_stack_refs(stack_details, members))
        unresolved = unresolved_refs_as_text(stack_ref)
        if unresolved:
            lines.append("Unresolved references:")
            lines.extend(f"\t{line}" for line in unresolved.splitlines())
        return "\n".join(lines)
