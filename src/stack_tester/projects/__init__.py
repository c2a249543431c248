"""Deployment service client and project configuration models."""

from .models import (
    State,
    StateCode,
    StackConfig,
    MemberRef,
    JobInfo,
    ProjectConfig,
    member_is_deploying,
    member_is_undeployed,
    member_is_deploy_failed,
    describe_member_job,
)
from .service import CloudInfoService, NotModifiedError, ProjectsAPIError
from .client import ProjectsClient
from .mock import MockCloudInfoService

__all__ = [
    "State",
    "StateCode",
    "StackConfig",
    "MemberRef",
    "JobInfo",
    "ProjectConfig",
    "member_is_deploying",
    "member_is_undeployed",
    "member_is_deploy_failed",
    "describe_member_job",
    "CloudInfoService",
    "NotModifiedError",
    "ProjectsAPIError",
    "ProjectsClient",
    "MockCloudInfoService",
]
