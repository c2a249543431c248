"""Configuration loading utilities for stack-tester."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .projects.models import StackConfig

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/default_config.json")

DEFAULT_POLL_INTERVAL_SECONDS = 60
DEFAULT_DEPLOY_TIMEOUT_MINUTES = 6 * 60
DEFAULT_AUTO_SYNC_INTERVAL_MINUTES = 20

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class ProjectsConfig:
    """Connection settings for the Projects deployment service."""

    api_key: Optional[str] = None
    endpoint: str = "https://projects.api.cloud.ibm.com"
    iam_endpoint: str = "https://iam.cloud.ibm.com"
    schematics_endpoint: str = "https://{location}.schematics.cloud.ibm.com"
    request_timeout: int = 60             # 单次请求超时（秒）
    proxy: Optional[str] = None           # 代理设置，如 "http://127.0.0.1:7890"


@dataclass
class OrchestrationConfig:
    """Tunables of the deploy/undeploy polling loops."""

    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    deploy_timeout_minutes: int = DEFAULT_DEPLOY_TIMEOUT_MINUTES   # 同时用于 undeploy
    auto_sync: bool = False                                          # 成员卡住时自动 sync
    auto_sync_interval_minutes: int = DEFAULT_AUTO_SYNC_INTERVAL_MINUTES
    member_list_max_attempts: int = 5                                # 成员列表不一致时的最大获取次数
    workspace_info_max_attempts: int = 12                            # 失败成员 workspace 信息的最大获取次数
    # 以此后缀结尾的成员视为容器类型成员
    container_member_suffix: str = " Container"

    def normalized(self) -> "OrchestrationConfig":
        """Return a copy where zero/negative values fall back to defaults."""
        return OrchestrationConfig(
            poll_interval_seconds=self.poll_interval_seconds
            if self.poll_interval_seconds > 0 else DEFAULT_POLL_INTERVAL_SECONDS,
            deploy_timeout_minutes=self.deploy_timeout_minutes
            if self.deploy_timeout_minutes > 0 else DEFAULT_DEPLOY_TIMEOUT_MINUTES,
            auto_sync=self.auto_sync,
            auto_sync_interval_minutes=self.auto_sync_interval_minutes
            if self.auto_sync_interval_minutes > 0 else DEFAULT_AUTO_SYNC_INTERVAL_MINUTES,
            member_list_max_attempts=max(1, self.member_list_max_attempts),
            workspace_info_max_attempts=max(1, self.workspace_info_max_attempts),
            container_member_suffix=self.container_member_suffix,
        )


@dataclass
class StackSettings:
    """Default stack under test."""

    project_id: Optional[str] = None
    config_id: Optional[str] = None
    name: str = ""
    region: str = "us-south"
    member_ids: List[str] = field(default_factory=list)

    def to_stack_config(self) -> StackConfig:
        if not self.project_id or not self.config_id:
            raise ValueError("Both a project ID and a stack config ID are required")
        return StackConfig(
            project_id=self.project_id,
            config_id=self.config_id,
            name=self.name,
            region=self.region,
            member_ids=list(self.member_ids),
        )


@dataclass
class AppConfig:
    """Top-level configuration."""

    projects: ProjectsConfig = field(default_factory=ProjectsConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    stack: StackSettings = field(default_factory=StackSettings)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        def section(name: str) -> Dict[str, Any]:
            # 过滤掉以下划线开头的注释字段
            raw = payload.get(name, {}) or {}
            return {k: v for k, v in raw.items() if not k.startswith("_")}

        return cls(
            projects=ProjectsConfig(**{**ProjectsConfig().__dict__, **section("projects")}),
            orchestration=OrchestrationConfig(
                **{**OrchestrationConfig().__dict__, **section("orchestration")}
            ).normalized(),
            stack=StackSettings(**{**StackSettings().__dict__, **section("stack")}),
        )


def _apply_env_overrides(config: AppConfig) -> None:
    if not config.projects.api_key:
        config.projects.api_key = os.getenv("STACK_TESTER_API_KEY") or os.getenv(
            "TF_VAR_ibmcloud_api_key"
        )

    env_proxy = os.getenv("STACK_TESTER_PROXY")
    if env_proxy:
        config.projects.proxy = env_proxy

    env_project = os.getenv("STACK_TESTER_PROJECT_ID")
    if env_project:
        config.stack.project_id = env_project

    env_config = os.getenv("STACK_TESTER_CONFIG_ID")
    if env_config:
        config.stack.config_id = env_config

    env_region = os.getenv("STACK_TESTER_REGION")
    if env_region:
        config.stack.region = env_region

    env_auto_sync = os.getenv("STACK_TESTER_AUTO_SYNC")
    if env_auto_sync:
        config.orchestration.auto_sync = env_auto_sync.strip().lower() in _TRUE_VALUES

    env_poll = os.getenv("STACK_TESTER_POLL_INTERVAL")
    if env_poll:
        config.orchestration.poll_interval_seconds = int(env_poll)
        config.orchestration = config.orchestration.normalized()


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    Environment variables (higher priority than config file):
    - STACK_TESTER_API_KEY or TF_VAR_ibmcloud_api_key: API key
    - STACK_TESTER_PROXY: HTTP proxy for service requests
    - STACK_TESTER_PROJECT_ID / STACK_TESTER_CONFIG_ID: default stack
    - STACK_TESTER_REGION: project region
    - STACK_TESTER_AUTO_SYNC: enable auto-resync of stalled members
    - STACK_TESTER_POLL_INTERVAL: poll interval in seconds
    """

    candidate_paths = []
    if path:
        candidate_paths.append(Path(path))
    candidate_paths.append(_DEFAULT_CONFIG_PATH)

    for candidate in candidate_paths:
        if candidate.is_file():
            with candidate.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            config = AppConfig.from_dict(data)
            _apply_env_overrides(config)
            return config

    raise FileNotFoundError(
        f"Could not find configuration file. Looked in: {', '.join(str(p) for p in candidate_paths)}"
    )
