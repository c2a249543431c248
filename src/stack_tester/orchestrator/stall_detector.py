"""Stall detection and auto-resync for stack members.

A member that keeps reporting the same state/state code for longer than the
auto-sync interval gets a best-effort sync request, which asks the service
to re-read the member's schematics workspace. The clock restarts after
every sync so the service gets a full interval to recover before the next
nudge.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..projects.models import ProjectConfig, StackConfig, State, StateCode
from ..projects.service import CloudInfoService, ProjectsAPIError
from .models import ResyncError, StackTestError

logger = logging.getLogger(__name__)


@dataclass
class StateRecord:
    """First time the member was seen in its current (state, state code)."""

    state: Optional[State]
    state_code: Optional[StateCode]
    started_at: float


class StallDetector:
    """卡住检测器

    每个测试运行构造一个实例，并传给每次编排调用。
    记录表由内部锁保护，多个编排并发共享同一实例时也是安全的。
    """

    def __init__(
        self,
        service: CloudInfoService,
        enabled: bool = False,
        sync_interval_minutes: float = 20,
        clock: Callable[[], float] = time.monotonic,
        lock: Optional[threading.Lock] = None,
    ):
        """
        Args:
            service: Deployment service used to issue sync requests
            enabled: Whether auto-sync is on; when off every pass is a no-op
            sync_interval_minutes: How long a member may sit in one state before a sync
            clock: Monotonic time source in seconds
            lock: Optional lock to share with other detectors
        """
        self.service = service
        self.enabled = enabled
        self.sync_interval_seconds = sync_interval_minutes * 60
        self._clock = clock
        self._lock = lock or threading.Lock()
        self._records: Dict[str, StateRecord] = {}

        logger.debug(
            f"StallDetector initialized (enabled={enabled}, interval={sync_interval_minutes}m)"
        )

    def track_and_resync(
        self,
        stack: StackConfig,
        members: List[ProjectConfig],
    ) -> List[StackTestError]:
        """Run one detection pass over a member snapshot.

        Returns:
            Sync failures; these never fail a run on their own.
        """
        if not self.enabled:
            return []

        errors: List[StackTestError] = []
        now = self._clock()

        for member in members:
            if self._is_settled(member):
                with self._lock:
                    self._records.pop(member.id, None)
                continue

            with self._lock:
                record = self._records.get(member.id)
                if record is None or (record.state, record.state_code) != (
                    member.state,
                    member.state_code,
                ):
                    self._records[member.id] = StateRecord(member.state, member.state_code, now)
                    continue
                if now - record.started_at <= self.sync_interval_seconds:
                    continue
                stalled_for = now - record.started_at
                record.started_at = now

            logger.warning(
                f"⏳ Member {member.name or member.id} has been {member.describe_state()} "
                f"for {stalled_for / 60:.1f} minutes, syncing"
            )
            try:
                self.service.sync_config(stack.project_id, member.id)
            except ProjectsAPIError as exc:
                logger.warning(f"Sync of member {member.id} failed: {exc}")
                errors.append(
                    ResyncError(f"failed to sync member {member.name or member.id}: {exc}")
                )

        return errors

    def started_at(self, member_id: str) -> Optional[float]:
        with self._lock:
            record = self._records.get(member_id)
            return record.started_at if record else None

    def tracked_members(self) -> List[str]:
        with self._lock:
            return list(self._records)

    @staticmethod
    def _is_settled(member: ProjectConfig) -> bool:
        """Members that must not be tracked: deployed, or waiting on a prerequisite."""
        if member.state == State.DEPLOYED:
            return True
        return (
            member.state == State.DRAFT
            and member.state_code == StateCode.AWAITING_PREREQUISITE
        )
