"""
Task handler framework — outcomes, effects and the handler registry.

A handler maps (vendor snapshot, task) to exactly one outcome:

  Success(effects)         — work done; effects are persisted by the dispatcher
  RetryableFailure(reason) — transient; retried with backoff
  PermanentFailure(reason) — unrecoverable; task FAILED immediately

Handlers do not write to the store. Everything they want persisted travels
back in Effects so the dispatcher can write it as one unit.
"""

import abc
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from vendorflow.schemas import ActivityType, Task, TaskType, Vendor, VendorEvent

logger = logging.getLogger(__name__)


@dataclass
class ActivitySpec:
    type: ActivityType
    description: str
    metadata: dict = field(default_factory=dict)


@dataclass
class FollowUpSpec:
    type: TaskType
    metadata: dict = field(default_factory=dict)
    scheduled_at: Optional[datetime] = None


@dataclass
class ChatTurnSpec:
    """One onboarding exchange: the vendor's message, our reply, new progress."""

    message: str
    reply: str
    onboarding: Optional[dict] = None


@dataclass
class Effects:
    event: Optional[VendorEvent] = None
    activities: list = field(default_factory=list)
    follow_ups: list = field(default_factory=list)
    chat_turn: Optional[ChatTurnSpec] = None
    review_reason: Optional[str] = None  # set → ping the operator after commit


@dataclass
class Success:
    effects: Effects = field(default_factory=Effects)


@dataclass
class RetryableFailure:
    reason: str


@dataclass
class PermanentFailure:
    reason: str


Outcome = Union[Success, RetryableFailure, PermanentFailure]


class TaskHandler(abc.ABC):
    """One handler per task type."""

    task_type: TaskType

    @abc.abstractmethod
    async def handle(self, vendor: Vendor, task: Task) -> Outcome:
        ...


class HandlerRegistry:
    def __init__(self, handlers=()):
        self._handlers: dict[str, TaskHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: TaskHandler) -> None:
        key = TaskType(handler.task_type).value
        if key in self._handlers:
            logger.warning("Replacing handler for %s", key)
        self._handlers[key] = handler

    def get(self, task_type) -> Optional[TaskHandler]:
        return self._handlers.get(str(getattr(task_type, "value", task_type)))

    def __contains__(self, task_type) -> bool:
        return self.get(task_type) is not None

    def __len__(self) -> int:
        return len(self._handlers)
