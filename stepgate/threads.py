"""Submission communication threads with optimistic reply appends.

Unlike the checklist, a reply thread updates its local state before the
store confirms the write and reconciles afterwards with a background refresh.
"""

from __future__ import annotations

import abc
import asyncio
import itertools
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .contracts import new_local_id
from .errors import ServerError, StepgateError

logger = logging.getLogger(__name__)


class Reply(BaseModel):
    id: int
    parent_message_id: int
    message: str
    sender_name: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    pending: bool = False


class Thread(BaseModel):
    """A top-level communication and its replies."""

    id: int
    submission_id: int
    message: str = ""
    visibility: str = "staff_only"
    communication_type: str = "staff_to_staff"
    resource_id: Optional[int] = None
    replies: List[Reply] = Field(default_factory=list)


class CommunicationStore(metaclass=abc.ABCMeta):
    """Collaborator holding submission communications."""

    @abc.abstractmethod
    async def get_thread(self, submission_id: int, thread_id: int) -> Thread:
        raise NotImplementedError

    @abc.abstractmethod
    async def create_reply(self, submission_id: int, thread: Thread, message: str, sender_name: Optional[str] = None) -> Reply:
        raise NotImplementedError


class InMemoryCommunicationStore(CommunicationStore):
    def __init__(self) -> None:
        self._threads: Dict[Tuple[int, int], Thread] = {}
        self._ids = itertools.count(1)

    def add_thread(self, submission_id: int, message: str, **fields) -> Thread:
        thread = Thread(id=next(self._ids), submission_id=submission_id, message=message, **fields)
        self._threads[(submission_id, thread.id)] = thread
        return thread.model_copy(deep=True)

    async def get_thread(self, submission_id: int, thread_id: int) -> Thread:
        thread = self._threads.get((submission_id, thread_id))
        if thread is None:
            raise ServerError(404, f"Thread {thread_id} not found")
        return thread.model_copy(deep=True)

    async def create_reply(self, submission_id: int, thread: Thread, message: str, sender_name: Optional[str] = None) -> Reply:
        stored = self._threads.get((submission_id, thread.id))
        if stored is None:
            raise ServerError(404, f"Thread {thread.id} not found")
        reply = Reply(
            id=next(self._ids),
            parent_message_id=thread.id,
            message=message,
            sender_name=sender_name,
        )
        stored.replies.append(reply)
        return reply.model_copy()


class ReplyThread:
    """Local view of one thread that appends replies optimistically."""

    def __init__(self, store: CommunicationStore, thread: Thread) -> None:
        self._store = store
        self._thread = thread
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def thread(self) -> Thread:
        return self._thread

    @property
    def replies(self) -> List[Reply]:
        return list(self._thread.replies)

    async def append_reply(self, message: str, sender_name: Optional[str] = None) -> Reply:
        """Show ``message`` immediately, send it, then refresh in the background.

        The provisional reply is removed again when the store rejects it and
        the error is re-raised.
        """
        if not message.strip():
            raise ValueError("Reply message cannot be empty")

        provisional = Reply(
            id=new_local_id(),
            parent_message_id=self._thread.id,
            message=message,
            sender_name=sender_name,
            pending=True,
        )
        self._thread = self._thread.model_copy(
            update={"replies": [*self._thread.replies, provisional]}
        )
        try:
            reply = await self._store.create_reply(
                self._thread.submission_id, self._thread, message, sender_name
            )
        except Exception:
            self._thread = self._thread.model_copy(
                update={"replies": [r for r in self._thread.replies if r.id != provisional.id]}
            )
            logger.warning(f"Reply to thread {self._thread.id} was not sent; rolled back")
            raise

        self._thread = self._thread.model_copy(
            update={
                "replies": [reply if r.id == provisional.id else r for r in self._thread.replies]
            }
        )
        if self._refresh_task is not None and not self._refresh_task.done():
            # only the latest refresh may replace local state
            self._refresh_task.cancel()
        self._refresh_task = asyncio.create_task(self.refresh())
        return reply

    async def refresh(self) -> Thread:
        """Replace local state with the store's copy of the thread."""
        try:
            self._thread = await self._store.get_thread(self._thread.submission_id, self._thread.id)
        except StepgateError as exc:
            logger.warning(f"Refreshing thread {self._thread.id} failed: {exc}")
        return self._thread

    async def wait_refreshed(self) -> None:
        if self._refresh_task is not None:
            await self._refresh_task
