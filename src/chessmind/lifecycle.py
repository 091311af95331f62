"""
Turn request lifecycle: at most one in-flight agent request per color.

Each request runs as an asyncio task that streams text from the inference client and
puts typed events on a single queue: ThoughtChunk* followed by exactly one of
RequestCompleted / RequestFailed / RequestCancelled. Starting a request for a color
supersedes (cancels) the previous one. Cancellation is cooperative: the stream loop
checks the flag between chunks; with abort_on_cancel the task itself is cancelled too.
"""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional, Protocol

from .errors import AgentConfigMissing, ProviderError
from .events import LifecycleEvent, RequestCancelled, RequestCompleted, RequestFailed, ThoughtChunk
from .rules import Color

log = logging.getLogger("lifecycle")


class StreamingClient(Protocol):
    def stream_completion(self, provider_id: str, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        ...


@dataclass
class PendingRequest:
    color: Color
    generation: int
    request_id: int
    provider_id: str
    cancelled: bool = False
    done: bool = False
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class TurnRequestManager:
    def __init__(self, client: StreamingClient, abort_on_cancel: bool = False):
        self.client = client
        self.abort_on_cancel = abort_on_cancel
        self.events: "asyncio.Queue[LifecycleEvent]" = asyncio.Queue()
        self._active: Dict[Color, PendingRequest] = {}
        self._ids = itertools.count(1)

    # -- queries ---------------------------------------------------------
    def active(self, color: Color) -> Optional[PendingRequest]:
        req = self._active.get(color)
        if req is None or req.done or req.cancelled:
            return None
        return req

    def any_running(self) -> bool:
        return any(not req.done for req in self._active.values())

    def is_current(self, event: LifecycleEvent) -> bool:
        req = self._active.get(event.color)
        return req is not None and req.request_id == event.request_id and not req.cancelled

    # -- commands --------------------------------------------------------
    def start(self, color: Color, provider_id: str, system_prompt: str, user_prompt: str, generation: int) -> PendingRequest:
        prior = self._active.get(color)
        if prior is not None and not prior.done:
            log.debug("Superseding request %d for %s", prior.request_id, color)
            self._cancel(prior)
        req = PendingRequest(color=color, generation=generation, request_id=next(self._ids), provider_id=provider_id)
        req.task = asyncio.create_task(self._run(req, system_prompt, user_prompt), name=f"turn-{color}-{req.request_id}")
        # a task cancelled before its first step never reaches _run's finally
        req.task.add_done_callback(lambda _task: setattr(req, "done", True))
        self._active[color] = req
        log.info("Started request %d for %s via %s (generation %d)", req.request_id, color, provider_id, generation)
        return req

    def cancel(self, color: Color) -> bool:
        req = self._active.get(color)
        if req is None or req.done or req.cancelled:
            return False
        self._cancel(req)
        return True

    def cancel_all(self) -> None:
        for color in list(self._active):
            self.cancel(color)

    async def aclose(self) -> None:
        tasks = [req.task for req in self._active.values() if req.task and not req.task.done()]
        for req in self._active.values():
            req.cancelled = True
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _cancel(self, req: PendingRequest) -> None:
        req.cancelled = True
        if self.abort_on_cancel and req.task and not req.task.done():
            req.task.cancel()

    # -- worker ----------------------------------------------------------
    async def _emit(self, event: LifecycleEvent) -> None:
        await self.events.put(event)

    async def _run(self, req: PendingRequest, system_prompt: str, user_prompt: str) -> None:
        parts: list[str] = []
        ids = dict(color=req.color, generation=req.generation, request_id=req.request_id)
        try:
            stream = self.client.stream_completion(req.provider_id, system_prompt, user_prompt)
            async with contextlib.aclosing(stream):
                async for text in stream:
                    if req.cancelled:
                        break
                    parts.append(text)
                    await self._emit(ThoughtChunk(text=text, **ids))
            if req.cancelled:
                await self._emit(RequestCancelled(**ids))
            else:
                await self._emit(RequestCompleted(raw_text="".join(parts), **ids))
        except asyncio.CancelledError:
            self.events.put_nowait(RequestCancelled(**ids))
            raise
        except AgentConfigMissing as e:
            log.warning("Request %d for %s not sent: %s", req.request_id, req.color, e)
            await self._emit(RequestFailed(reason=str(e), error_type="AgentConfigMissing", **ids))
        except ProviderError as e:
            await self._emit(RequestFailed(reason=str(e), error_type=type(e).__name__, **ids))
        except Exception as e:
            log.exception("Request %d for %s crashed", req.request_id, req.color)
            await self._emit(RequestFailed(reason=str(e) or type(e).__name__, error_type=type(e).__name__, **ids))
        finally:
            req.done = True
