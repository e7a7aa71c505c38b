# solana_sniper_bundle/sniper/racing.py
"""
N-way race with a shared timeout.

Two flavours of the same primitive:

* ``race_all_settled`` waits for every contender (up to the deadline) and
  reports each outcome; used by discovery, where every source is merged.
* ``race_first_success`` returns the first contender that does not raise and
  cancels the rest; used by quote probing, where one good answer is enough.

On deadline, contenders still running are cancelled. Nothing is ever left
running after either helper returns.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Union

logger = logging.getLogger("TradingBot")

Contender = Union[Awaitable[Any], Callable[[], Awaitable[Any]]]


@dataclass
class Settled:
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


class RaceFailed(Exception):
    """Every contender failed or the deadline passed without a winner."""

    def __init__(self, errors: Sequence[BaseException], timed_out: bool = False):
        self.errors = list(errors)
        self.timed_out = timed_out
        detail = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors) or "no contenders"
        super().__init__(("timed out: " if timed_out else "all failed: ") + detail)


def _as_task(c: Contender) -> asyncio.Task:
    aw = c() if callable(c) and not asyncio.iscoroutine(c) else c
    return asyncio.ensure_future(aw)


async def _cancel_all(tasks: Iterable[asyncio.Future]) -> None:
    tasks = list(tasks)
    pending = [t for t in tasks if not t.done()]
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    # mark losers' exceptions as retrieved
    for t in tasks:
        if t.done() and not t.cancelled():
            t.exception()


async def race_all_settled(contenders: Iterable[Contender], timeout: float) -> List[Settled]:
    """Settle-all under one deadline. Order of results matches the input."""
    tasks = [_as_task(c) for c in contenders]
    if not tasks:
        return []
    try:
        await asyncio.wait(tasks, timeout=timeout)
    finally:
        await _cancel_all(tasks)

    out: List[Settled] = []
    for t in tasks:
        if t.cancelled():
            out.append(Settled(ok=False, error=asyncio.TimeoutError("contender cancelled at deadline")))
            continue
        exc = t.exception()
        if exc is not None:
            out.append(Settled(ok=False, error=exc))
        else:
            out.append(Settled(ok=True, value=t.result()))
    return out


async def race_first_success(contenders: Iterable[Contender], timeout: float) -> Any:
    """First non-raising contender wins; losers are cancelled."""
    tasks = [_as_task(c) for c in contenders]
    if not tasks:
        raise RaceFailed([])

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    errors: List[BaseException] = []
    pending = set(tasks)
    try:
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RaceFailed(errors, timed_out=True)
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            if not done:
                raise RaceFailed(errors, timed_out=True)
            for t in done:
                if t.cancelled():
                    errors.append(asyncio.CancelledError())
                    continue
                exc = t.exception()
                if exc is None:
                    return t.result()
                errors.append(exc)
        raise RaceFailed(errors)
    finally:
        await _cancel_all(tasks)
