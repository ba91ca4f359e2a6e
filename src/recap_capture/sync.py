"""Phase-lock a group of independently buffered videos into one synchronized animation.

The correction algorithm is the pure :func:`tick` transition over :class:`GroupState`.
:class:`PhaseSynchronizer` is the driver: it reacts to readiness and visibility events,
runs the start / pause / resume sequences against live members, and owns the periodic
loop that applies :func:`tick`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Dict, FrozenSet, Hashable, List, Mapping, Optional, Protocol, Sequence, Tuple

from src.datatypes import SyncConfig

__all__ = [
    "Correction",
    "GroupState",
    "MemberSample",
    "PhaseSynchronizer",
    "SyncPhase",
    "SyncPolicy",
    "TickResult",
    "VideoMember",
    "mark_ready",
    "plan_alignment",
    "should_start",
    "tick",
    "with_visibility",
]

logger = logging.getLogger(__name__)

MemberKey = Hashable

# Observers report crossing ratios slightly under the configured threshold.
VISIBILITY_EPSILON = 1e-3


class SyncPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass(frozen=True, slots=True)
class SyncPolicy:
    period_seconds: float = 0.25
    drift_tolerance_seconds: float = 0.12
    start_tolerance_seconds: float = 0.02
    visibility_threshold: float = 0.2
    master_min_ready_state: int = 2

    def __post_init__(self) -> None:
        if self.period_seconds <= 0:
            raise ValueError("period_seconds must be > 0")
        if self.drift_tolerance_seconds <= self.start_tolerance_seconds:
            raise ValueError("drift_tolerance_seconds must be greater than start_tolerance_seconds")

    @classmethod
    def from_config(cls, config: SyncConfig) -> "SyncPolicy":
        return cls(
            period_seconds=config.period_seconds,
            drift_tolerance_seconds=config.drift_tolerance_seconds,
            start_tolerance_seconds=config.start_tolerance_seconds,
            visibility_threshold=config.visibility_threshold,
            master_min_ready_state=config.master_min_ready_state,
        )


@dataclass(frozen=True, slots=True)
class GroupState:
    """Snapshot of one mounted group; ``members[0]`` is the master."""

    members: Tuple[MemberKey, ...]
    phase: SyncPhase = SyncPhase.IDLE
    visible: bool = False
    ready: FrozenSet[MemberKey] = frozenset()
    started: bool = False
    mounted: bool = True
    ticks: int = 0

    @property
    def master(self) -> Optional[MemberKey]:
        return self.members[0] if self.members else None

    @property
    def all_ready(self) -> bool:
        return bool(self.members) and all(key in self.ready for key in self.members)


@dataclass(frozen=True, slots=True)
class MemberSample:
    key: MemberKey
    current_time: float
    ready_state: int


@dataclass(frozen=True, slots=True)
class Correction:
    key: MemberKey
    target_time: float


@dataclass(frozen=True, slots=True)
class TickResult:
    state: GroupState
    corrections: Tuple[Correction, ...] = ()


def mark_ready(state: GroupState, key: MemberKey) -> GroupState:
    """Record a first-frame signal; readiness is never withdrawn for the life of a mount."""

    if key not in state.members or key in state.ready:
        return state
    return replace(state, ready=state.ready | {key})


def with_visibility(state: GroupState, ratio: float, policy: SyncPolicy) -> GroupState:
    """Apply an observed intersection ratio; a ratio of 0 means the group is not intersecting."""

    visible = ratio > 0 and ratio + VISIBILITY_EPSILON >= policy.visibility_threshold
    if visible == state.visible:
        return state
    return replace(state, visible=visible)


def should_start(state: GroupState) -> bool:
    return (
        state.mounted
        and not state.started
        and state.phase is SyncPhase.IDLE
        and state.visible
        and state.all_ready
    )


def plan_alignment(samples: Sequence[MemberSample], tolerance: float) -> Tuple[Correction, ...]:
    """Corrections moving every non-master sample within ``tolerance`` of ``samples[0]``."""

    if len(samples) < 2:
        return ()
    master_time = samples[0].current_time
    return tuple(
        Correction(key=sample.key, target_time=master_time)
        for sample in samples[1:]
        if abs(sample.current_time - master_time) > tolerance
    )


def tick(state: GroupState, samples: Sequence[MemberSample], policy: SyncPolicy) -> TickResult:
    """
    One steady-state correction step.

    ``samples`` are ordered like ``state.members``. The tick is skipped when the group
    is not running, not visible, has fewer than two members, or the master has not
    buffered enough to be a reliable reference.
    """

    if not state.mounted or state.phase is not SyncPhase.RUNNING or not state.visible:
        return TickResult(state)
    if len(samples) < 2:
        return TickResult(state)
    if samples[0].ready_state < policy.master_min_ready_state:
        return TickResult(state)
    corrections = plan_alignment(samples, policy.drift_tolerance_seconds)
    return TickResult(replace(state, ticks=state.ticks + 1), corrections)


class VideoMember(Protocol):
    async def current_time(self) -> float: ...

    async def set_current_time(self, seconds: float) -> None: ...

    async def ready_state(self) -> int: ...

    async def pause(self) -> None: ...

    async def play(self) -> None: ...

    async def seek(self, seconds: float) -> None:
        """Set the playback position and return once the ``seeked`` event fired."""
        ...


async def _next_frame() -> None:
    await asyncio.sleep(0)


class PhaseSynchronizer:
    """
    Drive one mounted group of :class:`VideoMember` objects.

    Members are registered in iteration order of ``members``; the first one is the
    master and is never corrected. Event methods are ignored after :meth:`unmount`.
    """

    def __init__(
        self,
        members: Mapping[MemberKey, VideoMember],
        policy: Optional[SyncPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        frame_wait: Callable[[], Awaitable[None]] = _next_frame,
    ) -> None:
        self._members: Dict[MemberKey, VideoMember] = dict(members)
        self.policy = policy or SyncPolicy()
        self._sleep = sleep
        self._frame_wait = frame_wait
        self.state = GroupState(members=tuple(self._members))
        self._loop_task: Optional[asyncio.Task[None]] = None

    @property
    def loop_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def notify_ready(self, key: MemberKey) -> None:
        if not self.state.mounted:
            return
        self.state = mark_ready(self.state, key)
        if should_start(self.state):
            await self._start()

    async def update_visibility(self, ratio: float) -> None:
        if not self.state.mounted:
            return
        was_visible = self.state.visible
        self.state = with_visibility(self.state, ratio, self.policy)
        if self.state.visible == was_visible:
            return
        phase = self.state.phase
        if self.state.visible:
            if should_start(self.state):
                await self._start()
            elif phase is SyncPhase.PAUSED:
                await self._resume()
        elif phase is SyncPhase.RUNNING:
            await self._pause()

    async def unmount(self) -> None:
        if not self.state.mounted:
            return
        self.state = replace(self.state, mounted=False, phase=SyncPhase.IDLE)
        await self.stop_loop()
        await self._each("pause", lambda member: member.pause())
        logger.debug("Sync group of %d member(s) unmounted", len(self._members))

    async def stop_loop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            task.cancel()
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def tick_once(self) -> TickResult:
        samples = await self._sample()
        result = tick(self.state, samples, self.policy)
        self.state = result.state
        await self._apply(result.corrections)
        return result

    async def max_drift(self) -> float:
        """Largest absolute distance between any member and the master, in seconds."""

        samples = await self._sample()
        if len(samples) < 2:
            return 0.0
        master_time = samples[0].current_time
        return max(abs(sample.current_time - master_time) for sample in samples[1:])

    async def _start(self) -> None:
        self.state = replace(self.state, phase=SyncPhase.STARTING, started=True)
        logger.info("Starting sync group of %d member(s)", len(self._members))
        await self._each("pause", lambda member: member.pause())
        await self._each("seek", lambda member: member.seek(0.0))
        await self._frame_wait()
        await self._each("play", lambda member: member.play())
        await self._snap(self.policy.start_tolerance_seconds)
        if not self.state.mounted:
            return
        if not self.state.visible:
            await self._each("pause", lambda member: member.pause())
            self.state = replace(self.state, phase=SyncPhase.PAUSED)
            return
        self.state = replace(self.state, phase=SyncPhase.RUNNING)
        self._start_loop()

    async def _pause(self) -> None:
        await self.stop_loop()
        await self._snap(0.0)
        await self._each("pause", lambda member: member.pause())
        self.state = replace(self.state, phase=SyncPhase.PAUSED)
        logger.debug("Sync group paused")

    async def _resume(self) -> None:
        await self._snap(0.0)
        await self._each("play", lambda member: member.play())
        await self._snap(self.policy.start_tolerance_seconds)
        self.state = replace(self.state, phase=SyncPhase.RUNNING)
        self._start_loop()
        logger.debug("Sync group resumed")

    def _start_loop(self) -> None:
        if len(self._members) < 2 or self.loop_running:
            return
        self._loop_task = asyncio.create_task(self._run_loop())

    async def _run_loop(self) -> None:
        while self.state.mounted and self.state.phase is SyncPhase.RUNNING:
            await self._sleep(self.policy.period_seconds)
            try:
                await self.tick_once()
            except Exception as exc:
                logger.warning("Sync tick failed, retrying next period: %s", exc)

    async def _sample(self) -> List[MemberSample]:
        samples: List[MemberSample] = []
        for key, member in self._members.items():
            samples.append(
                MemberSample(key=key, current_time=await member.current_time(), ready_state=await member.ready_state())
            )
        return samples

    async def _snap(self, tolerance: float) -> None:
        samples = await self._sample()
        await self._apply(plan_alignment(samples, tolerance))

    async def _apply(self, corrections: Sequence[Correction]) -> None:
        for correction in corrections:
            member = self._members.get(correction.key)
            if member is None:
                continue
            try:
                await member.set_current_time(correction.target_time)
            except Exception as exc:
                logger.warning("Could not correct member %s: %s", correction.key, exc)

    async def _each(self, label: str, action: Callable[[VideoMember], Awaitable[None]]) -> None:
        keys = list(self._members)
        results = await asyncio.gather(
            *(action(self._members[key]) for key in keys),
            return_exceptions=True,
        )
        for key, result in zip(keys, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.warning("Sync %s failed for member %s: %s", label, key, result)
