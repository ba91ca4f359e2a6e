from __future__ import annotations

import asyncio
from itertools import combinations
from typing import Dict

import pytest

from src.datatypes import SyncConfig
from src.recap_capture.errors import DomOperationError
from src.recap_capture.sync import (
    Correction,
    GroupState,
    MemberSample,
    PhaseSynchronizer,
    SyncPhase,
    SyncPolicy,
    mark_ready,
    plan_alignment,
    should_start,
    tick,
    with_visibility,
)
from tests.helpers.fake_dom import FakeMember

POLICY = SyncPolicy()


async def _parked_sleep(_: float) -> None:
    await asyncio.Event().wait()


def _pairwise_drift(members: Dict[int, FakeMember]) -> float:
    times = [member.time for member in members.values()]
    return max(abs(a - b) for a, b in combinations(times, 2))


def _group(count: int, **kwargs: object) -> tuple[PhaseSynchronizer, Dict[int, FakeMember]]:
    members = {key: FakeMember() for key in range(count)}
    kwargs.setdefault("sleep", _parked_sleep)
    return PhaseSynchronizer(members, POLICY, **kwargs), members  # type: ignore[arg-type]


async def _bring_up(sync: PhaseSynchronizer, members: Dict[int, FakeMember]) -> None:
    await sync.update_visibility(1.0)
    for key in members:
        await sync.notify_ready(key)


def test_four_members_align_within_tolerance_after_one_tick() -> None:
    async def scenario() -> tuple[PhaseSynchronizer, Dict[int, FakeMember], float]:
        sync, members = _group(4)
        await _bring_up(sync, members)
        assert sync.state.phase is SyncPhase.RUNNING
        assert sync.loop_running
        for member, elapsed in zip(members.values(), (0.25, 0.10, 0.42, 0.31)):
            member.advance(elapsed)
        await sync.tick_once()
        drift = _pairwise_drift(members)
        assert all(member.playing for member in members.values())
        await sync.unmount()
        return sync, members, drift

    sync, members, drift = asyncio.run(scenario())

    assert drift <= 0.12
    assert all(member.seeks == [0.0] for member in members.values())
    assert members[0].corrections == []
    assert sync.loop_running is False


def test_start_snaps_members_that_land_off_master() -> None:
    class SloppySeek(FakeMember):
        async def seek(self, seconds: float) -> None:
            self.seeks.append(seconds)
            self.time = seconds + 0.05

    async def scenario() -> Dict[int, FakeMember]:
        members: Dict[int, FakeMember] = {0: FakeMember(3.0), 1: SloppySeek(7.0), 2: FakeMember(1.0)}
        sync = PhaseSynchronizer(members, POLICY, sleep=_parked_sleep)
        await _bring_up(sync, members)
        await sync.unmount()
        return members

    members = asyncio.run(scenario())

    assert members[1].corrections == [0.0]
    assert _pairwise_drift(members) <= POLICY.start_tolerance_seconds


def test_visibility_loss_pauses_and_resume_realigns() -> None:
    async def scenario() -> tuple[list[bool], bool, float, list[bool], SyncPhase]:
        sync, members = _group(4)
        await _bring_up(sync, members)
        for member, elapsed in zip(members.values(), (1.0, 1.05, 0.98, 1.1)):
            member.advance(elapsed)

        await sync.update_visibility(0.05)
        paused = [member.playing for member in members.values()]
        loop_after_pause = sync.loop_running
        phase_after_pause = sync.state.phase
        assert phase_after_pause is SyncPhase.PAUSED

        members[2].time += 0.3
        await sync.update_visibility(0.9)
        drift = _pairwise_drift(members)
        playing = [member.playing for member in members.values()]
        phase = sync.state.phase
        loop_resumed = sync.loop_running
        await sync.unmount()
        assert loop_resumed
        return paused, loop_after_pause, drift, playing, phase

    paused, loop_after_pause, drift, playing, phase = asyncio.run(scenario())

    assert paused == [False] * 4
    assert loop_after_pause is False
    assert drift <= 0.02
    assert playing == [True] * 4
    assert phase is SyncPhase.RUNNING


def test_start_requires_visibility_and_every_member_ready() -> None:
    async def scenario() -> list[SyncPhase]:
        sync, members = _group(3)
        phases = []
        await sync.notify_ready(0)
        await sync.notify_ready(1)
        await sync.notify_ready(2)
        phases.append(sync.state.phase)
        await sync.update_visibility(0.1)
        phases.append(sync.state.phase)
        await sync.update_visibility(0.2)
        phases.append(sync.state.phase)
        await sync.unmount()
        return phases

    assert asyncio.run(scenario()) == [SyncPhase.IDLE, SyncPhase.IDLE, SyncPhase.RUNNING]


def test_start_happens_once_per_mount() -> None:
    async def scenario() -> Dict[int, FakeMember]:
        sync, members = _group(2)
        await _bring_up(sync, members)
        await sync.update_visibility(0.0)
        await sync.update_visibility(1.0)
        await sync.notify_ready(0)
        await sync.unmount()
        return members

    members = asyncio.run(scenario())

    assert all(member.seeks == [0.0] for member in members.values())


def test_single_member_never_starts_a_loop() -> None:
    async def scenario() -> tuple[bool, bool, SyncPhase]:
        sync, members = _group(1)
        await _bring_up(sync, members)
        result = (sync.loop_running, members[0].playing, sync.state.phase)
        await sync.unmount()
        return result

    loop_running, playing, phase = asyncio.run(scenario())

    assert loop_running is False
    assert playing is True
    assert phase is SyncPhase.RUNNING


def test_stop_loop_is_idempotent() -> None:
    async def scenario() -> bool:
        sync, members = _group(2)
        await sync.stop_loop()
        await _bring_up(sync, members)
        await sync.stop_loop()
        await sync.stop_loop()
        await sync.unmount()
        await sync.unmount()
        return sync.loop_running

    assert asyncio.run(scenario()) is False


def test_events_after_unmount_are_ignored() -> None:
    async def scenario() -> tuple[Dict[int, FakeMember], SyncPhase]:
        sync, members = _group(2)
        await sync.unmount()
        await _bring_up(sync, members)
        return members, sync.state.phase

    members, phase = asyncio.run(scenario())

    assert phase is SyncPhase.IDLE
    assert all(member.seeks == [] for member in members.values())


def test_visibility_lost_during_start_ends_paused() -> None:
    holder: Dict[str, PhaseSynchronizer] = {}

    async def hide_mid_start() -> None:
        await holder["sync"].update_visibility(0.0)

    async def scenario() -> tuple[SyncPhase, bool, list[bool]]:
        sync, members = _group(2, frame_wait=hide_mid_start)
        holder["sync"] = sync
        await _bring_up(sync, members)
        result = (sync.state.phase, sync.loop_running, [member.playing for member in members.values()])
        await sync.unmount()
        return result

    phase, loop_running, playing = asyncio.run(scenario())

    assert phase is SyncPhase.PAUSED
    assert loop_running is False
    assert playing == [False, False]


def test_play_failure_is_logged_and_start_completes() -> None:
    async def scenario() -> SyncPhase:
        sync, members = _group(2)
        members[1].play_error = RuntimeError("NotAllowedError: autoplay blocked")
        await _bring_up(sync, members)
        phase = sync.state.phase
        await sync.unmount()
        return phase

    assert asyncio.run(scenario()) is SyncPhase.RUNNING


def test_periodic_loop_applies_ticks() -> None:
    sleeps: list[float] = []

    async def quick_sleep(duration: float) -> None:
        sleeps.append(duration)
        await asyncio.sleep(0)

    async def scenario() -> tuple[int, Dict[int, FakeMember]]:
        sync, members = _group(2, sleep=quick_sleep)
        await _bring_up(sync, members)
        members[1].time = 5.0
        for _ in range(5):
            await asyncio.sleep(0)
        ticks = sync.state.ticks
        await sync.unmount()
        return ticks, members

    ticks, members = asyncio.run(scenario())

    assert ticks >= 1
    assert set(sleeps) == {0.25}
    assert members[1].time == members[0].time


def test_mark_ready_is_monotonic_and_ignores_strangers() -> None:
    state = GroupState(members=(1, 2))

    once = mark_ready(state, 1)
    twice = mark_ready(once, 1)
    stranger = mark_ready(twice, 9)

    assert once.ready == frozenset({1})
    assert twice is once
    assert stranger is once


def test_should_start_gates() -> None:
    ready = GroupState(members=(1, 2), ready=frozenset({1, 2}))

    assert not should_start(ready)
    visible = with_visibility(ready, 0.5, POLICY)
    assert should_start(visible)
    assert not should_start(GroupState(members=(), visible=True))


@pytest.mark.parametrize(
    ("state", "samples"),
    [
        (GroupState(members=(1, 2), phase=SyncPhase.PAUSED, visible=True), None),
        (GroupState(members=(1, 2), phase=SyncPhase.RUNNING, visible=False), None),
        (GroupState(members=(1,), phase=SyncPhase.RUNNING, visible=True), [MemberSample(1, 2.0, 4)]),
        (
            GroupState(members=(1, 2), phase=SyncPhase.RUNNING, visible=True),
            [MemberSample(1, 2.0, 1), MemberSample(2, 9.0, 4)],
        ),
    ],
)
def test_tick_skips(state: GroupState, samples: list[MemberSample] | None) -> None:
    samples = samples or [MemberSample(1, 2.0, 4), MemberSample(2, 9.0, 4)]

    result = tick(state, samples, POLICY)

    assert result.corrections == ()
    assert result.state is state


def test_tick_corrects_only_members_beyond_tolerance() -> None:
    state = GroupState(members=("a", "b", "c"), phase=SyncPhase.RUNNING, visible=True)
    samples = [MemberSample("a", 10.0, 4), MemberSample("b", 10.1, 4), MemberSample("c", 9.7, 2)]

    result = tick(state, samples, POLICY)

    assert result.corrections == (Correction("c", 10.0),)
    assert result.state.ticks == 1


def test_plan_alignment_never_moves_master() -> None:
    samples = [MemberSample(0, 1.0, 4), MemberSample(1, 1.5, 4)]

    assert plan_alignment(samples, 0.0) == (Correction(1, 1.0),)
    assert plan_alignment(samples[:1], 0.0) == ()


def test_policy_from_config_and_validation() -> None:
    policy = SyncPolicy.from_config(SyncConfig(period_seconds=0.5, drift_tolerance_seconds=0.2))

    assert policy.period_seconds == 0.5
    assert policy.drift_tolerance_seconds == 0.2
    with pytest.raises(ValueError):
        SyncPolicy(drift_tolerance_seconds=0.02, start_tolerance_seconds=0.02)
    with pytest.raises(ValueError):
        SyncPolicy(period_seconds=0)


def test_unmount_pauses_every_member() -> None:
    async def scenario() -> tuple[list[bool], list[bool], bool]:
        sync, members = _group(3)
        await _bring_up(sync, members)
        playing = [member.playing for member in members.values()]
        await sync.unmount()
        return playing, [member.playing for member in members.values()], sync.loop_running

    before, after, loop_running = asyncio.run(scenario())

    assert before == [True] * 3
    assert after == [False] * 3
    assert loop_running is False


def test_failed_tick_keeps_the_loop_alive() -> None:
    class FlakyMember(FakeMember):
        def __init__(self) -> None:
            super().__init__()
            self.failures_left = 0

        async def current_time(self) -> float:
            if self.failures_left:
                self.failures_left -= 1
                raise DomOperationError("video detached mid-read")
            return self.time

    async def quick_sleep(_: float) -> None:
        await asyncio.sleep(0)

    async def scenario() -> tuple[bool, Dict[int, FakeMember], int]:
        flaky = FlakyMember()
        members: Dict[int, FakeMember] = {0: FakeMember(), 1: flaky}
        sync = PhaseSynchronizer(members, POLICY, sleep=quick_sleep)
        await _bring_up(sync, members)
        flaky.failures_left = 1
        flaky.time = 5.0
        for _ in range(8):
            await asyncio.sleep(0)
        alive = sync.loop_running
        ticks = sync.state.ticks
        await sync.unmount()
        return alive, members, ticks

    alive, members, ticks = asyncio.run(scenario())

    assert alive is True
    assert ticks >= 1
    assert members[1].time == members[0].time


@pytest.mark.parametrize(
    ("ratio", "visible"),
    [(0.0, False), (0.15, False), (0.1995, True), (0.2, True), (1.0, True)],
)
def test_visibility_threshold_tolerates_crossing_ratio(ratio: float, visible: bool) -> None:
    state = with_visibility(GroupState(members=(1, 2)), ratio, POLICY)

    assert state.visible is visible
