from __future__ import annotations

import asyncio

from src.datatypes import VideoConfig
from src.recap_capture.scope import DisposerList
from src.recap_capture.video_freeze import FRAME, PLACEHOLDER, VideoFrameFreezer
from tests.helpers.fake_dom import ROOT, FakePage


def _freeze(page: FakePage, *, restore: bool) -> list:
    async def scenario() -> list:
        disposers = DisposerList("resource")
        replacements = await VideoFrameFreezer(VideoConfig(placeholder_color="#1a1a1a")).freeze(page, ROOT, disposers)
        if restore:
            await disposers.dispose()
        return replacements

    return asyncio.run(scenario())


def test_decodable_video_is_replaced_by_its_current_frame() -> None:
    page = FakePage()
    video = page.add_video(ready_state=4, display="block")

    replacements = _freeze(page, restore=False)

    assert [item.kind for item in replacements] == [FRAME]
    assert video.display == "none"
    assert [(node.kind, node.value) for node in page.standins] == [("frame", video.frame_url)]


def test_not_ready_video_gets_placeholder_without_readout() -> None:
    page = FakePage()
    page.add_video(ready_state=1)

    replacements = _freeze(page, restore=False)

    assert [item.kind for item in replacements] == [PLACEHOLDER]
    assert [(node.kind, node.value) for node in page.standins] == [("placeholder", "#1a1a1a")]


def test_tainted_canvas_falls_back_to_placeholder() -> None:
    page = FakePage()
    page.add_video(ready_state=4, tainted=True)

    replacements = _freeze(page, restore=False)

    assert [item.kind for item in replacements] == [PLACEHOLDER]


def test_empty_frame_counts_as_placeholder() -> None:
    page = FakePage()
    page.add_video(ready_state=2, frame_url=None)

    replacements = _freeze(page, restore=False)

    assert [item.kind for item in replacements] == [PLACEHOLDER]


def test_restore_unhides_videos_and_removes_standins() -> None:
    page = FakePage()
    first = page.add_video(ready_state=4, display="inline-block")
    second = page.add_video(ready_state=0)

    _freeze(page, restore=True)

    assert first.display == "inline-block"
    assert second.display == ""
    assert page.standins == []


def test_failure_on_one_video_leaves_it_untouched_and_continues() -> None:
    page = FakePage()
    broken = page.add_video(ready_state=4)
    broken.fail_hide = True
    healthy = page.add_video(ready_state=4)

    replacements = _freeze(page, restore=False)

    assert len(replacements) == 1
    assert replacements[0].video is healthy
    assert broken.display == ""
    assert len(page.standins) == 1
