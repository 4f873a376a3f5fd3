"""Tests for the export_composition invocation surface."""

import asyncio

import pytest

from tests.conftest import FakeRenderer, FakeSink
from timeline_export import export_composition, export_composition_fallback
from timeline_export.exceptions import ExportBusyError, InvalidInputError


EDITOR_CLIPS = [
    {"id": "v1", "kind": "video", "startTime": 0, "duration": 0.2, "rawSource": b"VID", "hasLinkedAudio": True, "linkedAudioId": "a1"},
    {"id": "a1", "kind": "audio", "startTime": 0, "duration": 0.2, "rawSource": b"AUD", "sourceVideoId": "v1"},
    {"id": "s1", "kind": "image", "subtype": "sticker", "startTime": 0.1, "duration": 0.2},
]


class TestExportComposition:
    """Validation, busy detection and strategy selection."""

    @pytest.mark.asyncio
    async def test_editor_snapshot(self, settings, engine, renderer, sink):
        result = await export_composition(
            EDITOR_CLIPS, 30, 64, 36, 10, renderer,
            capture_sink=sink, settings=settings, engine=engine,
        )

        assert result.duration_used == pytest.approx(0.3)
        assert result.frame_count == 3
        assert result.has_audio is True
        assert result.strategy == "full_fidelity"
        # a1 carries v1's sound; the video container is never demuxed
        assert len(engine.commands_of("prepare")) == 1

    @pytest.mark.asyncio
    async def test_progress_callback(self, settings, engine, renderer, sink):
        reports: list[tuple[int, str]] = []
        await export_composition(
            EDITOR_CLIPS, 30, 64, 36, 10, renderer, lambda p, m: reports.append((p, m)),
            capture_sink=sink, settings=settings, engine=engine,
        )
        assert reports[-1] == (100, "Export complete")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"clips": []}, "clips"),
            ({"nominal_duration": 0}, "nominal_duration"),
            ({"width": 0}, "width"),
            ({"frame_rate": -1}, "frame_rate"),
        ],
    )
    async def test_invalid_input(self, settings, engine, renderer, sink, overrides, field):
        kwargs = dict(clips=EDITOR_CLIPS, nominal_duration=30, width=64, height=36, frame_rate=10)
        kwargs.update(overrides)
        with pytest.raises(InvalidInputError) as exc_info:
            await export_composition(
                renderer=renderer, capture_sink=sink, settings=settings, engine=engine, **kwargs
            )
        assert exc_info.value.field == field
        assert exc_info.value.code == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_invalid_input_reports_outcome(self, settings, engine, renderer, sink):
        reports: list[tuple[int, str]] = []
        with pytest.raises(InvalidInputError):
            await export_composition(
                EDITOR_CLIPS, 30, 64, 36, 0, renderer, lambda p, m: reports.append((p, m)),
                capture_sink=sink, settings=settings, engine=engine,
            )
        assert reports == [(0, "Export failed: invalid export parameters")]
        assert sink.opened == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("renderer", [None, object()])
    async def test_renderer_without_capabilities_rejected(self, settings, engine, sink, renderer):
        reports: list[tuple[int, str]] = []
        with pytest.raises(InvalidInputError) as exc_info:
            await export_composition_fallback(
                EDITOR_CLIPS, 30, 64, 36, 10, renderer, lambda p, m: reports.append((p, m)),
                capture_sink=sink, settings=settings, engine=engine,
            )
        assert exc_info.value.field == "renderer"
        assert reports[-1][1] == "Export failed: invalid export parameters"

    @pytest.mark.asyncio
    async def test_negative_clip_start(self, settings, engine, renderer, sink):
        clips = [{"id": "v1", "kind": "video", "startTime": -1, "duration": 2}]
        with pytest.raises(InvalidInputError):
            await export_composition(clips, 30, 64, 36, 10, renderer, capture_sink=sink, settings=settings, engine=engine)

    @pytest.mark.asyncio
    async def test_same_renderer_is_busy(self, settings, engine, sink):
        settings.renderer_timeout_min_s = 5.0
        gate = asyncio.Event()

        class GatedRenderer(FakeRenderer):
            async def seek(self, timestamp):
                self.seeks.append(timestamp)
                await gate.wait()

        renderer = GatedRenderer()
        first = asyncio.create_task(
            export_composition(EDITOR_CLIPS, 30, 64, 36, 10, renderer, capture_sink=sink, settings=settings, engine=engine)
        )
        while not renderer.seeks:
            await asyncio.sleep(0)

        reports: list[tuple[int, str]] = []
        with pytest.raises(ExportBusyError):
            await export_composition(
                EDITOR_CLIPS, 30, 64, 36, 10, renderer, lambda p, m: reports.append((p, m)),
                capture_sink=FakeSink(), settings=settings, engine=engine,
            )
        assert reports == [(0, "Export failed: another export is already running")]

        gate.set()
        await first

        # Released once the first export finished
        result = await export_composition(
            EDITOR_CLIPS, 30, 64, 36, 10, renderer, capture_sink=FakeSink(), settings=settings, engine=engine
        )
        assert result.frame_count == 3

    @pytest.mark.asyncio
    async def test_fallback_uses_degraded_only(self, settings, engine, renderer, sink):
        result = await export_composition_fallback(
            EDITOR_CLIPS, 30, 64, 36, 10, renderer, capture_sink=sink, settings=settings, engine=engine
        )

        assert result.strategy == "degraded"
        assert [o[3] for o in sink.opened] == [False]
        assert result.degraded is True
