"""Tests for video -> audio source resolution."""

import logging

from timeline_export.render.audio_sources import AudioSourceResolver
from timeline_export.schemas.clip import Clip, ClipKind


def video(clip_id: str, start: float = 0, duration: float = 3, **kwargs) -> Clip:
    return Clip(id=clip_id, kind=ClipKind.VIDEO, start_time=start, duration=duration, raw_source=b"VID", **kwargs)


def audio(clip_id: str, start: float = 0, duration: float = 3, **kwargs) -> Clip:
    return Clip(id=clip_id, kind=ClipKind.AUDIO, start_time=start, duration=duration, raw_source=b"AUD", **kwargs)


class TestAudioSourceResolver:
    """Every video clip contributes audio exactly once."""

    def test_video_without_audio_gets_virtual_clip(self):
        """Scenario A: a lone video clip is demuxed through a virtual audio clip."""
        v = video("v1", start=1, duration=2.5, name="Intro")
        resolved = AudioSourceResolver().resolve([v])

        assert resolved.virtual_ids == ["v1:audio"]
        virtual = resolved.audio_clips[0]
        assert virtual.id == "v1:audio"
        assert virtual.kind == ClipKind.AUDIO
        assert virtual.start_time == 1
        assert virtual.duration == 2.5
        assert virtual.source_video_id == "v1"
        assert virtual.is_derived_from_video is True
        assert virtual.raw_source == b"VID"
        assert resolved.match_rules["v1"] == "virtual"

    def test_linked_flag_uses_existing_clip(self):
        """Scenario B: flagged video with its extracted audio on the timeline."""
        v = video("v1", has_linked_audio=True, linked_audio_id="a1")
        a = audio("a1")
        resolved = AudioSourceResolver().resolve([v, a])

        assert [c.id for c in resolved.audio_clips] == ["a1"]
        assert resolved.virtual_ids == []
        assert resolved.links == {"v1": "a1"}
        assert resolved.match_rules["v1"] == "linked_flag"

    def test_link_table_has_priority(self):
        v = video("v1", has_linked_audio=True, linked_audio_id="a1")
        a1 = audio("a1")
        a2 = audio("a2")
        resolved = AudioSourceResolver(links={"v1": "a2"}).resolve([v, a1, a2])

        assert resolved.links == {"v1": "a2"}
        assert resolved.match_rules["v1"] == "link_table"
        # a1 stays on the timeline as an independent audio clip
        assert {c.id for c in resolved.audio_clips} == {"a1", "a2"}

    def test_unusable_link_table_entry_falls_through(self, caplog):
        v = video("v1")
        a = audio("a1", source_video_id="v1")
        with caplog.at_level(logging.WARNING):
            resolved = AudioSourceResolver(links={"v1": "missing"}).resolve([v, a])

        assert resolved.links == {"v1": "a1"}
        assert resolved.match_rules["v1"] == "source_video"
        assert "not usable" in caplog.text

    def test_source_video_and_linked_video_ids(self):
        v1 = video("v1")
        v2 = video("v2")
        a1 = audio("a1", source_video_id="v1")
        a2 = audio("a2", linked_video_id="v2")
        resolved = AudioSourceResolver().resolve([v1, v2, a1, a2])

        assert resolved.links == {"v1": "a1", "v2": "a2"}
        assert resolved.virtual_ids == []

    def test_shared_origin_asset(self):
        v = video("v1", source_clip_id="asset-7")
        a = audio("a1", source_clip_id="asset-7")
        resolved = AudioSourceResolver().resolve([v, a])

        assert resolved.links == {"v1": "a1"}
        assert resolved.match_rules["v1"] == "source_clip"

    def test_name_convention_is_lowest_priority(self):
        v = video("v1", name="Clip", source_clip_id="asset-1")
        by_name = audio("a-name", name="Clip (Audio)")
        by_asset = audio("a-asset", source_clip_id="asset-1")
        resolved = AudioSourceResolver().resolve([v, by_name, by_asset])

        assert resolved.links == {"v1": "a-asset"}

    def test_name_convention_matches(self):
        v = video("v1", name="Clip")
        a = audio("a1", name="Clip (Audio)")
        resolved = AudioSourceResolver().resolve([v, a])

        assert resolved.links == {"v1": "a1"}
        assert resolved.match_rules["v1"] == "linked_id_or_name"

    def test_linked_id_without_flag(self):
        v = video("v1", linked_audio_id="a1")
        a = audio("a1")
        resolved = AudioSourceResolver().resolve([v, a])

        assert resolved.links == {"v1": "a1"}
        assert resolved.match_rules["v1"] == "linked_id_or_name"

    def test_audio_clip_claimed_once(self):
        """Two videos from the same asset cannot share one audio clip."""
        v1 = video("v1", source_clip_id="asset-1")
        v2 = video("v2", start=3, source_clip_id="asset-1")
        a = audio("a1", source_clip_id="asset-1")
        resolved = AudioSourceResolver().resolve([v1, v2, a])

        assert resolved.links == {"v1": "a1", "v2": "v2:audio"}
        assert resolved.virtual_ids == ["v2:audio"]

    def test_flag_without_clip_warns_and_uses_virtual(self, caplog):
        v = video("v1", has_linked_audio=True, linked_audio_id="gone")
        with caplog.at_level(logging.WARNING):
            resolved = AudioSourceResolver().resolve([v])

        assert resolved.virtual_ids == ["v1:audio"]
        assert "gone" in caplog.text

    def test_images_and_audio_only_untouched(self):
        image = Clip(id="i1", kind=ClipKind.IMAGE, start_time=0, duration=2, subtype="gif")
        a = audio("a1")
        resolved = AudioSourceResolver().resolve([image, a])

        assert [c.id for c in resolved.audio_clips] == ["a1"]
        assert resolved.links == {}
        assert resolved.virtual_ids == []

    def test_exactly_once_for_mixed_timeline(self):
        videos = [
            video("v1", has_linked_audio=True, linked_audio_id="a1"),
            video("v2", source_clip_id="asset-2"),
            video("v3", name="Third"),
            video("v4"),
        ]
        audios = [
            audio("a1"),
            audio("a2", source_clip_id="asset-2"),
            audio("a3", name="Third (Audio)"),
            audio("music"),
        ]
        resolved = AudioSourceResolver().resolve([*videos, *audios])

        assert set(resolved.links) == {v.id for v in videos}
        assert len(set(resolved.links.values())) == len(videos)
        assert resolved.virtual_ids == ["v4:audio"]
        assert {c.id for c in resolved.audio_clips} == {"a1", "a2", "a3", "music", "v4:audio"}

    def test_to_dict(self):
        resolved = AudioSourceResolver().resolve([video("v1")])
        assert resolved.to_dict() == {
            "audio_clip_ids": ["v1:audio"],
            "links": {"v1": "v1:audio"},
            "virtual_ids": ["v1:audio"],
            "match_rules": {"v1": "virtual"},
        }
