"""Audio source resolution for visual clips.

A video clip's soundtrack may already be on the timeline as a separate audio
clip (the editor extracted it, or the asset was re-imported). Mixing both the
video's embedded audio and that clip would double the sound; mixing neither
would drop it. The resolver links every video clip to exactly one audio
source and synthesizes a virtual audio clip when none exists.

Matching order (an audio clip is claimed by at most one video clip):
0. Explicit link table from the timeline editor (video_id -> audio_id)
1. ``has_linked_audio`` flag with a resolvable ``linked_audio_id``
2. Audio clip whose ``source_video_id`` / ``linked_video_id`` is the video id
3. Audio clip sharing the video's ``source_clip_id`` (same origin asset)
4. ``linked_audio_id`` without the flag, or the "<video name> (Audio)" name
   convention (weakest signal)
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from timeline_export.schemas.clip import Clip, ClipKind

logger = logging.getLogger(__name__)

AUDIO_NAME_SUFFIX = " (Audio)"
VIRTUAL_ID_SUFFIX = ":audio"


@dataclass
class ResolvedAudio:
    """Final audio clip set for mixing."""

    audio_clips: list[Clip] = field(default_factory=list)
    # video clip id -> audio clip id carrying its sound
    links: dict[str, str] = field(default_factory=dict)
    virtual_ids: list[str] = field(default_factory=list)
    # video clip id -> name of the rule that matched
    match_rules: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Serialize to dictionary."""
        return {
            "audio_clip_ids": [c.id for c in self.audio_clips],
            "links": dict(self.links),
            "virtual_ids": list(self.virtual_ids),
            "match_rules": dict(self.match_rules),
        }


class AudioSourceResolver:
    """Links video clips to their audio source, synthesizing virtual clips."""

    def __init__(self, links: Optional[dict[str, str]] = None):
        self.links = dict(links or {})

    def resolve(self, clips: list[Clip]) -> ResolvedAudio:
        """Build the audio clip set for a clip snapshot.

        Args:
            clips: Flat clip list (all kinds)

        Returns:
            ResolvedAudio with existing audio clips plus one virtual clip per
            video clip that has no audio source on the timeline
        """
        audio_clips = [c for c in clips if c.kind == ClipKind.AUDIO]
        video_clips = [c for c in clips if c.kind == ClipKind.VIDEO]

        result = ResolvedAudio(audio_clips=list(audio_clips))
        claimed: set[str] = set()

        rules: list[tuple[str, Callable[[Clip, dict[str, Clip]], Optional[Clip]]]] = [
            ("link_table", self._match_link_table),
            ("linked_flag", self._match_linked_flag),
            ("source_video", self._match_source_video),
            ("source_clip", self._match_source_clip),
            ("linked_id_or_name", self._match_weak),
        ]

        for video in video_clips:
            # Unclaimed audio clips, keyed by id, in timeline order
            available = {a.id: a for a in audio_clips if a.id not in claimed}
            match: Optional[Clip] = None
            rule_name = "virtual"
            for name, rule in rules:
                match = rule(video, available)
                if match is not None:
                    rule_name = name
                    break

            if match is not None:
                claimed.add(match.id)
                result.links[video.id] = match.id
                result.match_rules[video.id] = rule_name
                logger.info(f"[AUDIO LINK] video={video.id} -> audio={match.id} (rule={rule_name})")
                continue

            if video.has_linked_audio:
                logger.warning(
                    f"[AUDIO LINK] video={video.id} is flagged as having linked audio "
                    f"(linked_audio_id={video.linked_audio_id}) but no such clip is on the timeline; "
                    "using the video's own soundtrack"
                )

            virtual = self._make_virtual_clip(video)
            result.audio_clips.append(virtual)
            result.virtual_ids.append(virtual.id)
            result.links[video.id] = virtual.id
            result.match_rules[video.id] = rule_name
            logger.info(f"[AUDIO LINK] video={video.id} -> virtual audio={virtual.id}")

        return result

    def _match_link_table(self, video: Clip, available: dict[str, Clip]) -> Optional[Clip]:
        audio_id = self.links.get(video.id)
        if audio_id is None:
            return None
        candidate = available.get(audio_id)
        if candidate is None:
            logger.warning(f"[AUDIO LINK] link table entry {video.id}->{audio_id} is not usable")
        return candidate

    @staticmethod
    def _match_linked_flag(video: Clip, available: dict[str, Clip]) -> Optional[Clip]:
        if not video.has_linked_audio or not video.linked_audio_id:
            return None
        return available.get(video.linked_audio_id)

    @staticmethod
    def _match_source_video(video: Clip, available: dict[str, Clip]) -> Optional[Clip]:
        for audio in available.values():
            if video.id in (audio.source_video_id, audio.linked_video_id):
                return audio
        return None

    @staticmethod
    def _match_source_clip(video: Clip, available: dict[str, Clip]) -> Optional[Clip]:
        if not video.source_clip_id:
            return None
        for audio in available.values():
            if audio.source_clip_id == video.source_clip_id:
                return audio
        return None

    @staticmethod
    def _match_weak(video: Clip, available: dict[str, Clip]) -> Optional[Clip]:
        if video.linked_audio_id and video.linked_audio_id in available:
            return available[video.linked_audio_id]
        if video.name:
            expected = f"{video.name}{AUDIO_NAME_SUFFIX}"
            for audio in available.values():
                if audio.name == expected:
                    return audio
        return None

    @staticmethod
    def _make_virtual_clip(video: Clip) -> Clip:
        return Clip(
            id=f"{video.id}{VIRTUAL_ID_SUFFIX}",
            kind=ClipKind.AUDIO,
            name=f"{video.name}{AUDIO_NAME_SUFFIX}" if video.name else None,
            start_time=video.start_time,
            duration=video.duration,
            source_video_id=video.id,
            source_clip_id=video.source_clip_id,
            is_derived_from_video=True,
            raw_source=video.raw_source,
        )
