"""
Story compositor: ordered stills → one cross-faded, slowly zooming MP4.

Each shot is normalized with Pillow into an RGB frame of the target size in
a private temp directory, then ffmpeg renders:

    [still] → scale → zoompan (push-in to 1.08) → yuv420p
    [v0][v1] xfade … [vN-1] → H.264, +faststart

The temp directory is removed on every exit path.
"""

import logging
import os
import tempfile
from typing import Callable, Optional, Sequence

import ffmpeg
from PIL import Image, UnidentifiedImageError

from ..errors import CompositionError

logger = logging.getLogger(__name__)

SHOT_DURATION = 2.6    # seconds each still is on screen
FADE_DURATION = 0.4
ZOOM_EXPR = "min(zoom+0.0015,1.08)"


def _run_ffmpeg(stream) -> None:
    stream.run(overwrite_output=True, capture_stdout=True, capture_stderr=True)


class Compositor:
    def __init__(
        self,
        shot_duration: float = SHOT_DURATION,
        fade_duration: float = FADE_DURATION,
        runner: Callable = _run_ffmpeg,
        temp_root: Optional[str] = None,
    ):
        if fade_duration >= shot_duration:
            raise ValueError("fade must be shorter than a shot")
        self.shot_duration = shot_duration
        self.fade_duration = fade_duration
        self._runner = runner
        self._temp_root = temp_root or None

    def transition_offsets(self, count: int) -> list[float]:
        """Start time of each cross-fade in the joined timeline."""
        step = self.shot_duration - self.fade_duration
        return [round(step * k, 3) for k in range(1, count)]

    def _normalize(self, source: str, target: str, width: int, height: int) -> None:
        try:
            with Image.open(source) as img:
                frame = img.convert("RGB").resize((width, height), Image.LANCZOS)
                frame.save(target, "JPEG", quality=95)
        except (OSError, UnidentifiedImageError) as e:
            raise CompositionError(f"Shot {os.path.basename(source)} is not a readable image: {e}") from e

    def build_graph(self, frames: Sequence[str], width: int, height: int, fps: int, output_path: str):
        frame_count = round(self.shot_duration * fps)
        streams = []
        for path in frames:
            stream = (
                ffmpeg.input(path, loop=1, t=self.shot_duration)
                .filter("scale", width, height)
                .filter("zoompan", z=ZOOM_EXPR, d=frame_count, s=f"{width}x{height}", fps=fps)
                .filter("format", "yuv420p")
            )
            streams.append(stream)

        joined = streams[0]
        for stream, offset in zip(streams[1:], self.transition_offsets(len(streams))):
            joined = ffmpeg.filter(
                [joined, stream], "xfade",
                transition="fade", duration=self.fade_duration, offset=offset,
            )

        return ffmpeg.output(
            joined,
            output_path,
            vcodec="libx264",
            pix_fmt="yuv420p",
            movflags="+faststart",
            **{"profile:v": "high", "level": "4.1"},
        )

    def compose(
        self,
        shot_paths: Sequence[str],
        width: int,
        height: int,
        fps: int,
        output_path: str,
        expected_shots: Optional[int] = None,
    ) -> str:
        expected = expected_shots if expected_shots is not None else len(shot_paths)
        if not shot_paths or len(shot_paths) < expected:
            raise CompositionError(
                f"Compositor needs {max(expected, 1)} shots, got {len(shot_paths)}"
            )
        missing = [p for p in shot_paths if not os.path.isfile(p)]
        if missing:
            raise CompositionError(f"Shot files missing: {', '.join(missing)}")

        with tempfile.TemporaryDirectory(prefix="compose_", dir=self._temp_root) as scratch:
            frames = []
            for i, source in enumerate(shot_paths):
                frame = os.path.join(scratch, f"frame_{i + 1:02d}.jpg")
                self._normalize(source, frame, width, height)
                frames.append(frame)

            graph = self.build_graph(frames, width, height, fps, output_path)
            logger.info(f"Composing {len(frames)} shots → {output_path} ({width}x{height}@{fps})")
            try:
                self._runner(graph)
            except ffmpeg.Error as e:
                stderr = e.stderr.decode("utf8", errors="replace") if e.stderr else "Unknown FFmpeg error"
                raise CompositionError(f"FFmpeg composition failed: {stderr[-500:]}") from e

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise CompositionError("FFmpeg produced no output video")
        return output_path
