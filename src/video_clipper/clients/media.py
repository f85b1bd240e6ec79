"""Media gateway backed by the ffmpeg CLI and PyAV."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import av

from ..core.gateways import ComposeResult, ResolvedScene
from ..errors import ErrorCode, ExternalFailureError
from ..models import VisualKind

logger = logging.getLogger(__name__)

FRAME_RATE = 30
BGM_VOLUME = 0.15


def probe_duration_seconds(path: str | Path) -> float:
    """
    Read a media file's duration with PyAV.

    Falls back to the longest stream duration when the container does not
    report one.
    """
    with av.open(str(path)) as container:
        if container.duration is not None:
            return container.duration / av.time_base
        durations = [
            float(stream.duration * stream.time_base)
            for stream in container.streams
            if stream.duration is not None and stream.time_base is not None
        ]
    return max(durations) if durations else 0.0


class FfmpegMediaGateway:
    """Runs ffmpeg as a subprocess for every media operation."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg"):
        self.ffmpeg_bin = ffmpeg_bin

    async def _run(self, args: list[str]) -> None:
        cmd = [self.ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-y", *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ExternalFailureError(ErrorCode.MEDIA_FAILURE, f"ffmpeg not found: {self.ffmpeg_bin}") from e

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            logger.warning(f"Cancelled, killing ffmpeg (pid {process.pid})")
            process.kill()
            await process.wait()
            raise
        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise ExternalFailureError(ErrorCode.MEDIA_FAILURE, f"ffmpeg exited with {process.returncode}: {tail}")

    async def extract_audio(self, input_uri: str, output_path: Path, fmt: str = "flac") -> Path:
        """Extract mono 16 kHz audio, the format speech models expect."""
        await self._run(["-i", input_uri, "-vn", "-ac", "1", "-ar", "16000", "-f", fmt, str(output_path)])
        return output_path

    async def extract_subrange(self, input_path: Path, output_path: Path, start: float, end: float) -> Path:
        await self._run([
            "-ss", f"{start:.3f}",
            "-to", f"{end:.3f}",
            "-i", str(input_path),
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-c:a", "aac",
            "-movflags", "+faststart",
            str(output_path),
        ])
        return output_path

    async def probe_duration(self, path: Path) -> float:
        return await asyncio.to_thread(probe_duration_seconds, path)

    def _scene_args(self, resolved: ResolvedScene, output_path: Path, width: int, height: int) -> list[str]:
        seconds = f"{resolved.duration_ms / 1000:.3f}"
        visual = resolved.scene.visual
        args: list[str] = []

        if visual.kind == VisualKind.IMAGE and resolved.visual_path:
            args += ["-loop", "1", "-t", seconds, "-i", str(resolved.visual_path)]
        elif visual.kind == VisualKind.STOCK_VIDEO and resolved.visual_path:
            args += ["-stream_loop", "-1", "-t", seconds, "-i", str(resolved.visual_path)]
        else:
            color = visual.color or "black"
            args += ["-f", "lavfi", "-t", seconds, "-i", f"color=c={color}:s={width}x{height}:r={FRAME_RATE}"]

        if resolved.voice_path:
            args += ["-i", str(resolved.voice_path)]
        else:
            args += ["-f", "lavfi", "-t", seconds, "-i", "anullsrc=channel_layout=stereo:sample_rate=44100"]

        for overlay in resolved.subtitles:
            args += ["-i", str(overlay.path)]

        filters = [
            f"[0:v]scale={width}:{height}:force_original_aspect_ratio=increase,"
            f"crop={width}:{height},fps={FRAME_RATE},format=yuv420p[v0]"
        ]
        label = "v0"
        for i, overlay in enumerate(resolved.subtitles):
            start = overlay.start_ms / 1000
            end = overlay.end_ms / 1000
            next_label = f"v{i + 1}"
            filters.append(
                f"[{label}][{i + 2}:v]overlay=(W-w)/2:H-h-{height // 8}:"
                f"enable='between(t,{start:.3f},{end:.3f})'[{next_label}]"
            )
            label = next_label

        args += [
            "-filter_complex", ";".join(filters),
            "-map", f"[{label}]",
            "-map", "1:a",
            "-t", seconds,
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-c:a", "aac",
            "-ar", "44100",
            "-ac", "2",
            str(output_path),
        ]
        return args

    async def compose_scenes(
        self,
        scenes: list[ResolvedScene],
        output_path: Path,
        width: int,
        height: int,
        bgm_path: Path | None = None,
    ) -> ComposeResult:
        """Render each scene, concatenate them, then mix in background music."""
        workdir = output_path.parent
        scene_files = []
        for i, resolved in enumerate(scenes):
            scene_file = workdir / f"scene_{i:03d}.mp4"
            await self._run(self._scene_args(resolved, scene_file, width, height))
            scene_files.append(scene_file)

        list_file = workdir / "scenes.txt"
        list_file.write_text("".join(f"file '{path.resolve()}'\n" for path in scene_files))

        concat_path = workdir / "concat.mp4" if bgm_path else output_path
        await self._run(["-f", "concat", "-safe", "0", "-i", str(list_file), "-c", "copy", str(concat_path)])

        if bgm_path:
            await self._run([
                "-i", str(concat_path),
                "-stream_loop", "-1", "-i", str(bgm_path),
                "-filter_complex",
                f"[1:a]volume={BGM_VOLUME}[bgm];[0:a][bgm]amix=inputs=2:duration=first:dropout_transition=0[a]",
                "-map", "0:v",
                "-map", "[a]",
                "-c:v", "copy",
                "-c:a", "aac",
                str(output_path),
            ])

        duration = await self.probe_duration(output_path)
        logger.info(f"Composed {len(scenes)} scenes into {output_path.name} ({duration:.1f}s)")
        return ComposeResult(output_path=output_path, duration_seconds=duration)
