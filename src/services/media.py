"""Media service for video edits rendered with ffmpeg."""

import asyncio
import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from src.models.pipeline import BgMusicConfig, TextOverlayConfig
from src.utils.errors import RenderError

logger = logging.getLogger(__name__)

# Shared output encoding for re-rendered clips
VIDEO_CODEC_ARGS = ["-c:v", "libx264", "-preset", "veryfast", "-crf", "23", "-pix_fmt", "yuv420p"]
AUDIO_CODEC_ARGS = ["-c:a", "aac", "-b:a", "128k"]
CONCAT_FPS = 30
AUDIO_RATE = 44100


@dataclass(frozen=True)
class MediaInfo:
    """What ffprobe reports about a clip."""

    duration: float
    width: int
    height: int
    has_audio: bool


def escape_filter_value(value: str) -> str:
    """Escape a value for use inside an ffmpeg filter option."""
    return value.replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")


def ffmpeg_color(hex_color: str, opacity: Optional[float] = None) -> str:
    """``#RRGGBB`` (plus optional opacity) in ffmpeg color syntax."""
    color = "0x" + hex_color.lstrip("#")
    if opacity is not None:
        color += f"@{opacity:.2f}"
    return color


def drawtext_filter(
    config: TextOverlayConfig, textfile: str, font_path: Optional[str] = None
) -> str:
    """Build the ``drawtext`` filter for a text-overlay config."""
    margin = config.padding * 2
    y = {
        "top": str(margin),
        "center": "(h-text_h)/2",
        "bottom": f"h-text_h-{margin}",
    }[config.position]

    options = [
        f"textfile='{escape_filter_value(textfile)}'",
        f"fontsize={config.font_size}",
        f"fontcolor={ffmpeg_color(config.font_color)}",
        "x=(w-text_w)/2",
        f"y={y}",
    ]
    if font_path:
        options.append(f"fontfile='{escape_filter_value(font_path)}'")
    if config.background_color:
        options.extend(
            [
                "box=1",
                f"boxcolor={ffmpeg_color(config.background_color, config.background_opacity)}",
                f"boxborderw={config.padding}",
            ]
        )
    if config.end_time is not None:
        options.append(f"enable='between(t,{config.start_time:g},{config.end_time:g})'")
    elif config.start_time > 0:
        options.append(f"enable='gte(t,{config.start_time:g})'")
    return "drawtext=" + ":".join(options)


def music_filter(config: BgMusicConfig, duration: float, mix_original: bool) -> str:
    """
    Build the filter graph that lays a looped track under a clip.

    Input 0 is the video, input 1 the track; the result is labelled ``[aout]``.
    """
    chain = [
        f"atrim=duration={duration:.3f}",
        "asetpts=PTS-STARTPTS",
        f"volume={config.volume / 100:.2f}",
    ]
    if config.fade_in > 0:
        chain.append(f"afade=t=in:st=0:d={config.fade_in:g}")
    if config.fade_out > 0:
        start = max(duration - config.fade_out, 0.0)
        chain.append(f"afade=t=out:st={start:.3f}:d={config.fade_out:g}")

    graph = "[1:a]" + ",".join(chain)
    if mix_original:
        return graph + "[music];[0:a][music]amix=inputs=2:duration=first:dropout_transition=0[aout]"
    return graph + "[aout]"


class MediaService:
    """Service for probing and re-rendering video clips with ffmpeg."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        render_timeout: float = 120.0,
        font_path: Optional[str] = None,
    ) -> None:
        """
        Initialize the MediaService.

        Args:
            ffmpeg_path: ffmpeg executable
            ffprobe_path: ffprobe executable
            render_timeout: Upper bound in seconds for a single ffmpeg run
            font_path: Font file for text overlays (ffmpeg default when None)
        """
        self.ffmpeg = ffmpeg_path
        self.ffprobe = ffprobe_path
        self.render_timeout = render_timeout
        self.font_path = font_path

    async def _run(self, args: List[str]) -> bytes:
        """
        Run a media tool and return its stdout.

        Raises:
            RenderError: If the tool is missing, fails or times out
        """
        tool = Path(args[0]).name
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise RenderError(f"{tool} not found at {args[0]}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.render_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RenderError(f"{tool} timed out after {self.render_timeout}s")

        if proc.returncode != 0:
            tail = stderr.decode(errors="replace").strip().splitlines()[-5:]
            raise RenderError(f"{tool} exited with {proc.returncode}: {' | '.join(tail)}")
        return stdout

    async def _render(self, workdir: Path, args: List[str]) -> bytes:
        output = workdir / "output.mp4"
        await self._run([self.ffmpeg, "-y", "-hide_banner", "-loglevel", "error", *args, str(output)])
        data = output.read_bytes() if output.exists() else b""
        if not data:
            raise RenderError("ffmpeg produced no output")
        return data

    async def probe_file(self, path: Path) -> MediaInfo:
        """Duration, frame size and audio presence of a file on disk."""
        stdout = await self._run(
            [
                self.ffprobe,
                "-v", "error",
                "-show_entries", "format=duration:stream=codec_type,width,height",
                "-of", "json",
                str(path),
            ]
        )
        try:
            data = json.loads(stdout or b"{}")
        except ValueError:
            raise RenderError(f"Unreadable ffprobe output for {path.name}")

        streams = data.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        if video is None:
            raise RenderError(f"{path.name} has no video stream")

        return MediaInfo(
            duration=float((data.get("format") or {}).get("duration") or 0.0),
            width=int(video.get("width") or 0),
            height=int(video.get("height") or 0),
            has_audio=any(s.get("codec_type") == "audio" for s in streams),
        )

    async def probe(self, data: bytes) -> MediaInfo:
        with tempfile.TemporaryDirectory(prefix="probe-") as tmp:
            path = Path(tmp) / "input.mp4"
            path.write_bytes(data)
            return await self.probe_file(path)

    async def trim(self, data: bytes, max_seconds: float) -> bytes:
        """
        Cut a clip down to ``max_seconds``.

        Clips already within the limit are returned unchanged.
        """
        with tempfile.TemporaryDirectory(prefix="trim-") as tmp:
            workdir = Path(tmp)
            source = workdir / "input.mp4"
            source.write_bytes(data)

            info = await self.probe_file(source)
            if info.duration <= max_seconds:
                return data

            logger.info(f"Trimming {info.duration:.1f}s clip to {max_seconds}s")
            return await self._render(
                workdir,
                ["-i", str(source), "-t", f"{max_seconds:g}", *VIDEO_CODEC_ARGS, *AUDIO_CODEC_ARGS],
            )

    async def overlay_text(self, data: bytes, config: TextOverlayConfig) -> bytes:
        """Burn a caption into the frames of a clip."""
        with tempfile.TemporaryDirectory(prefix="overlay-") as tmp:
            workdir = Path(tmp)
            source = workdir / "input.mp4"
            source.write_bytes(data)
            # Text goes through a file so captions never need filter escaping
            textfile = workdir / "caption.txt"
            textfile.write_text(config.text, encoding="utf-8")

            return await self._render(
                workdir,
                [
                    "-i", str(source),
                    "-vf", drawtext_filter(config, str(textfile), self.font_path),
                    *VIDEO_CODEC_ARGS,
                    "-c:a", "copy",
                ],
            )

    async def mix_music(self, video: bytes, track: bytes, config: BgMusicConfig) -> bytes:
        """Lay a (looped) music track under a clip, mixed or replacing its audio."""
        with tempfile.TemporaryDirectory(prefix="music-") as tmp:
            workdir = Path(tmp)
            source = workdir / "input.mp4"
            source.write_bytes(video)
            music = workdir / "track.audio"
            music.write_bytes(track)

            info = await self.probe_file(source)
            if info.duration <= 0:
                raise RenderError("Cannot add music to a clip with no duration")

            mix_original = config.keep_original_audio and info.has_audio
            return await self._render(
                workdir,
                [
                    "-i", str(source),
                    "-stream_loop", "-1", "-i", str(music),
                    "-filter_complex", music_filter(config, info.duration, mix_original),
                    "-map", "0:v", "-map", "[aout]",
                    "-c:v", "copy",
                    *AUDIO_CODEC_ARGS,
                    "-shortest",
                ],
            )

    async def attach(self, primary: bytes, secondary: bytes, position: str = "after") -> bytes:
        """
        Concatenate ``secondary`` before or after ``primary``.

        The secondary clip is scaled and padded to the primary's frame size;
        a clip without audio contributes silence.
        """
        with tempfile.TemporaryDirectory(prefix="attach-") as tmp:
            workdir = Path(tmp)
            main_path = workdir / "primary.mp4"
            main_path.write_bytes(primary)
            extra_path = workdir / "secondary.mp4"
            extra_path.write_bytes(secondary)

            main_info = await self.probe_file(main_path)
            extra_info = await self.probe_file(extra_path)
            width = main_info.width - main_info.width % 2
            height = main_info.height - main_info.height % 2

            ordered = [(main_path, main_info), (extra_path, extra_info)]
            if position == "before":
                ordered.reverse()

            inputs: List[str] = []
            filters: List[str] = []
            for index, (path, info) in enumerate(ordered):
                inputs.extend(["-i", str(path)])
                filters.append(
                    f"[{index}:v]scale={width}:{height}:force_original_aspect_ratio=decrease,"
                    f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={CONCAT_FPS},"
                    f"format=yuv420p[v{index}]"
                )
                if info.has_audio:
                    filters.append(
                        f"[{index}:a]aformat=sample_rates={AUDIO_RATE}:channel_layouts=stereo[a{index}]"
                    )
                else:
                    filters.append(
                        f"anullsrc=r={AUDIO_RATE}:cl=stereo,atrim=duration={info.duration:.3f}[a{index}]"
                    )
            filters.append("[v0][a0][v1][a1]concat=n=2:v=1:a=1[vout][aout]")

            return await self._render(
                workdir,
                [
                    *inputs,
                    "-filter_complex", ";".join(filters),
                    "-map", "[vout]", "-map", "[aout]",
                    *VIDEO_CODEC_ARGS,
                    *AUDIO_CODEC_ARGS,
                    "-movflags", "+faststart",
                ],
            )
