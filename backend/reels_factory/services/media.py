"""Media composition powered by ffmpeg/ffprobe."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx

from reels_factory.services.object_store import LocalObjectStore, ObjectStoreError
from reels_factory.services.subtitles import clamp_cues, parse_cues, rebase_cues, render_srt

logger = logging.getLogger(__name__)


class MediaError(RuntimeError):
    pass


class ComposeError(RuntimeError):
    """Composition failure tagged with the stage that failed."""

    STAGES = ("missing_input", "download", "probe", "mux", "concat", "publish")

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


@dataclass
class VideoMeta:
    width: int
    height: int
    fps: float
    duration: float
    has_audio: bool


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class ComposeClip:
    index: int
    video_url: str
    audio_url: Optional[str] = None
    subtitle_cues: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ComposeResult:
    artifact_url: str
    duration_seconds: float
    clip_count: int


@dataclass(frozen=True)
class SubtitleStyle:
    font: str = "Noto Sans CJK KR"
    font_size: int = 18

    def force_style(self) -> str:
        return (
            f"FontName={self.font},FontSize={self.font_size},PrimaryColour=&H00FFFFFF,"
            "OutlineColour=&H00000000,BorderStyle=1,Outline=2,Shadow=0,Alignment=2,MarginV=40"
        )


Runner = Callable[[list[str], Optional[Path]], Awaitable[CommandResult]]
Downloader = Callable[[str, Path], Awaitable[None]]


async def run_command(cmd: list[str], cwd: Optional[Path] = None) -> CommandResult:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    result = CommandResult(
        returncode=proc.returncode or 0,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    if result.returncode != 0:
        raise MediaError(f"Command failed: {' '.join(cmd)}\n{result.stderr.strip()[-2000:]}")
    return result


def _run(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(cmd, capture_output=True, text=True)
    if proc.returncode != 0:
        raise MediaError(f"Command failed: {' '.join(cmd)}\n{proc.stderr.strip()}")
    return proc


def ffmpeg_available() -> bool:
    try:
        _run(["ffmpeg", "-version"])
        _run(["ffprobe", "-version"])
        return True
    except (MediaError, OSError):
        return False


def _fps_value(rate: Optional[str]) -> float:
    if not rate:
        return 30.0
    if "/" in rate:
        n, d = rate.split("/", maxsplit=1)
        try:
            denom = float(d)
            if denom == 0:
                return 30.0
            return float(n) / denom
        except ValueError:
            return 30.0
    try:
        return float(rate)
    except ValueError:
        return 30.0


def parse_probe_output(stdout: str) -> VideoMeta:
    payload = json.loads(stdout)
    streams = payload.get("streams", [])

    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if not video_stream:
        raise MediaError("No video stream found")

    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)
    duration = video_stream.get("duration") or payload.get("format", {}).get("duration") or 0
    return VideoMeta(
        width=int(video_stream.get("width") or 1080),
        height=int(video_stream.get("height") or 1920),
        fps=max(_fps_value(video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate")), 1.0),
        duration=float(duration),
        has_audio=audio_stream is not None,
    )


def probe_command(path: Path) -> list[str]:
    return ["ffprobe", "-v", "error", "-show_streams", "-show_format", "-of", "json", str(path)]


def mux_command(
    video: Path,
    audio: Optional[Path],
    output: Path,
    *,
    duration: float,
    subtitle_name: Optional[str] = None,
    style: Optional[SubtitleStyle] = None,
) -> list[str]:
    """Mux one clip's narration (and optionally burn its subtitles) over its video.

    The output is cut at the video's own duration; shorter narration is
    padded with silence instead of trimming the picture.
    """
    cmd = ["ffmpeg", "-y", "-i", str(video)]
    if audio is not None:
        cmd += ["-i", str(audio), "-map", "0:v:0", "-map", "1:a:0"]
    else:
        cmd += ["-map", "0:v:0", "-map", "0:a?"]

    if subtitle_name:
        style = style or SubtitleStyle()
        cmd += [
            "-vf",
            f"subtitles={subtitle_name}:force_style='{style.force_style()}'",
            "-c:v",
            "libx264",
            "-preset",
            "medium",
            "-pix_fmt",
            "yuv420p",
        ]
    else:
        cmd += ["-c:v", "copy"]

    if audio is not None:
        cmd += ["-af", "apad"]
    cmd += ["-c:a", "aac", "-b:a", "192k", "-ac", "2", "-ar", "48000", "-t", f"{duration:.3f}", str(output)]
    return cmd


def concat_copy_command(list_path: Path, output: Path) -> list[str]:
    return [
        "ffmpeg",
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(list_path),
        "-c",
        "copy",
        "-movflags",
        "+faststart",
        str(output),
    ]


def concat_reencode_command(list_path: Path, output: Path) -> list[str]:
    return [
        "ffmpeg",
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(list_path),
        "-c:v",
        "libx264",
        "-preset",
        "medium",
        "-pix_fmt",
        "yuv420p",
        "-c:a",
        "aac",
        "-ac",
        "2",
        "-ar",
        "48000",
        "-movflags",
        "+faststart",
        str(output),
    ]


def write_concat_list(paths: list[Path], list_path: Path) -> None:
    lines = []
    for path in paths:
        escaped = path.as_posix().replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    list_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


async def http_download(url: str, target: Path, timeout_s: float = 300) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    if url.startswith("data:"):
        header, _, encoded = url.partition(",")
        if ";base64" not in header:
            raise MediaError("only base64 data URLs are supported")
        target.write_bytes(base64.b64decode(encoded))
        return

    async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=True) as client:
        async with client.stream("GET", url) as resp:
            resp.raise_for_status()
            with target.open("wb") as f:
                async for chunk in resp.aiter_bytes():
                    f.write(chunk)


class MediaComposer:
    """Turns a list of voiced clips into one published video.

    Every run works inside its own temporary workspace, which is removed
    when the run ends unless ``keep_workspace`` is set.
    """

    def __init__(
        self,
        object_store: LocalObjectStore,
        *,
        runner: Runner = run_command,
        downloader: Optional[Downloader] = None,
        workspace_root: Optional[Path] = None,
        keep_workspace: bool = False,
        subtitle_style: Optional[SubtitleStyle] = None,
        download_timeout_s: float = 300,
    ) -> None:
        self.object_store = object_store
        self.runner = runner
        self.downloader = downloader
        self.workspace_root = workspace_root
        self.keep_workspace = keep_workspace
        self.subtitle_style = subtitle_style or SubtitleStyle()
        self.download_timeout_s = download_timeout_s

    async def compose(self, clips: list[ComposeClip], *, label: str) -> ComposeResult:
        if not clips:
            raise ComposeError("missing_input", "no clips to compose")
        for clip in clips:
            if not clip.video_url:
                raise ComposeError("missing_input", f"clip {clip.index} has no video")
        voiced = sum(1 for clip in clips if clip.audio_url)
        if voiced != len(clips):
            raise ComposeError("missing_input", f"{len(clips)} video clips but {voiced} audio tracks")

        if self.workspace_root is not None:
            self.workspace_root.mkdir(parents=True, exist_ok=True)
        workspace = Path(tempfile.mkdtemp(prefix=f"compose-{label}-", dir=self.workspace_root))
        logger.info("composing %s clips for %s in %s", len(clips), label, workspace)
        try:
            ordered = sorted(clips, key=lambda clip: clip.index)
            muxed: list[Path] = []
            total_duration = 0.0
            for position, clip in enumerate(ordered):
                path, duration = await self._prepare_clip(workspace, position, clip)
                muxed.append(path)
                total_duration += duration

            final_path = workspace / "final.mp4"
            await self._concat(workspace, muxed, final_path)

            try:
                artifact_url = await self.object_store.upload_file(
                    final_path, "video/mp4", name=f"{label}.mp4", prefix="final"
                )
            except ObjectStoreError as exc:
                raise ComposeError("publish", str(exc)) from exc

            logger.info("composed %s: %.2fs from %s clips", artifact_url, total_duration, len(ordered))
            return ComposeResult(
                artifact_url=artifact_url,
                duration_seconds=round(total_duration, 3),
                clip_count=len(ordered),
            )
        finally:
            if self.keep_workspace:
                logger.info("compose workspace retained at %s", workspace)
            else:
                shutil.rmtree(workspace, ignore_errors=True)
                logger.info("compose workspace removed: %s", workspace)

    async def _prepare_clip(self, workspace: Path, position: int, clip: ComposeClip) -> tuple[Path, float]:
        video_path = workspace / f"clip-{position}-video.mp4"
        await self._fetch(clip.video_url, video_path, f"clip {clip.index} video")
        audio_path: Optional[Path] = None
        if clip.audio_url:
            audio_path = workspace / f"clip-{position}-audio.mp3"
            await self._fetch(clip.audio_url, audio_path, f"clip {clip.index} audio")

        try:
            probe = await self.runner(probe_command(video_path), workspace)
            meta = parse_probe_output(probe.stdout)
        except (MediaError, ValueError) as exc:
            raise ComposeError("probe", f"clip {clip.index}: {exc}") from exc

        subtitle_name: Optional[str] = None
        cues = clamp_cues(rebase_cues(parse_cues(clip.subtitle_cues)), meta.duration)
        if cues:
            subtitle_name = f"clip-{position}.srt"
            (workspace / subtitle_name).write_text(render_srt(cues), encoding="utf-8")

        if audio_path is None and subtitle_name is None:
            return video_path, meta.duration

        output = workspace / f"clip-{position}-muxed.mp4"
        cmd = mux_command(
            video_path,
            audio_path,
            output,
            duration=meta.duration,
            subtitle_name=subtitle_name,
            style=self.subtitle_style,
        )
        try:
            await self.runner(cmd, workspace)
        except MediaError as exc:
            raise ComposeError("mux", f"clip {clip.index}: {exc}") from exc
        return output, meta.duration

    async def _fetch(self, url: str, target: Path, what: str) -> None:
        try:
            local = self._local_object(url)
            if local is not None:
                shutil.copyfile(local, target)
            elif self.downloader is not None:
                await self.downloader(url, target)
            else:
                await http_download(url, target, self.download_timeout_s)
        except (httpx.HTTPError, MediaError, ObjectStoreError, OSError, ValueError) as exc:
            raise ComposeError("download", f"{what}: {exc}") from exc
        if not target.exists() or target.stat().st_size == 0:
            raise ComposeError("download", f"{what}: empty download from {url}")

    def _local_object(self, url: str) -> Optional[Path]:
        prefix = f"{self.object_store.public_base_url}/"
        if not url.startswith(prefix):
            return None
        return self.object_store.path_for(url[len(prefix):])

    async def _concat(self, workspace: Path, clips: list[Path], output: Path) -> None:
        list_path = workspace / "concat.txt"
        write_concat_list(clips, list_path)
        try:
            await self.runner(concat_copy_command(list_path, output), workspace)
            return
        except MediaError as exc:
            logger.warning("stream-copy concat failed, re-encoding: %s", str(exc).splitlines()[0])

        try:
            await self.runner(concat_reencode_command(list_path, output), workspace)
        except MediaError as exc:
            raise ComposeError("concat", str(exc)) from exc
