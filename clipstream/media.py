"""
ffprobe/ffmpeg helpers: probing, transcoding, thumbnails and highlight segmentation.
"""

import json
import logging
import subprocess
from pathlib import Path

from clipstream import config
from clipstream.errors import PermanentError, TransientError

log = logging.getLogger("clipstream.media")


def _run(cmd: list, timeout: int, text: bool = True):
    try:
        return subprocess.run(cmd, capture_output=True, text=text, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise TransientError(f"{cmd[0]} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise TransientError(f"{cmd[0]} not available on this worker") from e


def extract_metadata(video_path: Path) -> dict:
    """Extract video metadata using ffprobe. Unreadable media is a permanent failure."""
    cmd = [
        "ffprobe", "-v", "quiet",
        "-print_format", "json",
        "-show_format", "-show_streams",
        str(video_path),
    ]

    result = _run(cmd, timeout=60)
    if result.returncode != 0:
        raise PermanentError(f"ffprobe could not read {video_path.name}")

    try:
        probe = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise PermanentError(f"ffprobe returned invalid output for {video_path.name}") from e
    fmt = probe.get("format", {})

    video_stream = next(
        (s for s in probe.get("streams", []) if s.get("codec_type") == "video"),
        None,
    )
    if video_stream is None:
        raise PermanentError(f"{video_path.name} has no video stream")

    return {
        "title": fmt.get("tags", {}).get("title", video_path.stem),
        "duration": float(fmt.get("duration", 0) or 0),
        "width": int(video_stream.get("width", 0)),
        "height": int(video_stream.get("height", 0)),
        "codec": video_stream.get("codec_name"),
        "bitrate": int(fmt.get("bit_rate", 0) or 0),
    }


def transcode(source: Path, output: Path):
    """Transcode to H.264/AAC, 720p max, faststart for progressive playback."""
    # Keep aspect ratio, target 720p max
    scale_filter = "scale='min(1280,iw)':'min(720,ih)':force_original_aspect_ratio=decrease,pad=ceil(iw/2)*2:ceil(ih/2)*2"

    cmd = [
        "ffmpeg", "-y",
        "-threads", config.FFMPEG_THREADS,
        "-i", str(source),
        "-vf", scale_filter,
        "-c:v", "libx264",
        "-preset", "fast",
        "-crf", "23",
        "-c:a", "aac",
        "-b:a", "128k",
        "-movflags", "+faststart",
        str(output),
    ]

    result = _run(cmd, timeout=config.STAGE_DEADLINE_SECONDS)
    if result.returncode != 0:
        raise PermanentError(f"Transcode failed: {result.stderr[-500:]}")


def generate_thumbnail(video_path: Path, thumb_path: Path) -> bool:
    """Pick a representative frame. A missing thumbnail never fails the stage."""
    cmd = [
        "ffmpeg", "-y",
        "-threads", config.FFMPEG_THREADS,
        "-i", str(video_path),
        "-vf", "thumbnail,scale=480:-1",
        "-frames:v", "1",
        str(thumb_path),
    ]
    _run(cmd, timeout=60)
    return thumb_path.exists()


def detect_segments(video_path: Path, total_duration: float) -> list:
    """
    Find natural split points using audio silence detection.
    Falls back to fixed-interval splitting if no silence gaps found.
    """
    if total_duration <= config.MAX_CLIP_SECONDS:
        return [{"start": 0.0, "end": round(total_duration, 2)}]

    try:
        cmd = [
            "ffmpeg", "-threads", config.FFMPEG_THREADS,
            "-i", str(video_path),
            "-af", f"silencedetect=noise={config.SILENCE_NOISE_DB}dB:d={config.SILENCE_MIN_DURATION}",
            "-f", "null", "-",
        ]
        result = _run(cmd, timeout=120)

        midpoints = parse_silence_midpoints(result.stderr)
        if midpoints:
            split_points = sorted(set([0.0] + midpoints + [total_duration]))
            segments = merge_scenes(split_points, total_duration)
            if segments:
                return segments
    except TransientError as e:
        log.warning(f"Silence detection failed, using fixed intervals: {e}")

    return fixed_split(total_duration)


def parse_silence_midpoints(stderr: str) -> list:
    midpoints = []
    silence_start = None
    for line in (stderr or "").split("\n"):
        if "silence_start:" in line:
            try:
                silence_start = float(line.split("silence_start:")[1].strip().split()[0])
            except (ValueError, IndexError):
                silence_start = None
        elif "silence_end:" in line and silence_start is not None:
            try:
                silence_end = float(line.split("silence_end:")[1].strip().split()[0])
                midpoints.append((silence_start + silence_end) / 2)
            except (ValueError, IndexError):
                pass
            silence_start = None
    return midpoints


def merge_scenes(scene_times: list, total_duration: float) -> list:
    """Merge scene boundaries into clips between MIN and MAX duration."""
    segments = []
    start = 0.0

    for i in range(1, len(scene_times)):
        duration = scene_times[i] - start
        if duration < config.TARGET_CLIP_SECONDS:
            continue

        end = scene_times[i]
        if duration > config.MAX_CLIP_SECONDS:
            # Too long, split at target duration
            while start + config.TARGET_CLIP_SECONDS < end:
                segments.append({
                    "start": round(start, 2),
                    "end": round(start + config.TARGET_CLIP_SECONDS, 2),
                })
                start += config.TARGET_CLIP_SECONDS
            if end - start >= config.MIN_CLIP_SECONDS:
                segments.append({"start": round(start, 2), "end": round(end, 2)})
        else:
            segments.append({"start": round(start, 2), "end": round(end, 2)})
        start = end

    if total_duration - start >= config.MIN_CLIP_SECONDS:
        segments.append({"start": round(start, 2), "end": round(total_duration, 2)})

    return segments


def fixed_split(total_duration: float) -> list:
    segments = []
    pos = 0.0
    while pos < total_duration:
        end = min(pos + config.TARGET_CLIP_SECONDS, total_duration)
        if end - pos >= config.MIN_CLIP_SECONDS:
            segments.append({"start": round(pos, 2), "end": round(end, 2)})
        pos = end
    return segments


def label_segment(transcript: list, start: float, end: float, title: str, index: int) -> str:
    """Label a highlight from the speech inside it, falling back to the video title."""
    words = []
    for seg in transcript:
        if seg.get("end", 0) > start and seg.get("start", 0) < end:
            words.extend((seg.get("text") or "").split())
        if len(words) >= 10:
            break

    if len(words) >= 3:
        return " ".join(words[:10]) + "..."

    if title:
        return f"{title} (Highlight {index + 1})"

    return f"Highlight {index + 1}"


def extract_keyframes(video_path: Path, duration: float, n: int = 3) -> list:
    """Grab n PNG frames at evenly spaced timestamps. Returns raw PNG bytes."""
    if duration <= 0:
        return []

    frames = []
    positions = [duration * (i + 1) / (n + 1) for i in range(n)]
    for ts in positions:
        cmd = [
            "ffmpeg", "-y", "-ss", str(ts),
            "-i", str(video_path),
            "-frames:v", "1", "-f", "image2pipe",
            "-vcodec", "png", "pipe:1",
        ]
        result = _run(cmd, timeout=15, text=False)
        if result.returncode == 0 and result.stdout:
            frames.append(result.stdout)
    return frames
