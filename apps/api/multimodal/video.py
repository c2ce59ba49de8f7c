import logging

import ffmpeg

logger = logging.getLogger(__name__)


def get_video_duration_seconds(video_path: str) -> int:
    """
    Probe a local media file and return its duration in whole seconds.

    Falls back to the first video stream when the container has no duration.
    Returns 0 when ffprobe is missing or the file cannot be read.
    """
    try:
        probe = ffmpeg.probe(video_path)
    except ffmpeg.Error as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
        logger.warning("ffprobe rejected %s: %s", video_path, stderr[:300])
        return 0
    except (OSError, ValueError) as e:
        logger.warning("Could not probe video duration for %s: %s", video_path, e)
        return 0

    duration = float(probe.get("format", {}).get("duration", 0.0) or 0.0)
    if duration <= 0:
        for stream in probe.get("streams", []):
            if stream.get("codec_type") != "video":
                continue
            duration = float(stream.get("duration", 0.0) or 0.0)
            if duration > 0:
                break
    return max(0, int(round(duration)))
