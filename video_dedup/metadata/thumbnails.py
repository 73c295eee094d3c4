import io
import logging
import subprocess
from pathlib import Path
from typing import Optional

from PIL import Image

from .. import config
from ..exceptions import ThumbnailExtractionError


class ThumbnailExtractor:
    """
    Grabs single frames from videos with ffmpeg and decodes them with Pillow.

    ffmpeg must be installed and on the system PATH.
    """

    def __init__(self, ffmpeg: str = "ffmpeg", timeout: float = config.FFMPEG_TIMEOUT):
        self.ffmpeg = ffmpeg
        self.timeout = timeout

    def extract(self, path, offset_seconds: float) -> Optional[Image.Image]:
        """Returns the frame at offset_seconds, or None if it cannot be produced."""
        try:
            return self._grab_frame(Path(path), offset_seconds)
        except Exception as e:
            logging.debug(f"Unable to extract frame at {offset_seconds:.2f}s from {path}: {e}")
            return None

    def _grab_frame(self, path: Path, offset_seconds: float) -> Image.Image:
        # -ss before -i seeks on keyframes, which is much faster on long files
        cmd = [
            self.ffmpeg, "-v", "error",
            "-ss", f"{max(offset_seconds, 0.0):.3f}",
            "-i", str(path),
            "-frames:v", "1",
            "-f", "image2pipe", "-vcodec", "png", "-",
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=self.timeout, check=True)
        except subprocess.CalledProcessError as e:
            err = e.stderr.decode("utf-8", errors="replace").strip() if e.stderr else ""
            raise ThumbnailExtractionError(f"ffmpeg exited with {e.returncode}: {err}") from e
        except subprocess.TimeoutExpired as e:
            raise ThumbnailExtractionError(f"ffmpeg timed out after {self.timeout}s") from e

        if not result.stdout:
            raise ThumbnailExtractionError("ffmpeg produced no frame")

        with Image.open(io.BytesIO(result.stdout)) as im:
            frame = im.convert("RGB")
        frame.thumbnail(config.THUMBNAIL_MAX_SIZE)
        return frame
