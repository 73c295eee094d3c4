import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

from pymediainfo import MediaInfo

from ..exceptions import MetadataExtractionError
from ..models import ZERO_DURATION


class MetadataExtractor:
    """
    Probes video files for their duration and size.

    Strategies:
      - 'pymediainfo' (fast wrapper around libmediainfo) first.
      - 'exiftool' (robust, requires system install) as fallback.

    Never raises: a file nobody can read reports ZERO_DURATION.
    """

    def get_duration(self, path) -> float:
        path = Path(path)

        # Strategy 1: MediaInfo (fastest, usually sufficient)
        try:
            duration = self._mediainfo_duration(path)
            if duration:
                return duration
        except Exception as e:
            logging.debug(f"MediaInfo failed for {path}: {e}")

        # Strategy 2: ExifTool
        try:
            duration = self._exiftool_duration(path)
            if duration:
                return duration
        except Exception as e:
            # Debug level only, the tool may simply be missing
            logging.debug(f"ExifTool failed for {path}: {e}")

        logging.debug(f"No duration found for {path}")
        return ZERO_DURATION

    def get_file_size(self, path) -> int:
        try:
            return os.path.getsize(path)
        except OSError as e:
            logging.debug(f"Unable to stat {path}: {e}")
            return 0

    # --- Internal Extraction Helpers ---

    def _mediainfo_duration(self, path: Path) -> Optional[float]:
        mi = MediaInfo.parse(str(path))
        for track in mi.tracks:
            if track.track_type == "General" and getattr(track, "duration", None):
                # MediaInfo duration is in milliseconds
                return float(track.duration) / 1000.0
        return None

    def _exiftool_duration(self, path: Path) -> Optional[float]:
        """
        Wraps the 'exiftool' command line utility.
        Must be installed and on the system PATH.
        """
        # -j = JSON output, -n = no formatting (Duration in plain seconds)
        cmd = ["exiftool", "-j", "-n", "-Duration", str(path)]
        out = subprocess.check_output(cmd, stderr=subprocess.DEVNULL, text=True)
        data_list = json.loads(out)
        if not data_list:
            return None

        raw = data_list[0].get("Duration")
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError) as e:
            raise MetadataExtractionError(f"Unparseable duration {raw!r} for {path}") from e
