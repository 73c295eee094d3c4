import logging
import threading
from typing import Callable, Iterable, Iterator, Optional, Sequence, Tuple

from ..models import ComparisonPolicy, VideoRecord

Pair = Tuple[VideoRecord, VideoRecord]


class DuplicateMatcher:
    """
    Decides whether two videos are near-duplicates.

    Two checks, cheapest first:
      1. Duration within the policy's rule.
      2. Up to `thumbnail_count` evenly spaced frames, compared pairwise.
         Gives up as soon as more than `max_different_thumbnails` differ.

    Frames are memoized on the records; callers decide when to discard them.
    """

    def __init__(self, policy: ComparisonPolicy, thumbnails, differ):
        self.policy = policy
        self.thumbnails = thumbnails
        self.differ = differ

    def is_duration_equal(self, a: VideoRecord, b: VideoRecord) -> bool:
        return self.policy.duration_rule.is_equal(a.duration, b.duration)

    def are_thumbnails_equal(self, a: VideoRecord, b: VideoRecord) -> bool:
        count = self.policy.thumbnail_count
        threshold = self.policy.max_difference_percent / 100
        different = 0

        for index in range(count):
            thumb_a = a.get_thumbnail(index, count, self.thumbnails)
            thumb_b = b.get_thumbnail(index, count, self.thumbnails)

            # A missing frame must never make two files look alike
            if thumb_a is None or thumb_b is None:
                different += 1
            else:
                diff = self.differ.difference(thumb_a, thumb_b)
                logging.debug(f"{index} Difference: {diff:.3f} ({a.name} / {b.name})")
                if diff > threshold:
                    different += 1

            if different > self.policy.max_different_thumbnails:
                return False
        return True

    def is_duplicate(self, a: VideoRecord, b: VideoRecord) -> bool:
        return self.is_duration_equal(a, b) and self.are_thumbnails_equal(a, b)

    def iter_full_pass(self,
                       records: Iterable[VideoRecord],
                       cancel: threading.Event,
                       on_row: Optional[Callable[[int, int, VideoRecord], None]] = None) -> Iterator[Pair]:
        """
        Yields every duplicate pair among `records`.

        Records are sorted by duration, so the inner loop can stop at the first
        partner that is not duration-equal: everything after it is longer still.
        `on_row(index, total, record)` is called before each row starts.
        """
        ordered = sorted(records, key=lambda r: r.duration)
        total = len(ordered)

        for index in range(total - 1):
            if cancel.is_set():
                return

            record = ordered[index]
            if on_row:
                on_row(index, total, record)

            for other in ordered[index + 1:]:
                if cancel.is_set():
                    return
                if not self.is_duration_equal(record, other):
                    break
                if self._safe_thumbnails_equal(record, other):
                    yield record, other

            record.discard_thumbnails()

    def iter_targeted(self,
                      records: Sequence[VideoRecord],
                      reference: VideoRecord,
                      cancel: threading.Event) -> Iterator[Pair]:
        """
        Yields (reference, other) for every record that duplicates `reference`.

        The list is not kept sorted between single insertions, so every record
        is checked; there is no duration short-circuit here.
        """
        for other in records:
            if cancel.is_set():
                return
            if other == reference:
                continue
            if not self.is_duration_equal(other, reference):
                continue
            if self._safe_thumbnails_equal(other, reference):
                yield reference, other

    def _safe_thumbnails_equal(self, a: VideoRecord, b: VideoRecord) -> bool:
        # A broken collaborator only costs us this pair, not the whole pass
        try:
            return self.are_thumbnails_equal(a, b)
        except Exception as e:
            logging.error(f"Failed to compare {a.path} and {b.path}: {e}")
            return False
