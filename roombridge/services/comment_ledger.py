"""Comment ledger: which GitLab notes have already crossed the bridge"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple, Union

logger = logging.getLogger(__name__)

LedgerKey = Tuple[str, str, str, str]


class CommentLedger:
    """Set of (instance, project path, issue iid, note id) keys.

    A key is marked either after an inbound note has been claimed for delivery
    into a room, or right after a room message was posted to GitLab (so the
    webhook echoing that note back is dropped). Marks are permanent unless
    ``max_entries`` is set, in which case ``prune()`` drops the oldest marks
    above the limit, never touching marks younger than ``min_retention_seconds``.
    The resolver's cache of prepared virtual user profiles is not bounded
    by this setting.

    All operations take one lock, so ``test_and_mark`` is atomic per key for
    callers on the event loop and in worker threads alike.
    """

    def __init__(
        self,
        *,
        max_entries: int = 0,
        min_retention_seconds: float = 600,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_entries = max_entries
        self.min_retention_seconds = min_retention_seconds
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        # key -> monotonic time it was marked; insertion order == mark order
        self._entries: "OrderedDict[LedgerKey, float]" = OrderedDict()

    @staticmethod
    def _key(
        instance: str,
        project_path: str,
        issue_iid: Union[int, str],
        comment_id: Union[int, str],
    ) -> LedgerKey:
        return (str(instance), str(project_path), str(issue_iid), str(comment_id))

    def has_been_processed(
        self,
        instance: str,
        project_path: str,
        issue_iid: Union[int, str],
        comment_id: Union[int, str],
    ) -> bool:
        key = self._key(instance, project_path, issue_iid, comment_id)
        with self._lock:
            return key in self._entries

    def mark_processed(
        self,
        instance: str,
        project_path: str,
        issue_iid: Union[int, str],
        comment_id: Union[int, str],
    ) -> None:
        key = self._key(instance, project_path, issue_iid, comment_id)
        with self._lock:
            # Re-marking keeps the original mark time.
            self._entries.setdefault(key, self._clock())
        logger.debug(f"Marked comment {key} as processed")

    def test_and_mark(
        self,
        instance: str,
        project_path: str,
        issue_iid: Union[int, str],
        comment_id: Union[int, str],
    ) -> bool:
        """Mark a key, returning True only for the caller that marked it first."""
        key = self._key(instance, project_path, issue_iid, comment_id)
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = self._clock()
            return True

    def prune(self) -> int:
        """Drop the oldest marks above ``max_entries``. Returns how many were dropped."""
        if self.max_entries <= 0:
            return 0
        dropped = 0
        with self._lock:
            cutoff = self._clock() - self.min_retention_seconds
            while len(self._entries) > self.max_entries:
                key, marked_at = next(iter(self._entries.items()))
                if marked_at > cutoff:
                    # Everything after this one is younger still.
                    break
                del self._entries[key]
                dropped += 1
        if dropped:
            logger.info(f"Pruned {dropped} comment ledger entries ({len(self)} remaining)")
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
