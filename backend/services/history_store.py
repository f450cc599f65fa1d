"""In-memory store for the shared conversation history."""
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Sequence

from models.conversation import Turn, USER, ASSISTANT

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Readers-writer lock: many concurrent readers or one writer.

    Waiting writers block new readers so appends are not starved by a
    steady stream of snapshots.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _is_complete_exchange(turns: Sequence[Turn], index: int) -> bool:
    return (
        turns[index].role == USER
        and index + 1 < len(turns)
        and turns[index + 1].role == ASSISTANT
    )


def count_exchanges(turns: Sequence[Turn]) -> int:
    """Count complete user/assistant exchanges in ``turns``.

    A trailing user turn with no reply yet is not an exchange.
    """
    return sum(1 for i in range(len(turns)) if _is_complete_exchange(turns, i))


def trim_to_max_exchanges(turns: Sequence[Turn], max_exchanges: int) -> List[Turn]:
    """
    Drop the oldest complete exchanges until at most ``max_exchanges`` remain.

    Only whole leading exchanges are removed, so a user turn is never
    separated from its reply, and a trailing unanswered user turn is always
    kept. Non-positive limits disable trimming. Running the function on its
    own output returns the same sequence.

    Args:
        turns: Conversation in chronological order
        max_exchanges: Number of complete exchanges to retain

    Returns:
        A new list with the retained turns
    """
    turns = list(turns)
    if max_exchanges <= 0:
        return turns

    excess = count_exchanges(turns) - max_exchanges
    if excess <= 0:
        return turns

    # Start of the first exchange that survives
    start = len(turns)
    seen = 0
    for i in range(len(turns)):
        if _is_complete_exchange(turns, i):
            if seen == excess:
                start = i
                break
            seen += 1

    return turns[start:]


class HistoryStore:
    """
    Bounded, thread-safe history of the single shared conversation.

    Snapshots may run concurrently with each other; appends and clears are
    exclusive with everything. The lock only ever guards in-memory list
    operations.
    """

    def __init__(self, max_exchanges: int = 20):
        """
        Initialize an empty store.

        Args:
            max_exchanges: Complete exchanges to retain (<= 0 disables trimming)
        """
        self.max_exchanges = max_exchanges
        self._turns: List[Turn] = []
        self._lock = ReadWriteLock()
        logger.info(f"HistoryStore initialized with max_exchanges={max_exchanges}")

    def append(self, turn: Turn) -> None:
        """Add ``turn`` at the end and trim the oldest exchanges."""
        with self._lock.write_locked():
            self._turns.append(turn)
            before = len(self._turns)
            self._turns = trim_to_max_exchanges(self._turns, self.max_exchanges)
            dropped = before - len(self._turns)

        if dropped:
            logger.debug(f"Trimmed {dropped} turns from history")

    def snapshot(self) -> List[Turn]:
        """Return an independent copy of the history as of a single instant."""
        with self._lock.read_locked():
            return list(self._turns)

    def clear(self) -> None:
        """Reset the history to empty."""
        with self._lock.write_locked():
            self._turns = []
        logger.info("History cleared")

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._turns)
