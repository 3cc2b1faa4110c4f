"""Search forward from a position for the next window that holds features.

``FeatureSearcher`` asks a feature source for features over consecutive
fixed-size windows, moving on to the next chromosome when one runs out,
until a window comes back non-empty, the genome is exhausted, or the caller
cancels. It is meant to run on a background thread while the caller polls
``is_running()`` or waits.
"""

from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, Optional
import itertools
import logging
import threading

from gsearch.config import DEFAULT_WINDOW_SIZE, DEFAULT_TIMEOUT
from gsearch.database.ufeature import UFeature

if TYPE_CHECKING:
    from gsearch.database.genome import Genome
    from gsearch.database.annotations import AnnotationStream, FeatureTrack

logger = logging.getLogger(__name__)

# ceiling used when no genome is available, as a signed 32-bit coordinate
MAX_INT = 2**31 - 1

DEFAULT_SEARCH_WINDOW_SIZE = DEFAULT_WINDOW_SIZE


class SearchOutcome(Enum):
    FOUND = "found"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen = True)
class SearchWindow:
    chrom: Optional[str]
    start: int
    end: int

    @property
    def exhausted(self) -> bool:
        return self.start == -1 and self.end == -1

    def __str__(self):
        return f"{self.chrom}:{self.start}-{self.end}"


def window_ceiling(chrom, window_size: int,
                   chrom_length: Optional[Callable[[str], Optional[int]]] = None) -> int:
    """Largest coordinate a window on ``chrom`` may reach."""
    if chrom_length is not None:
        length = chrom_length(chrom)
        if length is not None:
            return length
    return MAX_INT - window_size


def first_window(chrom, start: int, window_size: int,
                 chrom_length: Optional[Callable[[str], Optional[int]]] = None) -> SearchWindow:
    end = start + window_size
    if chrom_length is not None:
        length = chrom_length(chrom)
        if length is not None and start < length:
            end = min(end, length)
    return SearchWindow(chrom, start, end)


def next_window(window: SearchWindow, window_size: int,
                chrom_length: Optional[Callable[[str], Optional[int]]] = None,
                next_chrom: Optional[Callable[[str], Optional[str]]] = None) -> Optional[SearchWindow]:
    """The window after ``window``, or None once there is nowhere left to go.

    Args:
        window: Window just searched
        window_size: Step and width, in base pairs
        chrom_length: Length lookup; None (or a None answer) means unbounded
            up to ``MAX_INT - window_size``
        next_chrom: Next chromosome in walk order; None means stop at the
            end of the current chromosome
    """
    chrom = window.chrom
    start = window.start + window_size
    max_coord = window_ceiling(chrom, window_size, chrom_length)

    if start >= max_coord:
        chrom = next_chrom(chrom) if next_chrom is not None else None
        if chrom is None:
            return None
        start = 0
        max_coord = window_ceiling(chrom, window_size, chrom_length)

    return SearchWindow(chrom, start, min(start + window_size, max_coord))


class FeatureSearcher:
    """Find the next window, from a starting position, with any features in it.

    Either a feature source (``stream(chrom, start, end)`` returning an
    iterator) or a track (``get_features(chrom, start, end)`` returning a
    list) must be given; the track wins when both are. The genome is
    optional and supplies chromosome lengths and order.

    A searcher runs once. ``cancel()`` may be called from any thread at any
    time; it takes effect before the next window is queried and does not
    interrupt a query in flight.
    """

    def __init__(self, source: Optional['AnnotationStream'], genome: Optional['Genome'],
                 chrom: str, start: int,
                 track: Optional['FeatureTrack'] = None,
                 window_size: int = DEFAULT_SEARCH_WINDOW_SIZE):
        if source is None and track is None:
            raise ValueError("FeatureSearcher needs a feature source or a track")
        if start < 0:
            raise ValueError(f"Start position must be >= 0, got {start}")

        self.source = source
        self.track = track
        self.genome = genome
        self.window_size = self._check_window_size(window_size)

        self._result: Optional[Iterator[UFeature]] = None
        self._outcome: Optional[SearchOutcome] = None

        self._running = threading.Event()
        self._cancelled = threading.Event()
        self._finished = threading.Event()
        self._claim = threading.Lock()
        self._started = False
        self._queries = 0

        self._init_search_coords(chrom, start)

    @staticmethod
    def _check_window_size(window_size):
        if isinstance(window_size, bool) or not isinstance(window_size, int) or window_size <= 0:
            raise ValueError(f"Window size must be a positive integer, got {window_size!r}")
        return window_size

    @property
    def _chrom_length(self):
        return self.genome.get_chrom_length if self.genome is not None else None

    @property
    def _next_chrom(self):
        return self.genome.get_next_chrom_name if self.genome is not None else None

    def _init_search_coords(self, chrom, start):
        self._window = first_window(chrom, start, self.window_size, self._chrom_length)

    def _increment_search_coords(self):
        nxt = next_window(self._window, self.window_size, self._chrom_length, self._next_chrom)
        if nxt is None:
            logger.debug(f"No chromosome after {self._window.chrom}, search exhausted")
            self._window = SearchWindow(None, -1, -1)
            self._outcome = SearchOutcome.EXHAUSTED
            self.cancel()
            return
        self._window = nxt

    @property
    def window(self) -> SearchWindow:
        return self._window

    @property
    def chrom(self):
        return self._window.chrom

    @property
    def start(self):
        return self._window.start

    @property
    def end(self):
        return self._window.end

    @property
    def queries(self) -> int:
        """Number of windows queried so far."""
        return self._queries

    @property
    def outcome(self) -> Optional[SearchOutcome]:
        """Why the search ended; None until it has."""
        if not self._finished.is_set():
            return None
        return self._outcome

    def _get_features(self, chrom, start, end) -> Optional[Iterator[UFeature]]:
        """Features in ``[start, end)`` as an iterator, or None if there are none."""
        if self.track is not None:
            return self._peek(self.track.get_features(chrom, start, end))
        if self.source is not None:
            return self._peek(self.source.stream(chrom, start, end))
        raise RuntimeError("Have no track or feature source from which to get features")

    @staticmethod
    def _peek(feats) -> Optional[Iterator[UFeature]]:
        """None if ``feats`` is empty, else an iterator over all of it."""
        if feats is None:
            return None
        feats = iter(feats)
        try:
            first = next(feats)
        except StopIteration:
            return None
        return itertools.chain([first], feats)

    def cancel(self):
        """Ask the searcher to stop. Stopping may not be instantaneous."""
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def is_running(self) -> bool:
        return self._running.is_set()

    def get_result(self) -> Optional[Iterator[UFeature]]:
        """The features found, or None while running or if nothing was found."""
        if self._running.is_set():
            return None
        return self._result

    def set_window_size(self, window_size: int):
        self.window_size = self._check_window_size(window_size)
        if not self._window.exhausted:
            self._init_search_coords(self._window.chrom, self._window.start)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the search has finished. Returns False on timeout."""
        return self._finished.wait(timeout)

    def _claim_run(self):
        with self._claim:
            if self._started:
                raise RuntimeError("FeatureSearcher can only be run once")
            self._started = True

    def submit(self, executor: Optional[Executor] = None) -> Future:
        """Run the search on ``executor``, or on a fresh single worker thread.

        The searcher reports running as soon as this returns, so a caller
        may poll ``is_running()`` straight away.
        """
        self._claim_run()
        self._running.set()
        try:
            if executor is not None:
                return executor.submit(self._search)
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="feature-search")
            future = executor.submit(self._search)
            executor.shutdown(wait=False)
            return future
        except RuntimeError:
            # executor already shut down
            self._running.clear()
            self._outcome = SearchOutcome.FAILED
            self._finished.set()
            raise

    def run(self):
        """Search on the calling thread, returning when the search ends."""
        self._claim_run()
        self._search()

    def _search(self):
        self._running.set()
        logger.debug(f"Searching for features from {self._window} (window size {self.window_size})")

        try:
            while self._running.is_set() and not self._cancelled.is_set():
                window = self._window
                self._queries += 1
                try:
                    rslt = self._get_features(window.chrom, window.start, window.end)
                except OSError as e:
                    logger.error(f"Error searching for feature in {window}: {e}")
                    self._outcome = SearchOutcome.FAILED
                    break

                if rslt is not None:
                    self._result = rslt
                    self._outcome = SearchOutcome.FOUND
                    logger.info(f"Found features in {window} after {self._queries} queries")
                    break

                self._increment_search_coords()
        except Exception:
            logger.exception(f"Feature search from {self._window} failed")
            self._outcome = SearchOutcome.FAILED
            raise
        finally:
            if self._outcome is None:
                self._outcome = SearchOutcome.CANCELLED
            self._running.clear()
            self._finished.set()
            logger.debug(f"Search finished: {self._outcome.value} at {self._window}")

    def __repr__(self):
        state = "running" if self.is_running() else (self.outcome.value if self.outcome else "idle")
        return f"FeatureSearcher({self._window}, window_size={self.window_size}, {state})"


class GenomeSearch:
    """Caller side of the searcher: start it, wait with a timeout, cancel if late."""

    def __init__(self, features, genome: Optional['Genome'] = None,
                 window_size: int = DEFAULT_SEARCH_WINDOW_SIZE,
                 executor: Optional[Executor] = None):
        self.features = features
        self.genome = genome
        self.window_size = window_size
        self.executor = executor

    def make_searcher(self, chrom, position) -> FeatureSearcher:
        if hasattr(self.features, "get_features"):
            return FeatureSearcher(None, self.genome, chrom, position,
                                   track = self.features, window_size = self.window_size)
        return FeatureSearcher(self.features, self.genome, chrom, position,
                               window_size = self.window_size)

    def next_feature(self, chrom, position, timeout: Optional[float] = DEFAULT_TIMEOUT) -> FeatureSearcher:
        """Search from ``chrom:position`` and return the finished searcher."""
        searcher = self.make_searcher(chrom, position)
        future = searcher.submit(self.executor)

        if not searcher.wait(timeout):
            logger.warning(f"Search from {chrom}:{position} timed out after {timeout}s, cancelling")
            searcher.cancel()
            searcher.wait()

        # re-raises anything run() did not absorb
        future.result()
        return searcher

    def feature_search(self, chrom, position, conditions: Dict[str, Any],
                       timeout: Optional[float] = DEFAULT_TIMEOUT) -> Iterator[UFeature]:
        """Features in the next non-empty window that match ``conditions``.

        ``conditions`` maps attribute names to required values; the special
        key ``any`` matches a substring of any string attribute.
        """
        conditions = dict(conditions)
        q_any = conditions.pop("any", None)

        searcher = self.next_feature(chrom, position, timeout = timeout)
        for f in searcher.get_result() or []:
            if q_any:
                fd = f.to_dict()
                fd.update(fd.pop("attributes", {}))
                if not any(isinstance(v, str) and q_any in v for v in fd.values()):
                    continue
            if all(f.get(c) == v for c, v in conditions.items()):
                yield f
