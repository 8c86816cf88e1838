"""Window manager: the only stateful component of the loss-diff engine.

Owns the current Dataset and the active [start, end) window, re-ingests on new
input, re-aggregates on window change and publishes each result to observers
synchronously after the mutation.
"""

import logging
import threading
from collections import deque
from enum import Enum, auto
from typing import Awaitable, Callable, Deque, List, Optional, Tuple, Union

try:
    from .csv_processor import ParseError, decode_loss_bytes
    from .main import (
        Dataset,
        DiffParams,
        LoadFailure,
        WindowSnapshot,
        build_dataset,
        clamp_window,
        slice_window,
    )
except ImportError:
    from csv_processor import ParseError, decode_loss_bytes  # type: ignore
    from main import (  # type: ignore
        Dataset,
        DiffParams,
        LoadFailure,
        WindowSnapshot,
        build_dataset,
        clamp_window,
        slice_window,
    )

logger = logging.getLogger(__name__)

WindowEvent = Union[WindowSnapshot, LoadFailure]
Observer = Callable[[WindowEvent], None]


class WindowState(Enum):
    EMPTY = auto()  # no dataset loaded yet
    LOADED = auto()  # dataset present; window is full range or user-narrowed


class WindowManager:
    """
    Holds the Dataset, the window bounds and the staged bounds of the range controls.

    Loads are tagged with a monotonically increasing generation. Only the
    completion of the most recently issued generation is applied; an earlier load
    that finishes late is discarded, success or failure alike.

    Each mutation commits and publishes under one re-entrant lock, so observers
    receive events in commit order and the last event delivered always matches
    the manager's state. Observers are called in subscription order with either
    a WindowSnapshot or a LoadFailure and may call back into the manager.
    """

    def __init__(self, params: Optional[DiffParams] = None) -> None:
        self.params = params if params is not None else DiffParams()
        self._lock = threading.RLock()
        self._observers: List[Observer] = []
        self._pending: Deque[WindowEvent] = deque()
        self._delivering = False
        self._dataset: Optional[Dataset] = None
        self._applied_generation = 0
        self._window: Tuple[int, int] = (0, 0)
        self._staged_start: Optional[float] = None
        self._staged_end: Optional[float] = None
        self._generation = 0
        self._snapshot: Optional[WindowSnapshot] = None
        self._last_failure: Optional[LoadFailure] = None

    # -------------------------
    # Observers
    # -------------------------
    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a callable that unregisters it."""
        with self._lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def _publish(self, event: WindowEvent) -> None:
        # Caller holds self._lock. Events raised by an observer calling back into
        # the manager are queued behind the one being delivered.
        self._pending.append(event)
        if self._delivering:
            return
        self._delivering = True
        try:
            while self._pending:
                current = self._pending.popleft()
                for observer in list(self._observers):
                    try:
                        observer(current)
                    except Exception:
                        # State is already committed; one broken observer must not starve the rest.
                        logger.exception(f"Observer {observer!r} failed")
        finally:
            self._delivering = False

    # -------------------------
    # Read-only state
    # -------------------------
    @property
    def state(self) -> WindowState:
        return WindowState.EMPTY if self._dataset is None else WindowState.LOADED

    @property
    def dataset(self) -> Optional[Dataset]:
        return self._dataset

    @property
    def dataset_length(self) -> int:
        return 0 if self._dataset is None else len(self._dataset)

    @property
    def window(self) -> Tuple[int, int]:
        return self._window

    @property
    def staged_window(self) -> Tuple[Optional[float], Optional[float]]:
        return self._staged_start, self._staged_end

    @property
    def generation(self) -> int:
        """Latest issued load generation, including a load still in flight."""
        return self._generation

    @property
    def applied_generation(self) -> int:
        """Generation of the load that produced the current Dataset (0 if none)."""
        return self._applied_generation

    @property
    def snapshot(self) -> Optional[WindowSnapshot]:
        return self._snapshot

    @property
    def last_failure(self) -> Optional[LoadFailure]:
        return self._last_failure

    # -------------------------
    # Loading
    # -------------------------
    def begin_load(self) -> int:
        """Issue the generation of a load whose input is still being read."""
        with self._lock:
            self._generation += 1
            return self._generation

    def complete_load_event(
        self,
        generation: int,
        raw_text: Union[str, bytes],
        source_name: Optional[str] = None,
    ) -> Optional[WindowEvent]:
        """
        Finish a load started with begin_load() and return the event it published.

        Returns the WindowSnapshot of the new Dataset, the LoadFailure when the
        input failed to parse (state is unchanged), or None when a newer load has
        been issued since (nothing is published).
        """
        if generation != self._generation:
            logger.debug(
                f"Discarding stale load generation={generation} (latest={self._generation})"
            )
            return None

        try:
            text = decode_loss_bytes(raw_text)
            dataset = build_dataset(text, self.params, source_name=source_name)
        except ParseError as e:
            failure = LoadFailure(generation=generation, error=e, source_name=source_name)
            with self._lock:
                if generation != self._generation:
                    return None
                self._last_failure = failure
                logger.warning(f"Load failed for {source_name or '<input>'}: {e}")
                self._publish(failure)
            return failure

        with self._lock:
            # A newer load may have been issued while this one was parsing.
            if generation != self._generation:
                logger.debug(f"Discarding stale load generation={generation}")
                return None
            self._dataset = dataset
            self._applied_generation = generation
            self._window = (0, len(dataset))
            self._staged_start = 0
            self._staged_end = len(dataset)
            snapshot = slice_window(dataset, 0, len(dataset), generation)
            self._snapshot = snapshot
            logger.info(
                f"Loaded {len(dataset)} rows from {source_name or '<input>'} "
                f"(generation={generation})"
            )
            self._publish(snapshot)
        return snapshot

    def complete_load(
        self,
        generation: int,
        raw_text: Union[str, bytes],
        source_name: Optional[str] = None,
    ) -> bool:
        """
        Finish a load started with begin_load().

        Returns True when the new Dataset was applied. Returns False when the input
        failed to parse (a LoadFailure is published, state is unchanged) or when a
        newer load has been issued since (nothing is published).
        """
        event = self.complete_load_event(generation, raw_text, source_name)
        return isinstance(event, WindowSnapshot)

    def load_dataset_event(
        self, raw_text: Union[str, bytes], source_name: Optional[str] = None
    ) -> Optional[WindowEvent]:
        """load_dataset() returning the published WindowSnapshot or LoadFailure."""
        return self.complete_load_event(self.begin_load(), raw_text, source_name)

    def load_dataset(
        self, raw_text: Union[str, bytes], source_name: Optional[str] = None
    ) -> bool:
        """Parse, diff and install a new Dataset; the window resets to the full range."""
        return isinstance(self.load_dataset_event(raw_text, source_name), WindowSnapshot)

    async def load_dataset_async(
        self,
        read_text: Callable[[], Awaitable[Union[str, bytes]]],
        source_name: Optional[str] = None,
    ) -> bool:
        """
        Load from an asynchronous reader.

        The generation is taken before awaiting read_text(), so a later call that
        completes first wins and this one is discarded when it finally resumes.
        """
        generation = self.begin_load()
        raw_text = await read_text()
        return self.complete_load(generation, raw_text, source_name)

    # -------------------------
    # Window
    # -------------------------
    def set_window(
        self, requested_start: Optional[float], requested_end: Optional[float]
    ) -> Optional[WindowSnapshot]:
        """
        Clamp and apply a new window, re-aggregate and publish.

        The snapshot carries the generation of the Dataset it was sliced from,
        not that of a load still in flight. No-op returning None while no
        dataset is loaded.
        """
        with self._lock:
            dataset = self._dataset
            if dataset is None:
                logger.debug("set_window ignored: no dataset loaded")
                return None
            start, end = clamp_window(requested_start, requested_end, len(dataset))
            if (start, end) != (requested_start, requested_end):
                logger.debug(
                    f"Window clamped: requested=({requested_start}, {requested_end}) "
                    f"applied=({start}, {end})"
                )
            self._window = (start, end)
            snapshot = slice_window(dataset, start, end, self._applied_generation)
            self._snapshot = snapshot
            self._publish(snapshot)
        return snapshot

    def set_window_start(self, value: Optional[float]) -> None:
        """Stage a window start for the next trigger_replot(); no recompute."""
        self._staged_start = value

    def set_window_end(self, value: Optional[float]) -> None:
        """Stage a window end for the next trigger_replot(); no recompute."""
        self._staged_end = value

    def trigger_replot(self) -> Optional[WindowSnapshot]:
        """Apply the staged bounds through set_window()."""
        return self.set_window(self._staged_start, self._staged_end)
