"""Fire-and-forget work with isolated failures.

Interactive paths hand slow refreshes (e.g. a filer-name lookup) to
`BackgroundTasks.submit` and return immediately. A failing task is logged and
recorded in `errors`; it never propagates to the submitter. `wait()` lets
tests and shutdown hooks block until everything submitted has finished.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait as wait_futures
from typing import Any, Callable, Dict, List, Optional, Set, Tuple


def _debug(msg: str) -> None:
    print(f"[tasks] {msg}")


class BackgroundTasks:
    def __init__(self, max_workers: int = 4, name: str = "bg"):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._lock = threading.RLock()
        self._pending: Set[Future] = set()
        self._inflight: Dict[str, Future] = {}
        self.errors: List[Tuple[Optional[str], BaseException]] = []
        self.completed = 0

    def submit(self, fn: Callable[..., Any], *args: Any, key: Optional[str] = None, **kwargs: Any) -> Future:
        """Schedule fn. A second submit with an in-flight `key` returns the first future."""
        with self._lock:
            if key is not None and key in self._inflight:
                return self._inflight[key]
            fut = self._executor.submit(self._guard, fn, key, args, kwargs)
            self._pending.add(fut)
            if key is not None:
                self._inflight[key] = fut
        fut.add_done_callback(lambda f, k=key: self._on_done(f, k))
        return fut

    def _guard(self, fn: Callable[..., Any], key: Optional[str], args: tuple, kwargs: dict) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            _debug(f"Background task failed key={key}: {type(e).__name__}: {e}")
            with self._lock:
                self.errors.append((key, e))
            return None

    def _on_done(self, fut: Future, key: Optional[str]) -> None:
        with self._lock:
            self._pending.discard(fut)
            if key is not None and self._inflight.get(key) is fut:
                del self._inflight[key]
            self.completed += 1

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted task (including ones submitted meanwhile) is done."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if remaining == 0.0:
                return False
            wait_futures(pending, timeout=remaining, return_when=FIRST_COMPLETED)
            # Done callbacks run right after the future resolves; give them the lock.
            with self._lock:
                for f in pending:
                    if f.done():
                        self._pending.discard(f)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
