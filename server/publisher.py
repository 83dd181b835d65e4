"""In-process task update bus.

The mirror and the fulfillment loop publish here; the HTTP layer drains
subscriber queues into SSE streams. Delivery is best effort: a subscriber
whose queue fills up is dropped, and nothing is replayed.
"""

import queue
import threading

MAX_SUBSCRIBERS = 1000
SUBSCRIBER_QUEUE_SIZE = 256


class TooManySubscribers(Exception):
    pass


class TaskUpdateBus:
    """Fan-out of task updates to "all tasks" and per-task subscribers."""

    def __init__(self, max_subscribers: int = MAX_SUBSCRIBERS, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.max_subscribers = max_subscribers
        self.queue_size = queue_size
        # queue -> task_id filter (None = every task)
        self._subscribers: dict[queue.Queue, int | None] = {}
        self._lock = threading.Lock()

    def subscribe(self, task_id: int | None = None) -> queue.Queue:
        q = queue.Queue(maxsize=self.queue_size)
        with self._lock:
            if len(self._subscribers) >= self.max_subscribers:
                raise TooManySubscribers(f"{len(self._subscribers)} subscribers already connected")
            self._subscribers[q] = None if task_id is None else int(task_id)
        return q

    def unsubscribe(self, q: queue.Queue):
        with self._lock:
            self._subscribers.pop(q, None)

    def publish(self, task_id: int, fields: dict) -> int:
        """Push an update. Returns the number of subscribers it reached."""
        payload = {"task_id": int(task_id), **fields}
        delivered = 0
        with self._lock:
            dead = []
            for q, scope in self._subscribers.items():
                if scope is not None and scope != payload["task_id"]:
                    continue
                try:
                    q.put_nowait(payload)
                    delivered += 1
                except queue.Full:
                    dead.append(q)
            for q in dead:
                del self._subscribers[q]
        return delivered

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
