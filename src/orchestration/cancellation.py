import logging
import threading
from collections.abc import Callable

logger = logging.getLogger("flotilla.cancellation")

Trigger = Callable[[], object]


class CancellationRegistry:
    """Thread-safe map of repo -> cancellation trigger.

    At most one trigger per repo. cancel() pops before invoking, so a trigger
    fires at most once and a second cancel() is a no-op.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._triggers: dict[str, Trigger] = {}

    def register(self, repo: str, trigger: Trigger) -> None:
        with self._lock:
            self._triggers[repo] = trigger

    def unregister(self, repo: str, trigger: Trigger | None = None) -> None:
        """Drop the trigger for `repo`; when `trigger` is given, only if it is still the registered one."""
        with self._lock:
            current = self._triggers.get(repo)
            if current is None:
                return
            if trigger is not None and current != trigger:
                return
            del self._triggers[repo]

    def cancel(self, repo: str) -> bool:
        with self._lock:
            trigger = self._triggers.pop(repo, None)
        if trigger is None:
            logger.debug(f"[{repo}] Nothing to cancel")
            return False
        logger.info(f"[{repo}] Cancelling")
        trigger()
        return True

    def cancel_all(self) -> list[str]:
        with self._lock:
            triggers = list(self._triggers.items())
            self._triggers.clear()
        for repo, trigger in triggers:
            logger.info(f"[{repo}] Cancelling")
            trigger()
        return [repo for repo, _ in triggers]

    def __contains__(self, repo: str) -> bool:
        with self._lock:
            return repo in self._triggers

    def __len__(self) -> int:
        with self._lock:
            return len(self._triggers)
