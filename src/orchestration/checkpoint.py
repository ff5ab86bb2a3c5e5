from dataclasses import dataclass

MIN_CHECKPOINT_INTERVAL = 5


@dataclass
class Checkpoint:
    """Pause after every `interval` completions until the final batch.

    While paused, a human can review AI credit usage before the next batch.
    """

    interval: int
    total: int
    completed: int = 0
    paused: bool = False
    next_checkpoint: int = 0

    def __post_init__(self):
        if self.interval > 0:
            self.interval = max(self.interval, MIN_CHECKPOINT_INTERVAL)
        else:
            self.interval = 0
        self.next_checkpoint = self.interval

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    def record_completion(self) -> bool:
        """Count one finished job; returns True when that completion pauses the run."""
        self.completed += 1
        if self.enabled and self.completed < self.total and self.completed >= self.next_checkpoint:
            self.paused = True
        return self.paused

    def resume(self) -> None:
        if not self.paused:
            return
        self.paused = False
        self.next_checkpoint += self.interval

    def batches(self, items: list) -> list[list]:
        """Split `items` into the launch batches that line up with checkpoints."""
        if not self.enabled:
            return [list(items)] if items else []
        return [list(items[i:i + self.interval]) for i in range(0, len(items), self.interval)]
