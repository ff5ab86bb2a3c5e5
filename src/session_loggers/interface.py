from typing import Protocol


class SessionLogger(Protocol):
    def save(self, output: str, metadata: dict, label: str) -> str | None: ...
