from datetime import datetime, timezone
from typing import Any
from uuid import uuid4


class InMemoryStore:
    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}

    def clear(self) -> None:
        self.documents = {}

    def paths_under(self, collection: str) -> list[str]:
        prefix = f"{collection}/"
        return sorted(
            path for path in self.documents if path.startswith(prefix) and "/" not in path[len(prefix):]
        )

    @staticmethod
    def make_id() -> str:
        return str(uuid4())

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)


store = InMemoryStore()
