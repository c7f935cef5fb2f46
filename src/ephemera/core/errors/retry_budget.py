from __future__ import annotations


class RetryBudget:
    """Per-run allowance of provider retries. Never goes below zero."""

    def __init__(self, max_retries: int = 10) -> None:
        self.max_retries = max(0, int(max_retries))
        self._remaining = self.max_retries

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def used(self) -> int:
        return self.max_retries - self._remaining

    @property
    def exhausted(self) -> bool:
        return self._remaining <= 0

    def can_retry(self) -> bool:
        return self._remaining > 0

    def consume(self) -> bool:
        if self._remaining <= 0:
            return False
        self._remaining -= 1
        return True

    def reset(self) -> None:
        self._remaining = self.max_retries

    def __repr__(self) -> str:
        return f"RetryBudget(max_retries={self.max_retries}, remaining={self._remaining})"
