from __future__ import annotations


class ExchangeError(RuntimeError):
    """An error reported by the exchange API (`code` is the venue's numeric error code, 0 if unknown)."""

    INSUFFICIENT_MARGIN = -2019
    BAD_PRECISION = -1111

    def __init__(self, code: int, message: str, status_code: int | None = None):
        super().__init__(f"[{code}] {message}")
        self.code = int(code)
        self.message = message
        self.status_code = status_code
