"""Cloud API error hierarchy.

Kept small and dependency-free so steps can classify failures by ``code``
without touching httpx.Response objects (or credentials).
"""

from __future__ import annotations

from typing import Any


class CloudAPIError(Exception):
    """Provider rejected a request; ``code`` is the provider error code."""

    def __init__(
        self,
        code: str,
        message: str = "",
        *,
        status_code: int = 0,
        request_id: str | None = None,
        action: str | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.request_id = request_id
        self.action = action
        prefix = f"{action} failed" if action else "Cloud API error"
        bits = [f"code={code}"]
        if status_code:
            bits.append(f"status={status_code}")
        if message:
            bits.append(message)
        super().__init__(f"{prefix}: {' '.join(bits)}")


class CloudTimeoutError(CloudAPIError):
    """Request to the provider timed out at the transport level."""

    def __init__(self, message: str = "Request timed out", **kwargs: Any) -> None:
        super().__init__("RequestTimeout", message, **kwargs)
