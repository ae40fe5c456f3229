from typing import Any, Dict, List, Optional


class ChatError(Exception):

    code = "chat_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.detail}


class ValidationError(ChatError):
    """Rejected before any write happened."""

    code = "validation_error"


class StorageError(ChatError):

    code = "storage_unavailable"


class WriteError(StorageError):

    code = "write_failed"


class ReadError(StorageError):

    code = "read_failed"


class SubscriptionClosedError(ChatError):

    code = "subscription_closed"


class DeliveryFailure:

    def __init__(self, side: str, step: str, error: str) -> None:
        self.side = side  # "sender" | "recipient"
        self.step = step  # "append" | "recents"
        self.error = error

    def to_dict(self) -> Dict[str, str]:
        return {"side": self.side, "step": self.step, "error": self.error}

    def __repr__(self) -> str:
        return f"DeliveryFailure(side={self.side!r}, step={self.step!r})"


class PartialDeliveryError(ChatError):
    """
    The sender's copy was persisted but some later fan-out step kept failing.

    The message id is stable, so a reconciliation pass can replay the
    missing steps without creating duplicates.
    """

    code = "partial_delivery"

    def __init__(self, receipt: Any, failures: List[DeliveryFailure]) -> None:
        sides = ", ".join(sorted({f"{f.side}:{f.step}" for f in failures}))
        super().__init__(f"Message {receipt.message_id} partially delivered ({sides})")
        self.receipt = receipt
        self.failures = failures

    @property
    def recipient_failed(self) -> bool:
        return any(f.side == "recipient" for f in self.failures)

    def failed_steps(self, side: Optional[str] = None) -> List[str]:
        return [f.step for f in self.failures if side is None or f.side == side]

    def to_dict(self) -> Dict[str, Any]:
        body = self.receipt.model_dump(mode="json")
        body["status"] = "partial"
        body["failures"] = [f.to_dict() for f in self.failures]
        return body
