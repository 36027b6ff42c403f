class BitacoraError(Exception):
    """Base class for every error raised by the record stores and engines."""


class ValidationError(BitacoraError, ValueError):
    pass


class NotFoundError(BitacoraError):
    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class NotAuthenticatedError(BitacoraError):
    code = "NOT_AUTHENTICATED"


class AccessDeniedError(BitacoraError):
    code = "ACCESS_DENIED"


class StoreError(BitacoraError):
    pass


class TransientStoreError(StoreError):
    """A store failure that may succeed when retried (network, throttling, contention)."""

    def __init__(self, message: str, code: str = "UNAVAILABLE") -> None:
        super().__init__(message)
        self.code = code


class ChecksumMismatchError(BitacoraError):
    LAYER_LABELS = {
        "financial": "datos financieros",
        "metadata": "metadatos",
        "emotional": "datos emocionales",
    }

    def __init__(self, layer: str) -> None:
        label = self.LAYER_LABELS.get(layer, layer)
        super().__init__(f"Checksum de {label} no coincide (posible corrupción)")
        self.layer = layer
