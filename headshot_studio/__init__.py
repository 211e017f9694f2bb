from .studio import (
    GeminiImageClient,
    HeadshotError,
    HeadshotStudio,
    ImagePayload,
    NoImageReturned,
    OptionSelection,
    PreconditionError,
    ReadError,
    TransportError,
    ViewState,
)

__all__ = [
    "GeminiImageClient",
    "HeadshotError",
    "HeadshotStudio",
    "ImagePayload",
    "NoImageReturned",
    "OptionSelection",
    "PreconditionError",
    "ReadError",
    "TransportError",
    "ViewState",
]
