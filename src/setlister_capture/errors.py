"""Error taxonomy shared by the capture, storage and upload layers."""
from __future__ import annotations


class CaptureError(RuntimeError):
    """Base class for failures surfaced by a capture session."""

    kind = "capture-error"
    retryable = False
    default_message = "Something went wrong with the recording."

    def __init__(self, detail: str | None = None, *, user_message: str | None = None) -> None:
        super().__init__(detail or self.default_message)
        self.user_message = user_message or self.default_message

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "detail": str(self),
            "message": self.user_message,
            "retryable": self.retryable,
        }


class DeviceDenied(CaptureError):
    """The user declined access to the microphone."""

    kind = "device-denied"
    default_message = (
        "Microphone access denied. Please allow microphone access and start the recording again."
    )


class DeviceUnavailable(CaptureError):
    """No usable capture hardware is present."""

    kind = "device-unavailable"
    default_message = "No microphone found. Please connect a microphone and try again."


class CaptureFault(CaptureError):
    """The device failed while a session was recording."""

    kind = "capture-fault"
    default_message = "Recording error occurred. The recording has been stopped."


class StorageFault(CaptureError):
    """The local durable store could not be read or written."""

    kind = "storage-fault"
    default_message = "Local storage is unavailable, so the recording cannot be kept safe."


class QuotaExceeded(CaptureError):
    """The server refused the upload for policy reasons (HTTP 413)."""

    kind = "quota-exceeded"
    default_message = (
        "Storage quota exceeded. Free up space or upgrade your plan, then retry the upload. "
        "Your recording is saved on this device."
    )


class TransientTransferFault(CaptureError):
    """A network or server error interrupted the upload."""

    kind = "transient-transfer-fault"
    retryable = True
    default_message = (
        "Upload failed. Your recording is saved on this device and the upload can be retried."
    )


class ResumeFault(CaptureError):
    """The device could not be re-acquired after a restart."""

    kind = "resume-fault"
    default_message = "Could not resume recording. The recording has been stopped."


class SessionBusyError(CaptureError):
    """Raised when a second session is requested while one is active."""

    kind = "session-busy"
    default_message = "A recording is already in progress."


class InvalidTransitionError(CaptureError):
    """Raised when an operation is not valid in the current session state."""

    kind = "invalid-transition"
    default_message = "That action is not available right now."


class ResourceWarningError(CaptureError):
    """Raised when the resource guard warns and the caller did not override it."""

    kind = "resource-warning"
    default_message = (
        "This device is low on memory. Long recordings may fail; start anyway to continue."
    )

    def __init__(self, report: object, detail: str | None = None) -> None:
        super().__init__(detail)
        self.report = report

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        to_dict = getattr(self.report, "to_dict", None)
        if callable(to_dict):
            payload["report"] = to_dict()
        return payload


__all__ = [
    "CaptureError",
    "CaptureFault",
    "DeviceDenied",
    "DeviceUnavailable",
    "InvalidTransitionError",
    "QuotaExceeded",
    "ResourceWarningError",
    "ResumeFault",
    "SessionBusyError",
    "StorageFault",
    "TransientTransferFault",
]
