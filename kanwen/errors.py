"""
Exception taxonomy for Kanwen.

Image processing and playback failures are recovered where they occur.
Recognition failures propagate to the scan orchestrator as one of three
user-presentable categories.
"""


class KanwenError(Exception):
    """Base exception for Kanwen errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        detail: str = None,
    ):
        self.message = message
        self.code = code
        self.detail = detail
        super().__init__(message)


class ImageProcessingFailure(KanwenError):
    """Image could not be decoded, resized or re-encoded."""

    def __init__(self, message: str, detail: str = None):
        super().__init__(
            message=message,
            code="IMAGE_PROCESSING_FAILED",
            detail=detail,
        )


class RecognitionError(KanwenError):
    """Base class for recognition backend failures."""


class RecognitionRateLimited(RecognitionError):
    """Backend quota or request rate exhausted."""

    def __init__(self, detail: str = None):
        super().__init__(
            message="API 請求頻率達到限制，請稍等幾秒後重試。",
            code="RATE_LIMITED",
            detail=detail,
        )


class RecognitionInputInvalid(RecognitionError):
    """Image payload malformed, corrupt or of an unsupported type."""

    def __init__(self, message: str = None, detail: str = None):
        super().__init__(
            message=message or "影像格式不相容或數據受損，請嘗試重新拍照。",
            code="INVALID_IMAGE",
            detail=detail,
        )


class RecognitionUnavailable(RecognitionError):
    """Unclassified backend failure."""

    def __init__(self, message: str, detail: str = None):
        super().__init__(
            message=message,
            code="RECOGNITION_FAILED",
            detail=detail,
        )


class PlaybackFailure(KanwenError):
    """Speech synthesis failed."""

    def __init__(self, message: str, detail: str = None):
        super().__init__(
            message=message,
            code="PLAYBACK_FAILED",
            detail=detail,
        )
