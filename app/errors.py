# app/errors.py
# Errors that map directly onto an HTTP response


class ApiError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message=None, status_code=None, code=None, details=None):
        if message is not None:
            self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"success": False, "message": self.message}
        if self.code is not None:
            body["code"] = self.code
        if self.details is not None:
            body["details"] = self.details
        return body


# --- client input (400) ---
class ValidationFailed(ApiError):
    status_code = 400
    message = "Invalid request"


# --- configuration ---
class SigningError(ApiError):
    message = "Kling AI credentials are not configured"


class UploadError(ApiError):
    message = "Failed to upload to S3"


# --- Kling AI ---
class UpstreamError(ApiError):
    """Kling answered with an error response; status and body are passed through."""

    message = "Kling AI API error"


class KlingTransportError(ApiError):
    message = "Failed to reach Kling AI API"


class KlingResponseError(ApiError):
    message = "Unexpected response from Kling AI API"


# --- watermark download ---
class TaskNotReady(ApiError):
    status_code = 400
    message = "Video is not ready yet"


class ResultMissing(ApiError):
    status_code = 404
    message = "No video URL found for this task"


class LogoMissing(ApiError):
    message = "Logo file not found on server"


class ResultHostRejected(ApiError):
    status_code = 502
    message = "Result video host is not allowed"


class WatermarkError(ApiError):
    message = "Failed to process video download"
