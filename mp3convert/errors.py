# mp3convert/errors.py
from __future__ import annotations


class ServiceError(Exception):
    """Base for errors that end up as an ``{"error": ...}`` response."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AdmissionError(ServiceError):
    status_code = 400


class QuotaExceeded(AdmissionError):
    status_code = 403


class ConversionError(ServiceError):
    status_code = 500


class DownloadNotFound(ServiceError):
    status_code = 404


class CleanupError(ServiceError):
    pass


class OriginError(ServiceError):
    status_code = 403
