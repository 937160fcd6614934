"""Error taxonomy shared by the delivery engine, the preview broker and the API.

Each error carries the HTTP status it maps to and a short machine code that is
returned as ``{"detail": code}``. Grant errors (not found, expired, exhausted,
deleted) are terminal and never retried.
"""

from __future__ import annotations


class ShareGateError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


class GrantNotFound(ShareGateError):
    status_code = 404
    code = "not_found"


class GrantDeleted(ShareGateError):
    # soft-deleted grants look like missing ones to the public
    status_code = 404
    code = "deleted"


class GrantExpired(ShareGateError):
    status_code = 410
    code = "expired"


class QuotaExhausted(ShareGateError):
    status_code = 410
    code = "download_limit_reached"


class BlobMissing(ShareGateError):
    status_code = 404
    code = "blob_missing"


class RangeNotSatisfiable(ShareGateError):
    status_code = 416
    code = "range_not_satisfiable"

    def __init__(self, size: int) -> None:
        super().__init__(f"range not satisfiable for size {size}")
        self.size = size


class InvalidPreviewToken(ShareGateError):
    status_code = 403
    code = "invalid_preview_token"


class PreviewExpired(ShareGateError):
    status_code = 410
    code = "preview_expired"


class PreviewExhausted(ShareGateError):
    status_code = 410
    code = "preview_used"


class PreviewNotSupported(ShareGateError):
    status_code = 415
    code = "not_previewable"


class TransientStoreError(ShareGateError):
    status_code = 500
    code = "store_unavailable"

    def __init__(self, store: str, message: str | None = None) -> None:
        super().__init__(message or f"{store} unavailable")
        self.store = store


class InvalidUpload(ShareGateError):
    status_code = 400
    code = "invalid_upload"


class UploadTooLarge(ShareGateError):
    status_code = 413
    code = "file_too_large"


class PermissionDenied(ShareGateError):
    status_code = 403
    code = "forbidden"
