"""Domain errors raised by the submission workflow.

Enrichment failures never appear here: they are absorbed inside the
enrichment service and replaced by fallback values.
"""

from typing import Optional


class PortalError(Exception):
    status_code = 500
    message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_detail(self) -> dict:
        return {"message": self.message}


class IssueValidationError(PortalError):
    status_code = 400

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field

    def to_detail(self) -> dict:
        return {"field": self.field, "message": self.message}


class AssetUploadError(PortalError):
    status_code = 502
    message = "Image upload failed. Please try submitting again."


class IssuePersistenceError(PortalError):
    status_code = 500
    message = "Could not save your report. Please try again."
