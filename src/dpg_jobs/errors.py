"""Exception types shared across the job service."""

from __future__ import annotations


class PersistenceError(RuntimeError):
    """Raised when a record cannot be written to the job database."""


class NotFoundError(LookupError):
    """Raised when a requested record does not exist."""


class ExtractionError(RuntimeError):
    """Raised when technical or embedded metadata cannot be read from an image."""


class FinalizationError(RuntimeError):
    """A finalization phase failed; the message becomes the job's fatal error text."""


class RequestError(RuntimeError):
    """
    Failed call to an external HTTP collaborator.

    Attributes:
        status_code: HTTP status returned (or synthesized for transport errors)
        message: Response body or transport error description
    """

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"{status_code}:{message}")
        self.status_code = status_code
        self.message = message


class ArchiveError(RuntimeError):
    """Raised when the archival store cannot write or verify a file."""


class IiifError(RuntimeError):
    """Raised when a derivative cannot be generated or stored in the IIIF bucket."""


class OrderQAError(RuntimeError):
    """An order failed the delivery readiness checks (approval or fees)."""


class PublishError(RuntimeError):
    """Raised when metadata cannot be published to the discovery system."""


class DeliverableError(RuntimeError):
    """A patron deliverable could not be produced."""


class UnitStateError(RuntimeError):
    """A unit is not in a state that allows the requested operation."""
