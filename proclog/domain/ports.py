"""Domain Ports - Abstract Contracts for Logbook Ingestion.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Extractors (pdfplumber, ...) implement TextExtractionPort
    - Record stores (DuckDB, PostgreSQL) implement RecordStorePort
    - Blob stores implement BlobStoragePort
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

from proclog.domain.procedure_record import (
    ComplicationCase,
    ProcedureRecord,
    RecordPatch,
)

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Storage adapters return Result objects so the ingestion service can
    decide which failures are fatal (record writes) and which are only
    logged (blob retention).

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StorageError, ValidationError, etc.)
        error_details: Additional error context (operation, owner_id, etc.)

    Example:
        ```python
        result = store.upsert_records("owner-1", records)
        if result.is_success():
            print(result.value)  # number of rows inserted
        else:
            logger.error(result.error)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result."""
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "StorageError")
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")
        if error_details is None and isinstance(error, StorageError):
            error_details = {"operation": error.operation, **error.details}

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class IngestionError(Exception):
    """Base exception for all ingestion-related errors."""
    pass


class SourceNotFoundError(IngestionError):
    """Raised when the uploaded document cannot be found or read.

    Attributes:
        source: The source identifier that was not found
    """

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class UnsupportedSourceError(IngestionError):
    """Raised when the source is not a document the extractor can handle.

    Attributes:
        source: The source identifier that is unsupported
        adapter: The adapter that cannot handle the source
    """

    def __init__(self, message: str, source: Optional[str] = None, adapter: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.adapter = adapter


class DocumentParseError(IngestionError):
    """Raised when a PDF cannot be opened or has no text layer.

    This is fatal for the upload: no partial extraction is attempted.
    """

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class ValidationError(IngestionError):
    """Raised when a manual edit or complication case fails validation.

    Attributes:
        field: Name of the offending field
        details: Additional error details or validation messages
    """

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.field = field
        self.details = details or {}


class RecordNotFoundError(IngestionError):
    """Raised when an update targets a record the owner does not have."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class StorageError(IngestionError):
    """Raised when a store or blob operation fails.

    Attributes:
        operation: The storage operation that failed
        details: Additional error context
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


# ============================================================================
# Value Types
# ============================================================================

@dataclass(frozen=True)
class TextFragment:
    """A run of text from the PDF text layer with its position.

    Coordinates are in PDF document space: origin bottom-left, y grows upward.
    """
    text: str
    x: float
    y: float


# ============================================================================
# Ports
# ============================================================================

class TextExtractionPort(ABC):
    """Abstract contract for PDF text-layer readers."""

    @abstractmethod
    def extract(self, source: Union[str, bytes]) -> list[list[TextFragment]]:
        """Read a document and return its text fragments, one list per page.

        Parameters:
            source: File path or raw PDF bytes

        Returns:
            list[list[TextFragment]]: Fragments per page in text-layer order

        Raises:
            SourceNotFoundError: If a path source does not exist
            UnsupportedSourceError: If the source is not a PDF
            DocumentParseError: If the PDF cannot be opened or has no text layer
        """
        pass

    @abstractmethod
    def can_extract(self, source: Union[str, bytes]) -> bool:
        """Check if this extractor can handle the given source."""
        pass


class RecordStorePort(ABC):
    """Abstract contract for the persistent procedure record store.

    Implementations must enforce the uniqueness key
    (owner_id, patient_identifier, laterality, procedure, date) as a
    database constraint and must return records in ingestion order.
    """

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        """Create tables, indexes and constraints if they do not exist."""
        pass

    @abstractmethod
    def list_records(self, owner_id: str) -> Result[list[ProcedureRecord]]:
        """Return all records for an owner in ingestion order."""
        pass

    @abstractmethod
    def get_record(self, owner_id: str, record_id: str) -> Result[Optional[ProcedureRecord]]:
        """Return one record, or None if the owner has no such record."""
        pass

    @abstractmethod
    def upsert_records(self, owner_id: str, records: list[ProcedureRecord]) -> Result[int]:
        """Insert records, silently ignoring uniqueness-key duplicates.

        Returns:
            Result[int]: Number of rows actually inserted
        """
        pass

    @abstractmethod
    def update_record(self, owner_id: str, record_id: str, patch: RecordPatch) -> Result[ProcedureRecord]:
        """Apply a patch of mutable fields to one record."""
        pass

    @abstractmethod
    def insert_complication_case(self, owner_id: str, case: ComplicationCase) -> Result[str]:
        """Persist a complication case and return its id."""
        pass

    @abstractmethod
    def update_complication_case(self, owner_id: str, case: ComplicationCase) -> Result[ComplicationCase]:
        """Replace a stored complication case with the given one (matched by id)."""
        pass

    @abstractmethod
    def delete_complication_case(self, owner_id: str, case_id: str) -> Result[bool]:
        """Delete a complication case. Returns True if a row was removed."""
        pass

    @abstractmethod
    def list_complication_cases(self, owner_id: str) -> Result[list[ComplicationCase]]:
        """Return all complication cases for an owner."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release connections."""
        pass


class BlobStoragePort(ABC):
    """Abstract contract for retaining original uploaded documents."""

    @abstractmethod
    def store(self, owner_id: str, filename: str, data: bytes) -> Result[str]:
        """Persist a document and return an opaque path to it."""
        pass
