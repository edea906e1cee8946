"""Service interfaces for the lifelog search engine.

This module defines the base interface the search service implements, the
contracts of the external collaborators the search core consumes (document
store, vector index, reasoning collaborator), and the error classes shared
across the package.
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from lifelog_search.models import Document


class ServiceRequest(BaseModel):
    """Base model for service requests."""
    request_id: str


class ServiceResponse(BaseModel):
    """Base model for service responses."""
    request_id: str
    status: str
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Error classes
# ---------------------------------------------------------------------------

class LifelogSearchError(Exception):
    """Base error for the search engine"""
    pass

class DocumentStoreUnavailableError(LifelogSearchError):
    """The document store cannot be reached at all"""
    pass

class VectorIndexUnavailableError(LifelogSearchError):
    """The vector index failed to initialize or respond"""
    pass

class ReasoningUnavailableError(LifelogSearchError):
    """The reasoning collaborator is not installed or not reachable"""
    pass

class StrategyExecutionError(LifelogSearchError):
    """A single search strategy failed"""
    pass


# ---------------------------------------------------------------------------
# Service interface
# ---------------------------------------------------------------------------

class ServiceInterface(ABC):
    """Base interface for long-lived search services."""

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        pass

    @abstractmethod
    async def process_request(self, request: ServiceRequest) -> ServiceResponse:
        """Process a service request and return a response."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        pass


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------

class DocumentStoreInterface(ABC):
    """Read-only durable storage of lifelog documents."""

    @abstractmethod
    async def load_all(self) -> List[Document]:
        """Load every stored document."""
        pass

    @abstractmethod
    async def load_by_date_range(self, start: date, end: date) -> List[Tuple[str, date]]:
        """Return (id, date) pairs for documents created within [start, end]."""
        pass

    @abstractmethod
    async def load(self, document_id: str, document_date: date) -> Optional[Document]:
        """Load a single document, or None when it does not exist."""
        pass


class VectorIndexInterface(ABC):
    """Embedding index treated as a black-box similarity search."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the index for use. May raise VectorIndexUnavailableError."""
        pass

    @abstractmethod
    async def search_by_text(
        self,
        query: str,
        top_k: int = 10,
        score_threshold: Optional[float] = None,
        filter_obj: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Similarity search.

        Returns:
            List of dicts with ``id`` and ``score`` and optional ``content``
            and ``metadata`` keys, best match first.
        """
        pass

    @abstractmethod
    async def add_documents(self, documents: Sequence[Dict[str, Any]]) -> None:
        """Upsert documents given as dicts with id, content and metadata."""
        pass

    @abstractmethod
    async def get_documents(self, document_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Fetch stored documents (id, content, metadata) by id."""
        pass

    @abstractmethod
    async def list_document_ids(self) -> List[str]:
        """List the ids of all stored documents."""
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        """Return index statistics, at least ``document_count``."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release any resources held by the index."""
        pass


class ReasoningCollaboratorInterface(ABC):
    """Optional external reasoner used for complex analytical queries."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Probe whether the collaborator can currently be used."""
        pass

    @abstractmethod
    async def execute_complex_search(
        self,
        query: str,
        candidates: List[Document],
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Run a reasoning pass over candidate documents.

        Returns:
            Dict with ``results`` (documents in ranked order), ``insights``,
            optional ``action_items`` and ``summary``, and ``confidence``.
        """
        pass
