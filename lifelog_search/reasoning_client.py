"""HTTP reasoning collaborator.

Talks to an external reasoning service that ranks candidate documents for
complex analytical queries. The service is optional: ``is_available`` probes
``GET /health`` and the orchestrator falls back to hybrid search whenever the
probe or the call fails.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from lifelog_search.models import Document
from lifelog_search.service_interfaces import ReasoningCollaboratorInterface, ReasoningUnavailableError

# Configure logging
logger = logging.getLogger(__name__)


class HttpReasoningClient(ReasoningCollaboratorInterface):
    """Reasoning collaborator reached over HTTP."""

    def __init__(self, base_url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        """Initialize the client.

        Args:
            base_url: Base URL of the reasoning service
            timeout: Request timeout in seconds
            client: Optional preconfigured httpx client
        """
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def is_available(self) -> bool:
        try:
            response = await self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Reasoning service health probe failed: {str(e)}")
            return False

    async def execute_complex_search(
        self,
        query: str,
        candidates: List[Document],
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Ask the reasoning service to rank candidates.

        The service answers with ranked candidate ids; they are mapped back to
        the candidate documents, unknown ids dropped.

        Raises:
            ReasoningUnavailableError: If the request fails or is rejected
        """
        payload = {
            "query": query,
            "documents": [
                {
                    "id": document.id,
                    "title": document.title,
                    "content": document.content,
                    "created_at": document.created_at.isoformat(),
                }
                for document in candidates
            ],
            "options": options or {},
        }

        try:
            response = await self.client.post(f"{self.base_url}/search", json=payload)
        except httpx.HTTPError as e:
            raise ReasoningUnavailableError(f"Reasoning request failed: {str(e)}") from e

        if response.status_code != 200:
            raise ReasoningUnavailableError(f"Reasoning service returned {response.status_code}: {response.text}")

        data = response.json()
        by_id = {document.id: document for document in candidates}
        ranked = [by_id[document_id] for document_id in data.get("result_ids", []) if document_id in by_id]
        logger.debug(f"Reasoning service ranked {len(ranked)} of {len(candidates)} candidates")

        return {
            "results": ranked,
            "insights": data.get("insights"),
            "action_items": data.get("action_items"),
            "summary": data.get("summary"),
            "confidence": data.get("confidence", 0.0),
        }

    async def close(self) -> None:
        await self.client.aclose()
