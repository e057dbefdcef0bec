"""Matching donor directory.

Read-only source of matching donor definitions. The matching engine takes one
snapshot per run through ``list_active_matching_donors``; directory order is
preserved because it is the default budget consumption order.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from src.config import config
from src.logging_utils import get_logger
from src.models import MatchingDonor, utc_now
from src.pledgematch.errors import DirectoryUnavailableError

logger = get_logger(__name__)


class MatchingDonorDirectory(ABC):
    """Base class for matching donor sources."""

    @abstractmethod
    async def list_matching_donors(self) -> List[MatchingDonor]:
        """All donors regardless of status, in listing order."""

    async def list_active_matching_donors(self, now: Optional[datetime] = None) -> List[MatchingDonor]:
        """Donors eligible for allocation at ``now``, in listing order.

        Args:
            now: Evaluation time. Defaults to the current UTC time.
        """
        now = now or utc_now()
        donors = await self.list_matching_donors()
        return [donor for donor in donors if donor.is_eligible(now)]


class StaticDonorDirectory(MatchingDonorDirectory):
    """In-memory directory."""

    def __init__(self, donors: Iterable[MatchingDonor] = ()):
        self.donors = list(donors)

    async def list_matching_donors(self) -> List[MatchingDonor]:
        return list(self.donors)


class JsonFileDonorDirectory(MatchingDonorDirectory):
    """Directory backed by a JSON file of donor records.

    The file holds either a list of records or ``{"matching_donors": [...]}``;
    records use MatchingDonor field names. The file is re-read on every call.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or config.matching_donor_data_path)

    async def list_matching_donors(self) -> List[MatchingDonor]:
        if not self.path.exists():
            logger.warning(f"Matching donor file not found: {self.path}")
            return []

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise DirectoryUnavailableError(f"Invalid matching donor file {self.path}: {e}") from e

        records = data.get("matching_donors", []) if isinstance(data, dict) else data
        try:
            return [MatchingDonor.model_validate(record) for record in records]
        except PydanticValidationError as e:
            raise DirectoryUnavailableError(f"Invalid matching donor record in {self.path}: {e}") from e


class PayloadDonorDirectory(MatchingDonorDirectory):
    """Directory backed by the Payload CMS ``matching-donors`` collection."""

    ENDPOINT = "/matching-donors"
    PAGE_LIMIT = 100

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the Payload CMS directory.

        Args:
            base_url: Payload REST API root (e.g. http://cms:3001/api).
            api_token: Optional bearer token.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = (base_url or config.payload_api_url).rstrip("/")
        self.api_token = (
            api_token if api_token is not None else config.payload_api_token.get_secret_value()
        )
        self.timeout = timeout or config.payload_request_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _fetch_all_pages(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Walk Payload's page/limit pagination until every doc is collected."""
        items: List[Dict[str, Any]] = []
        page = 1

        async with self._client() as client:
            while True:
                request_params = {"depth": 2, **params, "page": page, "limit": self.PAGE_LIMIT}
                try:
                    response = await client.get(self.ENDPOINT, params=request_params)
                    response.raise_for_status()
                    data = response.json()
                except (httpx.HTTPError, ValueError) as e:
                    raise DirectoryUnavailableError(f"Payload CMS request failed: {e}") from e

                if isinstance(data, list):
                    items.extend(data)
                    break
                if not isinstance(data, dict) or data.get("errors"):
                    raise DirectoryUnavailableError(f"Payload CMS returned an error: {data!r:.200}")

                docs = data.get("docs")
                if not isinstance(docs, list):
                    raise DirectoryUnavailableError("Payload CMS response is missing the docs array")
                items.extend(docs)

                total_pages = data.get("totalPages")
                total_docs = data.get("totalDocs")
                if not total_pages or page >= total_pages or (total_docs and len(items) >= total_docs):
                    break
                page += 1

        return items

    @staticmethod
    def _to_donor(doc: Dict[str, Any]) -> MatchingDonor:
        # Unpopulated relations come back as bare ids and carry no slug
        slugs = [
            project["slug"]
            for project in doc.get("supportedProjects") or []
            if isinstance(project, dict) and project.get("slug")
        ]
        return MatchingDonor(
            id=doc.get("webflowId") or str(doc["id"]),
            name=doc.get("name") or "",
            matching_type=doc["matchingType"],
            total_matching_amount=doc["totalMatchingAmount"],
            multiplier=doc.get("multiplier"),
            supported_project_slugs=slugs,
            start_date=doc["startDate"],
            end_date=doc["endDate"],
            status=doc.get("status", "inactive"),
            priority=doc.get("priority") or 0,
        )

    def _to_donors(self, docs: List[Dict[str, Any]]) -> List[MatchingDonor]:
        donors = []
        for doc in docs:
            try:
                donors.append(self._to_donor(doc))
            except (KeyError, PydanticValidationError) as e:
                raise DirectoryUnavailableError(
                    f"Invalid matching donor {doc.get('id')!r} from Payload CMS: {e}"
                ) from e
        return donors

    async def list_matching_donors(self) -> List[MatchingDonor]:
        docs = await self._fetch_all_pages({})
        return self._to_donors(docs)

    async def list_active_matching_donors(self, now: Optional[datetime] = None) -> List[MatchingDonor]:
        now = now or utc_now()
        docs = await self._fetch_all_pages({"where[status][equals]": "active"})
        donors = self._to_donors(docs)
        logger.info(f"Fetched {len(donors)} active matching donors from Payload CMS")
        return [donor for donor in donors if donor.is_eligible(now)]


def create_directory() -> MatchingDonorDirectory:
    """Build the directory selected by config.matching_donor_source."""
    if config.matching_donor_source == "payload":
        return PayloadDonorDirectory()
    return JsonFileDonorDirectory()
