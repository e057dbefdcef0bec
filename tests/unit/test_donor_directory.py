"""Unit tests for matching donor directories."""

import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from src.models import utc_now
from src.pledgematch.directory import (
    JsonFileDonorDirectory,
    PayloadDonorDirectory,
    StaticDonorDirectory,
)
from src.pledgematch.errors import DirectoryUnavailableError


def payload_doc(doc_id, **overrides):
    now = utc_now()
    doc = {
        "id": doc_id,
        "name": f"Sponsor {doc_id}",
        "matchingType": "all-projects",
        "totalMatchingAmount": 500,
        "multiplier": 2,
        "supportedProjects": [],
        "startDate": (now - timedelta(days=1)).isoformat(),
        "endDate": (now + timedelta(days=1)).isoformat(),
        "status": "active",
    }
    doc.update(overrides)
    return doc


@pytest.mark.unit
class TestStaticAndJsonDirectories:
    """Test the in-memory and file-backed directories."""

    @pytest.mark.asyncio
    async def test_active_filter_keeps_listing_order(self, make_donor):
        """Test that eligibility filtering preserves directory order."""
        directory = StaticDonorDirectory(
            [make_donor("b"), make_donor("x", status="inactive"), make_donor("a")]
        )

        donors = await directory.list_active_matching_donors()

        assert [d.id for d in donors] == ["b", "a"]
        assert len(await directory.list_matching_donors()) == 3

    @pytest.mark.asyncio
    async def test_json_file(self, tmp_path):
        """Test loading donors from a JSON file."""
        now = utc_now()
        path = tmp_path / "donors.json"
        path.write_text(
            json.dumps(
                {
                    "matching_donors": [
                        {
                            "id": "D1",
                            "name": "Fund",
                            "matching_type": "per-project",
                            "total_matching_amount": "250.50",
                            "multiplier": None,
                            "supported_project_slugs": ["proj-a"],
                            "start_date": (now - timedelta(days=1)).isoformat(),
                            "end_date": (now + timedelta(days=1)).isoformat(),
                        }
                    ]
                }
            )
        )

        donors = await JsonFileDonorDirectory(str(path)).list_active_matching_donors()

        assert len(donors) == 1
        assert donors[0].total_matching_amount == Decimal("250.50")
        assert donors[0].multiplier == Decimal(1)
        assert donors[0].supports("proj-a") is True
        assert donors[0].supports("proj-b") is False

    @pytest.mark.asyncio
    async def test_missing_json_file_is_empty(self, tmp_path):
        """Test that a missing file means no donors rather than an error."""
        directory = JsonFileDonorDirectory(str(tmp_path / "absent.json"))

        assert await directory.list_matching_donors() == []

    @pytest.mark.asyncio
    async def test_invalid_json_file(self, tmp_path):
        """Test that a corrupt file is reported as unavailable."""
        path = tmp_path / "donors.json"
        path.write_text("{not json")

        with pytest.raises(DirectoryUnavailableError):
            await JsonFileDonorDirectory(str(path)).list_matching_donors()


@pytest.mark.unit
class TestPayloadDirectory:
    """Test the Payload CMS directory against a mocked transport."""

    @pytest.mark.asyncio
    async def test_paginates_and_maps_documents(self):
        """Test that every page is fetched and documents become donors."""
        pages = {
            1: [
                payload_doc(1, webflowId="wf-1"),
                payload_doc(
                    2,
                    matchingType="per-project",
                    supportedProjects=[{"id": 10, "slug": "proj-a"}, 11],
                    multiplier=None,
                ),
            ],
            2: [payload_doc(3)],
        }
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            page = int(request.url.params["page"])
            return httpx.Response(
                200,
                json={"docs": pages[page], "totalDocs": 3, "totalPages": 2, "page": page},
            )

        directory = PayloadDonorDirectory(
            base_url="http://cms.test/api",
            api_token="token-123",
            transport=httpx.MockTransport(handler),
        )

        donors = await directory.list_active_matching_donors()

        assert [d.id for d in donors] == ["wf-1", "2", "3"]
        assert donors[1].supported_project_slugs == ["proj-a"]
        assert donors[1].multiplier == Decimal(1)
        assert len(requests) == 2
        assert requests[0].url.params["where[status][equals]"] == "active"
        assert requests[0].url.params["limit"] == "100"
        assert requests[0].url.params["depth"] == "2"
        assert requests[0].headers["Authorization"] == "Bearer token-123"

    @pytest.mark.asyncio
    async def test_expired_documents_filtered(self):
        """Test that active-status donors outside their window are dropped."""
        expired = payload_doc(1, endDate=(utc_now() - timedelta(days=1)).isoformat())

        def handler(request):
            return httpx.Response(200, json={"docs": [expired, payload_doc(2)], "totalPages": 1})

        directory = PayloadDonorDirectory(
            base_url="http://cms.test/api", api_token="", transport=httpx.MockTransport(handler)
        )

        assert [d.id for d in await directory.list_active_matching_donors()] == ["2"]

    @pytest.mark.asyncio
    async def test_http_error_is_unavailable(self):
        """Test that a CMS failure is surfaced rather than treated as no donors."""

        def handler(request):
            return httpx.Response(503, text="maintenance")

        directory = PayloadDonorDirectory(
            base_url="http://cms.test/api", api_token="", transport=httpx.MockTransport(handler)
        )

        with pytest.raises(DirectoryUnavailableError):
            await directory.list_matching_donors()

    @pytest.mark.asyncio
    async def test_error_body_is_unavailable(self):
        """Test that a Payload errors response is rejected."""

        def handler(request):
            return httpx.Response(200, json={"errors": [{"message": "Forbidden"}]})

        directory = PayloadDonorDirectory(
            base_url="http://cms.test/api", api_token="", transport=httpx.MockTransport(handler)
        )

        with pytest.raises(DirectoryUnavailableError):
            await directory.list_matching_donors()

    @pytest.mark.asyncio
    async def test_incomplete_document_is_unavailable(self):
        """Test that a donor missing required fields fails the snapshot."""
        broken = payload_doc(1)
        del broken["totalMatchingAmount"]

        def handler(request):
            return httpx.Response(200, json={"docs": [broken], "totalPages": 1})

        directory = PayloadDonorDirectory(
            base_url="http://cms.test/api", api_token="", transport=httpx.MockTransport(handler)
        )

        with pytest.raises(DirectoryUnavailableError):
            await directory.list_matching_donors()
