"""
Builders for remote payloads and a paginated fake of the remote API
"""

import httpx
from ingestion.extractors.remote_client import RemoteRecordClient
from ingestion.extractors.token_manager import TokenManager
from typing import Any, Dict, List, Optional

API_BASE_URL = "https://pp.example.test/api/v2"


def custom_field(label: str, value_type: str, value: Any = None, field_id: Optional[str] = None) -> Dict[str, Any]:
    """One custom_field_values[] entry the way the remote API sends it"""
    item = {
        "custom_field_ref": {"id": field_id or f"cf-{label}", "label": label, "value_type": value_type},
        "value_boolean": False,
    }
    key = {
        "Currency": "value_number",
        "Date": "value_date_time",
        "Checkbox": "value_boolean",
        "Contact": "contact_ref",
    }.get(value_type, "value_string")
    item[key] = value
    return item


def matter(remote_id: str, name: str = "Exchange", custom_fields: Optional[List[Dict[str, Any]]] = None,
           **extra) -> Dict[str, Any]:
    """A remote matter payload"""
    payload = {
        "id": remote_id,
        "display_name": name,
        "status": "Open",
        "account_ref": {"id": "acct-1", "display_name": "Smith Holdings"},
        "created_at": "2025-08-01T09:00:00Z",
        "updated_at": "2025-08-11T15:30:00Z",
        "custom_field_values": custom_fields or [],
    }
    payload.update(extra)
    return payload


class FakeRemote:
    """
    Paginated fake of the remote API served through httpx.MockTransport.

    Pages are served with a total_count envelope; every request is recorded.
    """

    def __init__(self, records: Optional[List[Dict[str, Any]]] = None, page_size: int = 100):
        self.records = records or []
        self.page_size = page_size
        self.requests: List[httpx.Request] = []
        self.responses: List[httpx.Response] = []  # served first, before pages

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        page = int(request.url.params.get("page", 1))
        start = (page - 1) * self.page_size
        return httpx.Response(200, json={
            "data": self.records[start:start + self.page_size],
            "total_count": len(self.records),
        })

    def client(self, sleep=None, **kwargs) -> RemoteRecordClient:
        async def _no_sleep(delay):
            return None

        return RemoteRecordClient(
            base_url=API_BASE_URL,
            token_manager=TokenManager(access_token="test-token"),
            page_size=self.page_size,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
            sleep=sleep or _no_sleep,
            **kwargs
        )


