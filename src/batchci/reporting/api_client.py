# api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Optional
from urllib.parse import urljoin

from batchci.errors import BatchCIError
from batchci.model import RunReport

from .serialize import report_to_dict


class ReportClientError(BatchCIError):
    """Raised when the report archive cannot be reached or rejects a report."""
    pass


class ReportClient:
    """HTTP client handing finished run reports to the archive service."""

    def __init__(self, base_url: str, *, timeout: float = 10.0):
        """
        Initialize report client.

        Args:
            base_url: Base URL of the archive (e.g., "http://localhost:8000")
            timeout: Socket timeout in seconds for each request
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
    ) -> dict:
        """
        Make an HTTP request to the archive.

        Returns:
            Parsed JSON response as dictionary

        Raises:
            ReportClientError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))

        req_data = None
        if data is not None:
            req_data = json.dumps(data).encode("utf-8")

        req = urllib.request.Request(
            url,
            data=req_data,
            headers={"Content-Type": "application/json"},
            method=method,
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
                if body:
                    return json.loads(body)
                return {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise ReportClientError(f"Archive request failed: {e.code} {e.reason}. {error_body}".rstrip())
        except urllib.error.URLError as e:
            raise ReportClientError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise ReportClientError(f"Invalid JSON response: {e}")

    def submit(self, report: RunReport, *, pipeline: str | None = None) -> str:
        """
        Archive a report.

        Returns:
            The run id the archive stored it under.
        """
        response = self._request("POST", "/reports", data=report_to_dict(report, pipeline=pipeline))
        run_id = response.get("run_id")
        if not run_id:
            raise ReportClientError("Archive response did not include a run_id")
        return str(run_id)
