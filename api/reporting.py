"""
Reporting API client.

Posts the per-venue predictions payload (see core.reporting) to the
downstream service.

Usage:
    from api.reporting import ReportingAPI

    api = ReportingAPI()
    api.send_predictions(to_predictions_request("20250525", "05", records))
"""

import os
from typing import Optional, Any
from dataclasses import dataclass
import requests
from dotenv import load_dotenv

from core.logging import get_logger

load_dotenv()

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass
class APIError(Exception):
    """Reporting API error."""
    status_code: int
    message: str


class ReportingAPI:
    """
    Reporting API client.

    Authenticates with a bearer key and raises APIError on any failure.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        """
        Initialize API client.

        Args:
            base_url: Service URL (defaults to REPORTING_API_URL env var)
            api_key: API key (defaults to REPORTING_API_KEY env var)
        """
        self.base_url = (base_url or os.environ.get("REPORTING_API_URL") or "").rstrip("/")
        self.api_key = api_key or os.environ.get("REPORTING_API_KEY")
        if not self.base_url:
            raise ValueError(
                "Base URL required. Set REPORTING_API_URL env var or pass base_url."
            )

    def _post(self, endpoint: str, payload: dict, timeout: int = DEFAULT_TIMEOUT) -> Any:
        """
        POST a JSON payload.

        Raises:
            APIError: If the service returns an error or is unreachable
        """
        url = f"{self.base_url}{endpoint}"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = requests.post(url, json=payload, headers=headers, timeout=timeout)
            response.raise_for_status()
            return response.json() if response.content else {}

        except requests.exceptions.HTTPError as e:
            raise APIError(
                status_code=e.response.status_code,
                message=f"HTTP {e.response.status_code}: {str(e)}",
            ) from e
        except requests.exceptions.RequestException as e:
            raise APIError(status_code=0, message=str(e)) from e

    def send_predictions(self, payload: dict) -> Any:
        """
        Send one venue's predictions.

        Args:
            payload: Output of core.reporting.to_predictions_request()

        Returns:
            Parsed JSON response
        """
        count = len(payload.get("predictions", []))
        logger.info(
            f"Sending {count} predictions",
            extra={"date": payload.get("date"), "track": payload.get("trackCode")},
        )
        return self._post("/predictions", payload)
