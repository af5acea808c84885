"""
Face similarity client.
Compares a stored reference photo with a freshly captured one through the
face matching HTTP service.
"""
from typing import Optional

import httpx

from ..config import settings
from ..errors import ExternalServiceError


class FaceMatchClient:
    """
    Client for the face matching service.

    The service answers POST /compare with {"similarity": 0..100}.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.face_match_url or "").rstrip("/")
        self.api_key = api_key or settings.face_match_api_key
        self.timeout_s = timeout_s if timeout_s is not None else settings.face_match_timeout_s
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def similarity(self, reference: str, candidate: str) -> float:
        """
        Score how likely two photos show the same person.

        Args:
            reference: Stored reference photo (URL or base64)
            candidate: Photo submitted with the clock event

        Returns:
            Similarity score between 0 and 100

        Raises:
            ExternalServiceError: on timeout, transport error, bad status or malformed body
        """
        if not self.base_url:
            raise ExternalServiceError("FACE_MATCH_URL is not configured")

        try:
            with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/compare",
                    headers=self._headers(),
                    json={"reference": reference, "candidate": candidate},
                )
                response.raise_for_status()
                score = float(response.json()["similarity"])
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(f"Face matching timed out after {self.timeout_s}s") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Face matching failed: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise ExternalServiceError("Face matching returned an unreadable response") from exc

        if not 0 <= score <= 100:
            raise ExternalServiceError(f"Face matching returned out-of-range score {score}")
        return score
