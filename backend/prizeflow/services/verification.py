"""Client for the external match verification service.

Two calls drive settlement:

- POST /matches/validate-match-history: did the expected roster play the
  expected map at the expected time?
- POST /matches/leaderboard: final placements, best first.

Both take the same body::

    {"players": [{"name", "tag", "region", "platform"}],
     "expected_start_time": "2026-10-19T18:00:00",
     "expected_map": "Ascent"}

Anything other than a well-formed 2xx answer raises VerificationUnavailable,
which is never the same thing as a verdict of validation_passed=false.
"""

from datetime import datetime, timezone
from typing import Any, Sequence, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from prizeflow.config import Settings
from prizeflow.logging_config import get_logger
from prizeflow.utils.errors import VerificationUnavailable
from prizeflow.utils.http_client import AsyncHttpClient

logger = get_logger(__name__)

ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


class RosterEntry(BaseModel):
    """A player as the verification service knows them."""

    name: str
    tag: str
    region: str
    platform: str


class ValidationResult(BaseModel):
    """Verdict of validate-match-history."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    passed: bool = Field(alias="validation_passed")
    match_id: str | int | None = None
    message: str | None = None
    percentage_with_match: float | None = None


class PlayerInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    tag: str
    platform: str
    region: str

    @property
    def identity_key(self) -> tuple[str, str, str, str]:
        return (self.name, self.tag, self.platform, self.region)

    @property
    def display_name(self) -> str:
        return f"{self.name}#{self.tag}"


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    player_info: PlayerInfo
    kills: int | None = None
    average_combat_score: float | None = None


class Leaderboard(BaseModel):
    """Placements as ranked by the service; entries[0] finished first."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    match_id: str | int | None = None
    match_map: str | None = Field(default=None, alias="map")
    total_players: int | None = None
    entries: list[LeaderboardEntry] = Field(alias="leaderboard")
    non_participants: list[Any] = Field(default_factory=list)


def format_expected_start_time(start: datetime) -> str:
    """ISO-8601 in UTC without timezone suffix or fractional seconds."""
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return start.astimezone(timezone.utc).replace(tzinfo=None).isoformat(timespec="seconds")


class MatchVerificationClient:
    """Async client for the verification service.

    Usage:
        async with MatchVerificationClient.from_settings(settings) as client:
            result = await client.validate(roster, start, "Ascent")
    """

    VALIDATE_PATH = "/matches/validate-match-history"
    LEADERBOARD_PATH = "/matches/leaderboard"

    def __init__(self, http: AsyncHttpClient):
        self._http = http

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "MatchVerificationClient":
        return cls(
            AsyncHttpClient(
                base_url=settings.verification_service_url,
                timeout=settings.verification_timeout_seconds,
                connect_timeout=settings.verification_connect_timeout_seconds,
                max_retries=settings.verification_max_retries,
                transport=transport,
            )
        )

    async def __aenter__(self) -> "MatchVerificationClient":
        await self._http.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self._http.__aexit__(exc_type, exc_val, exc_tb)

    @staticmethod
    def build_request(
        roster: Sequence[RosterEntry],
        expected_start_time: datetime,
        expected_map: str,
    ) -> dict[str, Any]:
        return {
            "players": [entry.model_dump() for entry in roster],
            "expected_start_time": format_expected_start_time(expected_start_time),
            "expected_map": expected_map,
        }

    async def validate(
        self,
        roster: Sequence[RosterEntry],
        expected_start_time: datetime,
        expected_map: str,
    ) -> ValidationResult:
        """Ask whether the roster played the expected match.

        Raises:
            VerificationUnavailable: No usable verdict could be obtained
        """
        payload = self.build_request(roster, expected_start_time, expected_map)
        result = await self._post(self.VALIDATE_PATH, payload, ValidationResult)
        logger.info(
            "match_validation_received",
            passed=result.passed,
            match_id=result.match_id,
            percentage_with_match=result.percentage_with_match,
            verification_message=result.message,
        )
        return result

    async def leaderboard(
        self,
        roster: Sequence[RosterEntry],
        expected_start_time: datetime,
        expected_map: str,
    ) -> Leaderboard:
        """Fetch placements for a validated match, best first.

        Raises:
            VerificationUnavailable: No usable leaderboard could be obtained
        """
        payload = self.build_request(roster, expected_start_time, expected_map)
        board = await self._post(self.LEADERBOARD_PATH, payload, Leaderboard)
        logger.info(
            "leaderboard_received",
            match_id=board.match_id,
            total_players=board.total_players,
            entries=len(board.entries),
        )
        return board

    async def _post(
        self,
        path: str,
        payload: dict[str, Any],
        model: type[ResponseModel],
    ) -> ResponseModel:
        try:
            body = await self._http.post_json(path, payload)
        except httpx.HTTPStatusError as e:
            raise VerificationUnavailable(
                f"{path} returned HTTP {e.response.status_code}: {e.response.text[:200]}",
                status_code=e.response.status_code,
                endpoint=path,
            ) from e
        except httpx.TimeoutException as e:
            raise VerificationUnavailable(f"{path} timed out", endpoint=path) from e
        except httpx.RequestError as e:
            raise VerificationUnavailable(f"{path} request failed: {e}", endpoint=path) from e
        except ValueError as e:
            raise VerificationUnavailable(f"{path} returned invalid JSON", endpoint=path) from e

        try:
            return model.model_validate(body)
        except ValidationError as e:
            raise VerificationUnavailable(
                f"{path} returned an unexpected body: {e.error_count()} error(s)",
                endpoint=path,
            ) from e
