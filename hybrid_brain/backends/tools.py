from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

logger = logging.getLogger(__name__)

OPEN_METEO_GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
OPEN_METEO_FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
WEATHER_TIMEOUT = httpx.Timeout(5.0)


@runtime_checkable
class AgentTool(Protocol):
    """A tool callable by the model. ``parameters`` is a JSON schema object."""

    name: str
    description: str
    parameters: dict[str, Any]

    async def invoke(self, arguments: dict[str, Any]) -> str: ...


class ToolRegistry:
    def __init__(self, tools: Iterable[AgentTool] = ()) -> None:
        self._tools: dict[str, AgentTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: AgentTool) -> None:
        if tool.name in self._tools:
            logger.warning("Tool %s registered twice, keeping the latest", tool.name)
        self._tools[tool.name] = tool

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def openai_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in self._tools.values()
        ]

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> str:
        """Run a tool. Failures come back as text for the model, not as exceptions."""
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Model requested unknown tool %s", name)
            return f"Error: unknown tool '{name}'. Available tools: {', '.join(self._tools)}"
        try:
            return await tool.invoke(arguments)
        except Exception as e:
            logger.warning("Tool %s failed: %s: %s", name, type(e).__name__, e)
            return f"Error: tool '{name}' failed: {e}"

    async def cleanup(self) -> None:
        for tool in self._tools.values():
            close = getattr(tool, "cleanup", None)
            if close is None:
                continue
            try:
                outcome = close()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning("Tool %s cleanup failed: %s", tool.name, e)


class WeatherTool:
    name = "get_weather"
    description = "Get the current weather for a city, or for a latitude/longitude pair."
    parameters: dict[str, Any] = {
        "type": "object",
        "properties": {
            "location": {"type": "string", "description": "City name, e.g. 'Lisbon'"},
            "latitude": {"type": "number"},
            "longitude": {"type": "number"},
        },
    }

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self._client = http_client
        self._owns_client = http_client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=WEATHER_TIMEOUT)
        return self._client

    async def _geocode(self, location: str) -> tuple[float, float, str] | None:
        response = await self._http().get(
            OPEN_METEO_GEOCODING_URL, params={"name": location, "count": 1}
        )
        response.raise_for_status()
        results = response.json().get("results") or []
        if not results:
            return None
        top = results[0]
        label = ", ".join(p for p in (top.get("name"), top.get("country")) if p)
        return float(top["latitude"]), float(top["longitude"]), label or location

    async def invoke(self, arguments: dict[str, Any]) -> str:
        latitude = arguments.get("latitude")
        longitude = arguments.get("longitude")
        label = arguments.get("location") or ""
        try:
            if latitude is None or longitude is None:
                if not label:
                    return "Error: provide a location or latitude/longitude."
                found = await self._geocode(label)
                if found is None:
                    return f"No location found matching '{label}'."
                latitude, longitude, label = found
            response = await self._http().get(
                OPEN_METEO_FORECAST_URL,
                params={
                    "latitude": latitude,
                    "longitude": longitude,
                    "current": "temperature_2m,relative_humidity_2m,wind_speed_10m",
                    "timezone": "auto",
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Weather lookup failed: %s", e)
            return f"Error: failed to fetch weather data - {e}"

        current = response.json().get("current") or {}
        return json.dumps(
            {
                "location": label or f"{latitude},{longitude}",
                "temperature_c": current.get("temperature_2m"),
                "humidity_pct": current.get("relative_humidity_2m"),
                "wind_kmh": current.get("wind_speed_10m"),
                "observed_at": current.get("time"),
            }
        )

    async def cleanup(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class RequestSuggestionsTool:
    name = "get_request_suggestions"
    description = "Suggest follow-up requests that help the user accomplish their goal."
    parameters: dict[str, Any] = {
        "type": "object",
        "properties": {
            "context": {"type": "string", "description": "The current conversation context"},
            "user_intent": {"type": "string", "description": "What the user is trying to do"},
        },
        "required": ["user_intent"],
    }

    async def invoke(self, arguments: dict[str, Any]) -> str:
        intent = str(arguments.get("user_intent") or arguments.get("context") or "this").strip()
        return "\n".join(
            [
                f'Try asking: "Can you help me with {intent}?"',
                f'You might want to: "Show me examples of {intent}"',
                f'Consider: "What are the best practices for {intent}?"',
            ]
        )


class CurrentTimeTool:
    name = "get_current_time"
    description = "Get the current date and time in the user's timezone."
    parameters: dict[str, Any] = {
        "type": "object",
        "properties": {
            "timezone": {"type": "string", "description": "IANA timezone, e.g. 'Europe/Lisbon'"},
        },
    }

    def __init__(self, default_timezone: str = "UTC") -> None:
        self.default_timezone = default_timezone

    async def invoke(self, arguments: dict[str, Any]) -> str:
        tz_name = arguments.get("timezone") or self.default_timezone
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            tz_name, tz = "UTC", UTC
        now = datetime.now(tz)
        return f"{now.strftime('%A, %Y-%m-%d %H:%M')} ({tz_name})"


def direct_toolset(http_client: httpx.AsyncClient | None = None) -> list[AgentTool]:
    return [WeatherTool(http_client), RequestSuggestionsTool()]


def agent_toolset(
    timezone: str = "UTC",
    extra: Iterable[AgentTool] = (),
    http_client: httpx.AsyncClient | None = None,
) -> list[AgentTool]:
    return [*direct_toolset(http_client), CurrentTimeTool(timezone), *extra]
