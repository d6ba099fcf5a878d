import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class MetricKind(str, Enum):
    # Value doubles as the last topic segment: <workspace>/plant/<value>
    WATER_LEVEL = "water"
    SOIL_MOISTURE = "soil"
    TEMPERATURE = "temperature"
    LIGHT = "light"


# Payload field carried on the bus for each kind, and its rounding (None = integer)
PAYLOAD_FIELDS: Dict[MetricKind, str] = {
    MetricKind.WATER_LEVEL: "level",
    MetricKind.SOIL_MOISTURE: "moisture",
    MetricKind.TEMPERATURE: "celsius",
    MetricKind.LIGHT: "lux",
}

_DECIMALS: Dict[MetricKind, Optional[int]] = {
    MetricKind.WATER_LEVEL: None,
    MetricKind.SOIL_MOISTURE: None,
    MetricKind.TEMPERATURE: 1,
    MetricKind.LIGHT: None,
}


def now_ms() -> int:
    return int(time.time() * 1000)


def topic_for(workspace: str, kind: MetricKind) -> str:
    return f"{workspace}/plant/{kind.value}"


class TelemetrySample(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: MetricKind
    value: float
    timestamp: int  # ms since epoch

    def to_payload(self) -> Dict[str, Any]:
        """Bus payload, e.g. {"level": 52, "timestamp": 1700000000000}."""
        decimals = _DECIMALS[self.kind]
        shown = int(round(self.value)) if decimals is None else round(self.value, decimals)
        return {PAYLOAD_FIELDS[self.kind]: shown, "timestamp": self.timestamp}


class Envelope(BaseModel):
    """What the bus adapter wraps around every published payload."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    block: Optional[int] = None
    sender: Optional[str] = None
    receivers: list = Field(default_factory=list)
    timestamp: Optional[int] = None
    payload: Any = None


def extract_payload(event: Any) -> Any:
    """Unwrap a received bus event.

    Precedence: event["payload"], then event["data"], then the event itself.
    Null fields count as absent. Non-mapping events come back unchanged, so
    unwrapping an already unwrapped reading is a no-op.
    """
    if not isinstance(event, dict):
        return event
    if event.get("payload") is not None:
        return event["payload"]
    if event.get("data") is not None:
        return event["data"]
    return event


def message_id(event: Any) -> Optional[str]:
    if not isinstance(event, dict):
        return None
    mid = event.get("id")
    if mid is None:
        mid = event.get("idem")
    return None if mid is None else str(mid)


# ---- Push channel frames ----

class ClientEvent(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


class PlanSelected(BaseModel):
    plan: str
    price: Optional[float] = None
    timestamp: Optional[int] = None


class PlanPurchased(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    timestamp: Optional[int] = None


class WaterReading(BaseModel):
    level: float
    timestamp: Optional[int] = None


class SoilReading(BaseModel):
    moisture: float
    timestamp: Optional[int] = None


class TemperatureReading(BaseModel):
    celsius: float
    timestamp: Optional[int] = None


class LightReading(BaseModel):
    lux: float
    timestamp: Optional[int] = None


READING_MODELS = {
    MetricKind.WATER_LEVEL: WaterReading,
    MetricKind.SOIL_MOISTURE: SoilReading,
    MetricKind.TEMPERATURE: TemperatureReading,
    MetricKind.LIGHT: LightReading,
}


class ConnectResponse(BaseModel):
    url: str


PLANS = ("basic", "pro")


def validate_client_event(data: Any) -> ClientEvent:
    """Validate and return a ClientEvent pydantic model."""
    return ClientEvent.model_validate(data)
