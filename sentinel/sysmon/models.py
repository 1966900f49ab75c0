"""
Process data models shared by the telemetry store, the hierarchy resolver
and the risk classifier pipeline.
"""
from enum import Enum
from typing import List, Set

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer, field_validator


class RiskLevel(str, Enum):
    SAFE = "SAFE"
    SUSPICIOUS = "SUSPICIOUS"
    MALICIOUS = "MALICIOUS"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value) -> "RiskLevel":
        """Maps any classification string onto a RiskLevel, UNKNOWN when unrecognised."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNKNOWN


class ModuleInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: str = ""
    is_signed: bool = Field(default=False, validation_alias=AliasChoices("is_signed", "isSigned"))
    base_address: str = Field(default="", validation_alias=AliasChoices("base_address", "baseAddress"))
    size_kb: int = Field(default=0, ge=0, validation_alias=AliasChoices("size_kb", "sizeKB", "size"))


class ProcessObservation(BaseModel):
    """One process as reported by a snapshot source for a single tick."""

    pid: int
    parent_pid: int = Field(default=0, validation_alias=AliasChoices("parent_pid", "parentPid", "ppid"))
    name: str = ""
    user: str = ""
    session_id: int = Field(default=0, validation_alias=AliasChoices("session_id", "sessionId", "session"))
    executable_path: str = Field(default="", validation_alias=AliasChoices("executable_path", "executablePath", "path"))
    cpu_percent: float = Field(default=0.0, validation_alias=AliasChoices("cpu_percent", "cpuPercent", "cpu"))
    memory_mb: float = Field(default=0.0, validation_alias=AliasChoices("memory_mb", "memoryMB", "memory"))
    disk_io_rate: float = Field(default=0.0, validation_alias=AliasChoices("disk_io_rate", "diskIoRate", "diskIo"))
    network_io_rate: float = Field(
        default=0.0, validation_alias=AliasChoices("network_io_rate", "networkIoRate", "networkIo")
    )
    handle_count: int = Field(default=0, validation_alias=AliasChoices("handle_count", "handleCount"))
    entropy: float = 0.0
    is_signed: bool = Field(default=False, validation_alias=AliasChoices("is_signed", "isSigned"))
    modules: List[ModuleInfo] = Field(default_factory=list)
    tags: Set[str] = Field(default_factory=set)
    risk_level: RiskLevel = Field(default=RiskLevel.UNKNOWN, validation_alias=AliasChoices("risk_level", "riskLevel"))

    @field_validator("parent_pid", mode="before")
    @classmethod
    def _missing_parent_is_root(cls, value):
        return 0 if value is None else value

    @field_validator("cpu_percent")
    @classmethod
    def _clamp_cpu(cls, value: float) -> float:
        return min(100.0, max(0.0, value))

    @field_validator("memory_mb", "disk_io_rate", "network_io_rate")
    @classmethod
    def _clamp_non_negative(cls, value: float) -> float:
        return max(0.0, value)

    @field_validator("handle_count")
    @classmethod
    def _clamp_handles(cls, value: int) -> int:
        return max(0, value)

    @field_validator("entropy")
    @classmethod
    def _clamp_entropy(cls, value: float) -> float:
        return min(8.0, max(0.0, value))

    @field_validator("risk_level", mode="before")
    @classmethod
    def _parse_risk(cls, value):
        return RiskLevel.parse(value)

    @field_serializer("tags")
    def _sorted_tags(self, tags: Set[str]) -> List[str]:
        return sorted(tags)


class ProcessRecord(ProcessObservation):
    """
    A live process held by the telemetry store.

    Identity is the pid. Telemetry fields are overwritten in place every tick
    and re-clamped on assignment.
    """

    model_config = ConfigDict(validate_assignment=True)

    @classmethod
    def from_observation(cls, observation: ProcessObservation) -> "ProcessRecord":
        return cls.model_validate(observation.model_dump())

    def to_payload(self) -> dict:
        """JSON-safe dict of the full record, as sent to the classifier."""
        return self.model_dump(mode="json")

    def has_unsigned_modules(self) -> bool:
        return any(not m.is_signed for m in self.modules)
