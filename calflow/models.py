from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from calflow.errors import ConfigError


MIN_CACHE_DURATION = timedelta(minutes=2)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def effective_cache_duration(value: timedelta | None) -> timedelta:
    if value is None or value < MIN_CACHE_DURATION:
        return MIN_CACHE_DURATION
    return value


class _StepModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ActionStep(_StepModel):
    type: Literal["action"] = "action"
    identifier: str
    arguments: dict[str, Any] = Field(default_factory=dict, alias="with")


class ConditionStep(_StepModel):
    type: Literal["condition"] = "condition"
    expressions: list[str] = Field(default_factory=list)
    operator: Literal["and", "or"] = "and"
    then_steps: list[FlowStep] = Field(default_factory=list, alias="then")
    else_steps: list[FlowStep] = Field(default_factory=list, alias="else")


class DebugStep(_StepModel):
    type: Literal["debug"] = "debug"
    message: str = ""


class ReturnStep(_StepModel):
    type: Literal["return"] = "return"
    value: bool = True


FlowStep = Annotated[
    Union[ActionStep, ConditionStep, DebugStep, ReturnStep],
    Field(discriminator="type"),
]

ConditionStep.model_rebuild()


class FlowHead(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    flow_id: str = Field(default="", alias="flow-id")
    user_id: str = Field(default="", alias="user-id")
    name: str = ""
    source: str = ""
    cache_duration: timedelta = Field(default=timedelta(0), alias="cache-duration")

    @field_serializer("cache_duration")
    def _serialize_cache_duration(self, value: timedelta) -> float:
        return value.total_seconds()


class Flow(FlowHead):
    steps: list[FlowStep] = Field(default_factory=list)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def to_head(self) -> FlowHead:
        return FlowHead.model_validate(self.model_dump(by_alias=True, exclude={"steps"}))


class HistoryAction(str, Enum):
    EXECUTE = "execute"
    UPDATE = "update"
    DELETE = "delete"


class History(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", use_enum_values=True)

    flow_id: str = Field(alias="flow-id")
    address: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    success: bool = False
    debug: list[str] = Field(default_factory=list)
    action: HistoryAction

    @field_validator("timestamp")
    @classmethod
    def _timestamp_as_utc(cls, value: datetime) -> datetime:
        # stores without tz_aware hand back naive UTC datetimes
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass
class UpsertResult:
    matched_count: int
    modified_count: int
    upserted_count: int

    @property
    def created(self) -> bool:
        return self.upserted_count > 0

    def message(self) -> str:
        return (
            f"matched {self.matched_count}, modified {self.modified_count}, "
            f"upserted {self.upserted_count}"
        )


def _int_setting(data: dict[str, Any], section: str, key: str, default: int) -> int:
    value = data.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section}.{key} must be an integer, got {value!r}") from exc


@dataclass
class StorageConfig:
    uri: str = ""
    database: str = ""
    flow_collection: str = "flows"
    history_collection: str = "history"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(
            uri=str(data.get("uri", "") or "").strip(),
            database=str(data.get("database", "") or "").strip(),
            flow_collection=str(data.get("flow_collection", "flows")).strip() or "flows",
            history_collection=str(data.get("history_collection", "history")).strip() or "history",
        )


@dataclass
class AuthConfig:
    credentials_file: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AuthConfig":
        data = data or {}
        return cls(credentials_file=str(data.get("credentials_file", "") or "").strip())


@dataclass
class CacheConfig:
    sweep_interval_seconds: int = 600
    fetch_timeout_seconds: int = 30
    max_content_length: int = 100 * 1000 * 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CacheConfig":
        data = data or {}
        return cls(
            sweep_interval_seconds=max(30, _int_setting(data, "cache", "sweep_interval_seconds", 600)),
            fetch_timeout_seconds=max(1, _int_setting(data, "cache", "fetch_timeout_seconds", 30)),
            max_content_length=max(1, _int_setting(data, "cache", "max_content_length", 100 * 1000 * 1000)),
        )


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 5544
    allow_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ServerConfig":
        data = data or {}
        origins = data.get("allow_origins", ["*"])
        if isinstance(origins, str):
            origins = origins.split(",")
        return cls(
            host=str(data.get("host", "0.0.0.0")).strip() or "0.0.0.0",
            port=_int_setting(data, "server", "port", 5544),
            allow_origins=[str(x).strip() for x in origins if str(x).strip()] or ["*"],
            log_level=str(data.get("log_level", "INFO")).strip().upper() or "INFO",
        )


@dataclass
class AppConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            storage=StorageConfig.from_dict(data.get("storage")),
            auth=AuthConfig.from_dict(data.get("auth")),
            cache=CacheConfig.from_dict(data.get("cache")),
            server=ServerConfig.from_dict(data.get("server")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def missing_required(self) -> list[str]:
        missing = []
        if not self.storage.uri:
            missing.append("MONGODB_URI")
        if not self.storage.database:
            missing.append("MONGODB_DB")
        if not self.auth.credentials_file:
            missing.append("FIREBASE_CREDENTIALS")
        return missing


def default_app_config() -> AppConfig:
    return AppConfig()
