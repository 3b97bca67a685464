from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class FailureClass(str, Enum):
    rate_limited = "rate_limited"
    server_error = "server_error"
    client_error = "client_error"
    network = "network"
    other = "other"


class RetryPolicy(BaseModel):
    """Retry ceilings and default delays, per failure class.

    ``max_retries`` bounds the retry counter of a logical request. The counter
    is shared by every failure class the request runs into, so the largest
    ceiling bounds the total number of attempts.
    """

    max_retries: dict[FailureClass, int] = Field(
        default_factory=lambda: {
            FailureClass.rate_limited: 5,
            FailureClass.server_error: 1,
            FailureClass.network: 1,
            FailureClass.client_error: 0,
            FailureClass.other: 0,
        }
    )
    rate_limit_delay_ms: int = 1000
    server_error_delay_ms: int = 2000
    network_delay_ms: int = 1000
    honor_retry_after: bool = True
    max_delay_ms: int = 60000

    def retries_for(self, failure_class: FailureClass) -> int:
        return self.max_retries.get(failure_class, 0)

    def default_delay_ms(self, failure_class: FailureClass) -> Optional[int]:
        return {
            FailureClass.rate_limited: self.rate_limit_delay_ms,
            FailureClass.server_error: self.server_error_delay_ms,
            FailureClass.network: self.network_delay_ms,
        }.get(failure_class)


class ClientConfig(BaseModel):
    """Settings for one client instance.

    Records at ``log_level`` and above go to ``log_endpoint``. Each attempt
    ends in one record: a successful response logs at INFO, a retry at
    WARNING, and giving up at ERROR. The default level therefore forwards
    retries and failures only; use "INFO" to forward every attempt.
    """

    base_url: str
    api_key: Optional[str] = None
    api_key_header: str = "x-api-key"
    timeout: float = 30.0  # seconds
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    poll_interval: float = 5.0
    status_path: str = "/etchings/{key}"
    log_endpoint: Optional[str] = None
    log_level: str = "WARNING"
    client_name: str = "etching-status-client"
    cache_idle_timeout: float = 300.0


class HttpRequest(BaseModel):
    """One logical outbound request.

    Instances are immutable: a retry is dispatched as ``next_attempt()``, which
    carries the same method, path, headers and body with the counter bumped.
    """

    model_config = ConfigDict(frozen=True)

    method: str = "GET"
    path: str
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    retry_count: int = 0

    def next_attempt(self) -> "HttpRequest":
        return self.model_copy(update={"retry_count": self.retry_count + 1})


class ApiResponse(BaseModel):
    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    data: Any = None
    retry_count: int = 0


class Classification(BaseModel):
    retryable: bool
    failure_class: FailureClass
    reason: str
    delay_hint_ms: Optional[int] = None
    server_delay: bool = False  # hint came from Retry-After


class FailedOutcome(BaseModel):
    method: str
    url: str
    status_code: Optional[int] = None
    raw_error: str
    retryable: bool
    failure_class: FailureClass
    reason: str
    suggested_delay_ms: Optional[int] = None
    body: Optional[Any] = None
    retry_count: int = 0


class EtchingStage(str, Enum):
    pending = "Pending"
    selecting_utxos = "SelectingUtxos"
    building_transaction = "BuildingTransaction"
    signing_transaction = "SigningTransaction"
    broadcasting = "Broadcasting"
    awaiting_confirmation = "AwaitingConfirmation"
    completed = "Completed"
    failed = "Failed"
    cancelled = "Cancelled"

    @property
    def is_final(self) -> bool:
        return self in FINAL_STAGES


FINAL_STAGES = frozenset(
    {EtchingStage.completed, EtchingStage.failed, EtchingStage.cancelled}
)


class OperationStatus(BaseModel):
    key: str
    stage: Optional[str] = None
    last_updated_at: Optional[int] = None
    terminal: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_placeholder(self) -> bool:
        return self.last_updated_at is None


class UpdateKind(str, Enum):
    status = "status"
    terminal = "terminal"
    transient_error = "transient_error"


class PollUpdate(BaseModel):
    kind: UpdateKind
    key: str
    status: Optional[OperationStatus] = None
    error: Optional[str] = None
    failure: Optional[FailedOutcome] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind == UpdateKind.terminal

    @property
    def is_error(self) -> bool:
        return self.kind == UpdateKind.transient_error


class PollState(str, Enum):
    idle = "idle"
    polling = "polling"
    terminal = "terminal"
    cancelled = "cancelled"


class ErrorInfo(BaseModel):
    name: str
    message: str
    stack: Optional[str] = None


class LogPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    level: str
    message: str
    timestamp: datetime
    context: Optional[dict[str, Any]] = None
    error: Optional[ErrorInfo] = None
    client_context: dict[str, Any] = Field(
        default_factory=dict, alias="clientContext"
    )
