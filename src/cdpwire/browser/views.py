"""Protocol view models and the error taxonomy."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

TargetID = str
SessionID = str
FrameID = str


class TargetType(str, Enum):
    """Kinds of remote targets the registry distinguishes."""

    PAGE = 'page'
    BACKGROUND_PAGE = 'background_page'
    WORKER = 'worker'
    SHARED_WORKER = 'shared_worker'
    SERVICE_WORKER = 'service_worker'
    BROWSER = 'browser'
    TAB = 'tab'
    WEBVIEW = 'webview'
    OTHER = 'other'

    @classmethod
    def from_raw(cls, value: str | None) -> 'TargetType':
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class TargetInfo(BaseModel):
    """Metadata reported by the remote end for one target.

    Accepts the wire field names (``targetId``, ``openerId``...) as well as the
    python ones.
    """

    model_config = ConfigDict(extra='ignore', populate_by_name=True, frozen=True)

    target_id: TargetID = Field(alias='targetId')
    type: str
    title: str = ''
    url: str = ''
    attached: bool = False
    opener_id: TargetID | None = Field(default=None, alias='openerId')
    can_access_opener: bool = Field(default=False, alias='canAccessOpener')
    opener_frame_id: FrameID | None = Field(default=None, alias='openerFrameId')
    browser_context_id: str | None = Field(default=None, alias='browserContextId')
    subtype: str | None = None

    @property
    def target_type(self) -> TargetType:
        return TargetType.from_raw(self.type)


class FrameInfo(BaseModel):
    """A ``Page.Frame`` payload as sent with frame tree and navigation events."""

    model_config = ConfigDict(extra='ignore', populate_by_name=True, frozen=True)

    frame_id: FrameID = Field(alias='id')
    parent_id: FrameID | None = Field(default=None, alias='parentId')
    loader_id: str | None = Field(default=None, alias='loaderId')
    name: str | None = None
    url: str = ''
    url_fragment: str | None = Field(default=None, alias='urlFragment')

    @property
    def full_url(self) -> str:
        return self.url + (self.url_fragment or '')


class CDPWireError(Exception):
    """Base error for everything raised by the protocol core."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f'{self.message} ({self.details})'
        return self.message


class TransportError(CDPWireError):
    """The physical channel closed or delivered a malformed frame."""


class ConnectionClosedError(TransportError):
    """Raised into pending work when the connection goes away."""


class ProtocolError(CDPWireError):
    """The remote end answered a request with an ``error`` payload."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        method: str | None = None,
        original_message: str | None = None,
        data: Any = None,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.method = method
        self.original_message = original_message if original_message is not None else message
        self.data = data
        super().__init__(message, details)

    @classmethod
    def from_response(cls, method: str, error: dict[str, Any]) -> 'ProtocolError':
        original = error.get('message', 'Unknown error')
        message = f'Protocol error ({method}): {original}'
        if 'data' in error:
            message = f'{message} {error["data"]}'
        return cls(
            message,
            code=error.get('code'),
            method=method,
            original_message=original,
            data=error.get('data'),
        )


class TargetCloseError(ProtocolError):
    """The addressed session or target is already detached."""


class BrowserTimeoutError(CDPWireError):
    """A bounded wait expired before its source settled."""

    def __init__(self, message: str, label: str | None = None, timeout_ms: int | None = None):
        self.label = label
        self.timeout_ms = timeout_ms
        super().__init__(message)
