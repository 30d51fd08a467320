"""Per-connection options."""

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cdpwire.browser.views import TargetInfo
from cdpwire.config import CONFIG


class ConnectionProfile(BaseModel):
    """Options for one :class:`~cdpwire.browser.browser.Browser` connection.

    Example:
        >>> profile = ConnectionProfile(cdp_url='http://localhost:9222', protocol_timeout_ms=30_000)
        >>> browser = await Browser.connect(profile)
    """

    model_config = ConfigDict(extra='ignore', validate_assignment=True)

    cdp_url: str | None = Field(
        default=None,
        description='ws:// endpoint, or http://host:port resolved through /json/version',
    )
    protocol_timeout_ms: int = Field(default=180_000, ge=0, description='Bound for every request; 0 disables it')
    slow_mo_ms: int = Field(default=0, ge=0, description='Delay before every outgoing message, for debugging')
    wait_for_initial_targets: bool = Field(
        default=True,
        description='Wait for targets present at connect time to finish attaching',
    )
    use_tab_target: bool = Field(default=False, description='Attach to tab targets and reach pages through them')
    target_filter: Callable[[TargetInfo], bool] | None = Field(
        default=None,
        description='Targets rejected by this predicate are silently detached',
    )
    is_target_exposed: Callable[[Any], bool] | None = Field(
        default=None,
        description='Decides which targets are announced as available/gone',
    )

    @classmethod
    def from_env(cls, **overrides: Any) -> 'ConnectionProfile':
        env = CONFIG.env()
        values: dict[str, Any] = {
            'cdp_url': env.CDPWIRE_CDP_URL,
            'protocol_timeout_ms': env.CDPWIRE_PROTOCOL_TIMEOUT_MS,
            'slow_mo_ms': env.CDPWIRE_SLOW_MO_MS,
            'wait_for_initial_targets': env.CDPWIRE_WAIT_FOR_INITIAL_TARGETS,
            'use_tab_target': env.CDPWIRE_USE_TAB_TARGET,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
